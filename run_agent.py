"""
Run RAG Agent - interactive launch script

Usage:
    python run_agent.py path/to/handbook.pdf [more files...]

Each file is registered and processed for a local user, then questions are
read from stdin and answered with sources.
"""
import logging
import os
import sys

from dotenv import load_dotenv
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)

from ragcore.rag_agent import create_agent

USER_ID = "local-user"

print("=" * 60)
print("  RAG document Q&A - starting...")
print("=" * 60)

agent = create_agent()

for path in sys.argv[1:]:
    document = agent.register_document(USER_ID, os.path.basename(path), path)
    result = agent.process_document(document.id)
    if result.success:
        print(f"Indexed {path}: {len(result.chunks)} chunks")
    else:
        print(f"Failed to index {path}: {result.failure.kind} ({result.failure.message})")

session = agent.messages.create_session(USER_ID)
print("\nAsk a question (empty line to quit).\n")

while True:
    try:
        question = input("> ").strip()
    except (EOFError, KeyboardInterrupt):
        break
    if not question:
        break

    result = agent.query(USER_ID, question, session_id=session.id)
    if "error" in result:
        print(f"Error [{result['error']['kind']}]: {result['error']['message']}\n")
        continue

    print(f"\n{result['content']}\n")
    for i, source in enumerate(result["sources"], start=1):
        print(f"  [{i}] {source['filename']} (chunk {source['chunkIndex']}, score {source['score']:.2f})")
    evaluation = result["evaluation"]
    print(f"  quality: {evaluation['overall']:.2f} ({evaluation['level']})\n")
