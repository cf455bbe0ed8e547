"""
Prompt Builder Module

Assembles the system and user prompts for answer generation.

Every piece of untrusted text goes through the same two steps before it is
interpolated:
1. sanitize_for_prompt / sanitize_source_name
2. wrap_user_input / wrap_document_context

No document is treated as trusted. The system prompt always ends with
INSTRUCTION_ANCHOR, including the conversational prompt.

Prompt layout:
    system: instructions + numbered [Source N] document blocks + anchor
    user:   wrapped history turns + wrapped current question
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ragcore.classifier import QueryCategory
from ragcore.retriever import RetrievedContext
from ragcore.security import (
    INSTRUCTION_ANCHOR,
    QUERY_MAX_LENGTH,
    HISTORY_MESSAGE_MAX_LENGTH,
    sanitize_for_prompt,
    sanitize_source_name,
    wrap_document_context,
    wrap_user_input,
)

logger = logging.getLogger(__name__)

SYNTHESIS_INSTRUCTION_MAX_LENGTH = 500

CONVERSATIONAL_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. The user's message does not require document "
    "retrieval, respond based on the conversation context. Be friendly and concise. "
    "If the user asks a question that would benefit from their documents, let them "
    "know you can search their knowledge base if they rephrase as a specific question."
    + INSTRUCTION_ANCHOR
)

RAG_SYSTEM_TEMPLATE = """You are a helpful AI assistant with access to the user's personal knowledge base. Answer questions based on the provided context from their documents.

INSTRUCTIONS:
1. Base your answers primarily on the provided context
2. If the context doesn't contain enough information to fully answer, say so clearly
3. When referencing information, cite using numbered references like [1], [2] matching the source numbers above. Do NOT write filenames or section titles inline, just use the bracketed number
4. Be concise but thorough
5. If asked about something not in the context, you can use your general knowledge but clearly indicate this

CONTEXT FROM USER'S DOCUMENTS:
{context}

---

Remember: Prioritize information from the user's documents. Cite sources using [1], [2] format only."""

SYNTHESIS_SYSTEM_TEMPLATE = """You are a helpful AI assistant with access to the user's personal knowledge base. This is a complex query requiring synthesis of multiple pieces of information.

SYNTHESIS INSTRUCTION: {instructions}

INSTRUCTIONS:
1. Follow the synthesis instruction above to structure your response
2. Base your answers on the provided context from the user's documents
3. When referencing information, cite using numbered references like [1], [2] matching the source numbers above. Do NOT write filenames or section titles inline, just use the bracketed number
4. If some aspects of the query cannot be fully answered from the context, say so clearly
5. Be thorough but organized, use headings or bullet points for multi-part answers

CONTEXT FROM USER'S DOCUMENTS:
{context}

---

Remember: Follow the synthesis instruction. Cite sources using [1], [2] format only. Be thorough."""

NO_CONTEXT_NOTICE = "No relevant passages were found in the user's documents."


@dataclass(frozen=True)
class BuiltPrompt:
    system_prompt: str
    user_prompt: str


def format_context_block(contexts: Sequence[RetrievedContext]) -> str:
    """Numbered ``[Source N]`` headers, each followed by its wrapped document."""
    blocks = []
    for i, ctx in enumerate(contexts):
        source = sanitize_source_name(ctx.filename or ctx.document_id)
        retrieved_for = ""
        if ctx.sub_query:
            sub_query = sanitize_for_prompt(ctx.sub_query).replace("\n", " ")
            retrieved_for = f"\nRetrieved for: \"{sub_query}\""
        blocks.append(
            f"[Source {i + 1}: {source} (relevance: {ctx.score * 100:.0f}%)]{retrieved_for}\n"
            f"{wrap_document_context(ctx.text, source)}"
        )
    return "\n\n---\n\n".join(blocks)


class PromptBuilder:
    """
    Builds injection-resistant prompts.

    Example:
        prompt = PromptBuilder().build(
            "What is the refund window?",
            contexts=result.contexts,
            history=[{"role": "user", "content": "Hi"}],
        )
        generator.generate(prompt.system_prompt, prompt.user_prompt)
    """

    def build_system_prompt(
        self,
        contexts: Sequence[RetrievedContext],
        instructions: Optional[str] = None,
        category: Optional[QueryCategory] = None,
    ) -> str:
        if category == QueryCategory.CONVERSATIONAL:
            return CONVERSATIONAL_SYSTEM_PROMPT

        context = format_context_block(contexts) if contexts else NO_CONTEXT_NOTICE

        if instructions:
            system = SYNTHESIS_SYSTEM_TEMPLATE.format(
                instructions=sanitize_for_prompt(instructions, SYNTHESIS_INSTRUCTION_MAX_LENGTH),
                context=context,
            )
        else:
            system = RAG_SYSTEM_TEMPLATE.format(context=context)

        return system + INSTRUCTION_ANCHOR

    def build_user_prompt(
        self,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> str:
        parts = []
        if history:
            turns = "\n".join(
                wrap_user_input(
                    f"{turn['role']}: "
                    f"{sanitize_for_prompt(turn['content'], HISTORY_MESSAGE_MAX_LENGTH)}"
                )
                for turn in history
            )
            parts.append(f"Conversation so far:\n{turns}")

        parts.append(
            f"Current question:\n{wrap_user_input(sanitize_for_prompt(query, QUERY_MAX_LENGTH))}"
        )
        return "\n\n".join(parts)

    def build(
        self,
        query: str,
        contexts: Sequence[RetrievedContext],
        history: Optional[List[Dict[str, str]]] = None,
        instructions: Optional[str] = None,
        category: Optional[QueryCategory] = None,
    ) -> BuiltPrompt:
        """
        Build both prompts.

        Args:
            query: The user's question
            contexts: Ranked contexts; their order defines the [N] numbering
            history: Prior turns as role/content dicts
            instructions: Optional synthesis instruction for complex queries
            category: Query category; conversational uses its own system prompt
        """
        prompt = BuiltPrompt(
            system_prompt=self.build_system_prompt(contexts, instructions, category),
            user_prompt=self.build_user_prompt(query, history),
        )
        logger.debug(
            f"Built prompt with {len(contexts)} contexts, "
            f"{len(prompt.system_prompt)} system chars"
        )
        return prompt
