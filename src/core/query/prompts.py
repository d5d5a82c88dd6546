"""
Prompt templates and canned answers of the RAG query engine.
"""

from typing import List, Tuple

RAG_SYSTEM_PROMPT = """You are a helpful AI assistant. Use the following context to answer the user's question accurately and helpfully.

Context:
{context}

Instructions:
- Answer based primarily on the provided context
- If the context doesn't contain enough information, say so clearly
- Be concise but comprehensive
- Cite specific information from the context when possible, referring to sources as [Source n]
- If no context is provided, provide a helpful general response"""

GENERAL_SYSTEM_PROMPT = """You are a helpful AI assistant. No documents relevant to the user's question were found in the knowledge base.

Instructions:
- Provide a helpful general response
- Be concise but comprehensive
- Do not invent references to documents"""

FALLBACK_PREFIX = (
    "I don't have specific information about your question in the uploaded documents. "
    "However, I can provide a general response:\n\n"
)

TECHNICAL_DIFFICULTIES_TEMPLATE = (
    "I apologize, but I'm experiencing some technical difficulties accessing the document knowledge base. "
    "Here's a general response to your question: \"{message}\". "
    "Please try again in a moment, and if the issue persists, contact support."
)


def format_passage(number: int, content: str, file_name: str = "") -> str:
    header = f"[Source {number}]"
    if file_name:
        header += f" ({file_name})"
    return f"{header}\n{content}"


def build_rag_prompt(passages: List[Tuple[int, str, str]]) -> str:
    """Build the system prompt from (number, content, file_name) passages in rank order."""
    context = "\n\n".join(format_passage(number, content, file_name) for number, content, file_name in passages)
    return RAG_SYSTEM_PROMPT.format(context=context)


def technical_difficulties_answer(message: str) -> str:
    return TECHNICAL_DIFFICULTIES_TEMPLATE.format(message=message)
