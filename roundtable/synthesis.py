"""Final-answer synthesis, follow-up suggestions and related artifacts."""

import logging
from typing import List, Dict, Any

from .config import MAX_FOLLOWUPS, ROUNDTABLE_TITLE_MODEL
from .errors import GenerationError
from .gateway import query_model
from .panel import Expert, format_qa
from .parsing import extract_json, extract_json_array
from .prompts import PromptSet

logger = logging.getLogger("roundtable.synthesis")


def format_expert_insights(panel: List[Expert]) -> str:
    blocks = []
    for expert in panel:
        if expert.unavailable and not expert.questions_and_answers:
            continue
        blocks.append(
            f"Expert: {expert.title} ({expert.specialty})\n"
            f"Background: {expert.background}\n"
            f"Key Questions and Answers:\n{format_qa(expert.questions_and_answers)}\n"
            f"Summary: {expert.summary}"
        )
    return "\n\n".join(blocks)


async def synthesize(
    question: str,
    panel: List[Expert],
    documents_context: str,
    conversation_context: str,
    prompts: PromptSet,
) -> str:
    """
    Combine every expert's Q&A and summary into the final answer.

    Raises:
        GenerationError: "Failed to generate final answer: ..."
    """
    user_message = (
        f"Current Question: {question}\n\n"
        f"Previous Conversation:\n{conversation_context}\n\n"
        f"Expert Insights:\n{format_expert_insights(panel)}\n\n"
        f"Document Context:\n{documents_context}"
    )
    try:
        return await query_model(prompts.synthesis_system(), user_message)
    except Exception as e:
        raise GenerationError(f"Failed to generate final answer: {e}") from e


def _question_text(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("text") or item.get("question") or "").strip()
    if isinstance(item, str):
        return item.strip()
    return ""


def parse_followups(text: str, limit: int = MAX_FOLLOWUPS) -> List[str]:
    """Read the {"questions": [...]} shape, falling back to any bracketed array."""
    items = None
    data = extract_json(text)
    if data and isinstance(data.get("questions"), list):
        items = data["questions"]
    if items is None:
        items = extract_json_array(text)
    if not isinstance(items, list):
        return []
    questions = [_question_text(item) for item in items]
    return [q for q in questions if q][:limit]


async def generate_followups(
    prior_question: str,
    final_answer: str,
    conversation_context: str,
    prompts: PromptSet,
) -> List[str]:
    """Up to three follow-up questions; an empty list on any failure."""
    user_message = (
        f"Current Question: {prior_question}\n"
        f"Final Answer: {final_answer}\n\n"
        f"Previous Conversation:\n{conversation_context}"
    )
    try:
        response = await query_model(prompts.followups_system(MAX_FOLLOWUPS), user_message)
    except Exception as e:
        logger.warning(f"Failed to generate follow-up questions: {e}")
        return []
    followups = parse_followups(response)
    if not followups:
        logger.warning("Follow-up response held no usable questions")
    return followups


async def generate_finalmap(question: str, panel: List[Expert], prompts: PromptSet) -> Dict[str, Any]:
    """Cumulative jsMind node_tree combining every expert's analysis."""
    analyses = "\n\n".join(
        f"{expert.name or expert.title} ({expert.title}):\n"
        f"Questions Asked: {', '.join(expert.questions)}\n"
        f"Summary: {expert.summary}"
        for expert in panel
    )
    user_message = f"Question: {question}\n\nExpert Analyses:\n{analyses}"
    try:
        response = await query_model(prompts.finalmap_system(), user_message)
    except Exception as e:
        raise GenerationError(f"Failed to generate mindmap visualization: {e}") from e

    data = extract_json(response)
    if not data or not isinstance(data.get("data"), dict):
        logger.error(f"Unusable mindmap data: {response[:200]!r}")
        raise GenerationError("Failed to generate mindmap visualization")
    data.setdefault("format", "node_tree")
    data["data"].setdefault("id", "root")
    return data


async def generate_related_question(node_text: str, current_question: str, prompts: PromptSet) -> str:
    user_message = f"Current question: {current_question}\n\nMindmap topic: {node_text}"
    try:
        response = await query_model(prompts.related_question_system(), user_message)
    except Exception as e:
        raise GenerationError(f"Failed to generate related question: {e}") from e
    return response.strip().strip('"\'')


async def generate_conversation_title(question: str) -> str:
    """Generate a short title for a session."""
    title_prompt = "Generate a concise title (3-5 words) for this query. No quotes or punctuation. Be specific."
    try:
        response = await query_model(title_prompt, question, model=ROUNDTABLE_TITLE_MODEL, timeout=30.0)
    except Exception as e:
        logger.warning(f"Title generation failed: {e}")
        return "New Session"
    title = response.strip().strip('"\'') or "New Session"
    return title[:47] + "..." if len(title) > 50 else title
