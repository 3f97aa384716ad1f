"""Expert panel: formation, per-expert questioning and answering, summaries and mindmaps."""

import copy
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

from .config import PANEL_SIZE, QUESTIONS_PER_EXPERT
from .errors import GenerationError
from .gateway import query_model
from .parsing import extract_json, extract_json_array
from .prompts import MINDMAP_KEYWORD, PromptSet

logger = logging.getLogger("roundtable.panel")

MISSING_ANSWER = "No answer provided."
NO_SUMMARY = "No summary available: this expert has not provided any answers yet."

_MERMAID_RE = re.compile(r"```mermaid\s*([\s\S]*?)```", re.IGNORECASE)
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*\u2022]\s+|\d+[.)]\s+|[QA]\d+\s*[:.)]\s*)", re.IGNORECASE)


@dataclass
class Expert:
    title: str
    specialty: str = ""
    background: str = ""
    name: str = ""
    questions: List[str] = field(default_factory=list)
    answers: List[str] = field(default_factory=list)
    questions_and_answers: List[Dict[str, str]] = field(default_factory=list)
    summary: str = ""
    mermaid_mindmap: Optional[str] = None
    unavailable: bool = False
    error: Optional[str] = None

    def has_answers(self) -> bool:
        return any(answer and answer != MISSING_ANSWER for answer in self.answers)

    def append_round(self, questions: List[str], answers: List[str]) -> None:
        """Append one round of index-aligned Q&A to the expert's history."""
        if len(questions) != len(answers):
            raise ValueError("questions and answers must be index-aligned")
        self.questions.extend(questions)
        self.answers.extend(answers)
        self.questions_and_answers.extend(
            {"question": q, "answer": a} for q, a in zip(questions, answers)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expert":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


def copy_panel(panel: List[Expert]) -> List[Expert]:
    return copy.deepcopy(panel)


def format_qa(questions_and_answers: List[Dict[str, str]], numbered: bool = False) -> str:
    lines = []
    for i, qa in enumerate(questions_and_answers, 1):
        if numbered:
            lines.append(f"Q{i}: {qa['question']}\nA{i}: {qa['answer']}")
        else:
            lines.append(f"Q: {qa['question']}\nA: {qa['answer']}")
    return "\n\n".join(lines)


def _normalize_panel(raw_experts: Any, panel_size: int = PANEL_SIZE) -> List[Expert]:
    if not isinstance(raw_experts, list):
        raise GenerationError("response did not contain an experts list")
    entries = [entry for entry in raw_experts if isinstance(entry, dict)]
    if len(entries) < panel_size:
        raise GenerationError(f"expected {panel_size} experts, got {len(entries)}")

    panel = []
    for idx, entry in enumerate(entries[:panel_size]):
        placeholder = f"Expert {idx + 1}"
        title = str(entry.get("title") or entry.get("name") or entry.get("role") or "").strip() or placeholder
        panel.append(Expert(
            title=title,
            specialty=str(entry.get("specialty") or "").strip(),
            background=str(entry.get("background") or "").strip(),
            name=str(entry.get("name") or "").strip() or placeholder,
        ))
    return panel


async def form_panel(
    question: str,
    documents_context: str,
    conversation_context: str,
    prompts: PromptSet,
    panel_size: int = PANEL_SIZE,
) -> List[Expert]:
    """
    Ask for a panel of exactly `panel_size` experts.

    Raises:
        GenerationError: "Failed to identify experts: ..." on any failure
    """
    user_message = (
        f"Question: {question}\n\n"
        f"Previous Conversation:\n{conversation_context}\n\n"
        f"Available document content:\n{documents_context}"
    )
    try:
        response = await query_model(prompts.panel_system(panel_size), user_message)
        data = extract_json(response)
        if data is None:
            raise GenerationError("response was not valid JSON")
        panel = _normalize_panel(data.get("experts"), panel_size)
    except Exception as e:
        raise GenerationError(f"Failed to identify experts: {e}") from e

    logger.info(f"Formed panel: {[expert.title for expert in panel]}")
    return panel


def _parse_lines(text: str) -> List[str]:
    items = []
    for line in (text or "").splitlines():
        cleaned = _LIST_MARKER_RE.sub("", line).strip()
        if cleaned:
            items.append(cleaned)
    return items


def parse_questions(text: str, count: int = QUESTIONS_PER_EXPERT) -> List[str]:
    parsed = extract_json_array(text) if text and text.lstrip().startswith("[") else None
    if parsed:
        questions = [str(item).strip() for item in parsed if str(item).strip()]
    else:
        questions = _parse_lines(text)
    return questions[:count]


def parse_answers(text: str, count: int) -> List[str]:
    """Parse answers and align them index-wise to `count` questions."""
    answers: Optional[List[Any]] = None
    data = extract_json(text)
    if data and isinstance(data.get("answers"), list):
        answers = data["answers"]
    elif text and text.lstrip().startswith("["):
        answers = extract_json_array(text)
    if answers is None:
        answers = _parse_lines(text)

    aligned = [str(answer).strip() or MISSING_ANSWER for answer in answers[:count]]
    aligned.extend([MISSING_ANSWER] * (count - len(aligned)))
    return aligned


async def generate_expert_questions(
    question: str,
    expert: Expert,
    documents_context: str,
    conversation_context: str,
    prompts: PromptSet,
    count: int = QUESTIONS_PER_EXPERT,
) -> List[str]:
    user_message = (
        f"Question: {question}\n\n"
        f"Document Context:\n{documents_context}\n\n"
        f"Previous Conversation:\n{conversation_context}\n\n"
        f"Expert Background: {expert.background}"
    )
    if expert.questions:
        user_message += "\n\nQuestions already asked:\n" + "\n".join(expert.questions)
    try:
        response = await query_model(prompts.questions_system(expert, count), user_message)
        questions = parse_questions(response, count)
        if not questions:
            raise GenerationError("no questions in response")
    except Exception as e:
        raise GenerationError(f"Failed to generate questions for {expert.title}: {e}") from e
    return questions


async def get_expert_answers(
    question: str,
    expert: Expert,
    expert_questions: List[str],
    documents_context: str,
    conversation_context: str,
    prompts: PromptSet,
) -> List[str]:
    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(expert_questions, 1))
    user_message = (
        f"Main Question: {question}\n\n"
        f"Document Context:\n{documents_context}\n\n"
        f"Previous Conversation:\n{conversation_context}\n\n"
        f"Questions to Answer:\n{numbered}"
    )
    try:
        response = await query_model(prompts.answers_system(expert, len(expert_questions)), user_message)
    except Exception as e:
        raise GenerationError(f"Failed to get answers from {expert.title}: {e}") from e
    return parse_answers(response, len(expert_questions))


async def generate_expert_summary(
    question: str,
    expert: Expert,
    questions_and_answers: List[Dict[str, str]],
    prompts: PromptSet,
) -> str:
    user_message = (
        f"Main question: {question}\n\n"
        f"Expert: {expert.name}, {expert.title}\n"
        f"Specialty: {expert.specialty}\n"
        f"Background: {expert.background}\n\n"
        f"Q&A:\n{format_qa(questions_and_answers)}"
    )
    try:
        return await query_model(prompts.summary_system(expert), user_message)
    except Exception as e:
        raise GenerationError(f"Failed to generate summary for {expert.name}: {e}") from e


async def run_expert_round(
    question: str,
    expert: Expert,
    documents_context: str,
    conversation_context: str,
    prompts: PromptSet,
) -> Expert:
    """
    One question -> answer -> summary round for an expert.

    New Q&A is appended to the expert's history and the summary is recomputed
    over the whole history. The expert is only mutated once every call has
    succeeded, so a failure leaves it untouched.
    """
    questions = await generate_expert_questions(question, expert, documents_context, conversation_context, prompts)
    answers = await get_expert_answers(question, expert, questions, documents_context, conversation_context, prompts)

    candidate = copy.deepcopy(expert)
    candidate.append_round(questions, answers)
    if candidate.has_answers():
        summary = await generate_expert_summary(question, candidate, candidate.questions_and_answers, prompts)
    else:
        logger.warning(f"{expert.title} returned no usable answers; skipping summary")
        summary = NO_SUMMARY

    expert.append_round(questions, answers)
    expert.summary = summary
    expert.unavailable = False
    expert.error = None
    return expert


def extract_mermaid_code(response: Optional[str]) -> Optional[str]:
    """Return the fenced mermaid mindmap, or None if it is missing or invalid."""
    if not response:
        return None
    match = _MERMAID_RE.search(response)
    if not match or not match.group(1):
        logger.warning("No mermaid code block found in response")
        return None
    code = match.group(1).strip()
    if not code.startswith(MINDMAP_KEYWORD):
        logger.warning(f"Invalid mindmap code - does not start with {MINDMAP_KEYWORD}")
        return None
    return code


async def generate_expert_mindmap(
    question: str,
    expert: Expert,
    final_answer: str,
    prompts: PromptSet,
) -> Optional[str]:
    """Mindmap for one expert; any failure yields None and never raises."""
    user_message = (
        f"Expert: {expert.title} ({expert.specialty})\n"
        f"Background: {expert.background}\n\n"
        f"Question Asked: {question}\n\n"
        f"Expert's Q&A Process:\n{format_qa(expert.questions_and_answers, numbered=True)}\n\n"
        f"Expert's Summary: {expert.summary}\n\n"
        f"Final Answer: {final_answer}\n\n"
        "Use the expert's title as the root node, branch into their key findings "
        "and show how their analysis connects to the final answer."
    )
    try:
        response = await query_model(prompts.mindmap_system(), user_message)
    except Exception as e:
        logger.warning(f"Failed to generate mindmap for {expert.title}: {e}")
        return None
    return extract_mermaid_code(response)


def valid_mindmaps(panel: List[Expert]) -> List[Dict[str, str]]:
    """Mindmaps ready for rendering; experts without a valid one are left out."""
    return [
        {"title": expert.title, "mermaid": expert.mermaid_mindmap}
        for expert in panel
        if expert.mermaid_mindmap and expert.mermaid_mindmap.strip().startswith(MINDMAP_KEYWORD)
    ]
