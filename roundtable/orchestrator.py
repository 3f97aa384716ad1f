"""
Turn orchestration for a roundtable session.

A turn runs one of two paths:

    analysis: route -> generate code -> sandbox -> normalize -> explain
    panel:    FormingPanel -> PerExpertQA/Summarizing (per expert, panel order)
              -> synthesis -> MindmapGeneration -> follow-ups

Follow-up turns skip panel formation and extend the persisted panel. All
mutations happen on working copies and are committed when the turn ends, so a
cancelled turn leaves the session exactly as it found it.
"""

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .analysis import AnalysisResult, analysis_error_message, run_analysis
from .config import EXPERT_FANOUT, PROMPT_PRESET
from .documents import DocumentStore
from .errors import AnalysisError, GenerationError
from .ledger import ConversationLedger, Turn
from .panel import (
    Expert,
    copy_panel,
    form_panel,
    generate_expert_mindmap,
    run_expert_round,
    valid_mindmaps,
)
from .prompts import PromptSet, get_prompt_set
from .router import needs_tabular_analysis
from .sandbox import SandboxWorker
from .synthesis import (
    generate_finalmap,
    generate_followups,
    generate_related_question,
    synthesize,
)

logger = logging.getLogger("roundtable.orchestrator")

ROUTE_ANALYSIS = "analysis"
ROUTE_PANEL = "panel"

EventSink = Callable[[Dict[str, Any]], None]


class TurnState(str, Enum):
    ROUTING = "routing"
    ANALYZING = "analyzing"
    FORMING_PANEL = "forming_panel"
    PER_EXPERT_QA = "per_expert_qa"
    SYNTHESIZING = "synthesizing"
    MINDMAP_GENERATION = "mindmap_generation"
    FOLLOWUPS = "followups"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SessionState:
    """Everything a session accumulates across turns."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    title: str = "New Session"
    ledger: ConversationLedger = field(default_factory=ConversationLedger)
    documents: DocumentStore = field(default_factory=DocumentStore)
    panel: List[Expert] = field(default_factory=list)
    panel_question: Optional[str] = None

    def start_topic(self, question: str, panel: List[Expert]) -> None:
        self.panel = panel
        self.panel_question = question

    def clear_panel(self) -> None:
        self.panel = []
        self.panel_question = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "created_at": self.created_at,
            "title": self.title,
            "messages": self.ledger.to_list(),
            "panel": [expert.to_dict() for expert in self.panel],
            "panel_question": self.panel_question,
            "documents": self.documents.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        return cls(
            session_id=data["id"],
            created_at=data.get("created_at") or datetime.now(timezone.utc).isoformat(),
            title=data.get("title", "New Session"),
            ledger=ConversationLedger.from_list(data.get("messages", [])),
            documents=DocumentStore.from_dict(data.get("documents")),
            panel=[Expert.from_dict(item) for item in data.get("panel", [])],
            panel_question=data.get("panel_question"),
        )


@dataclass
class TurnResult:
    question: str
    is_follow_up: bool = False
    route: Optional[str] = None
    state: TurnState = TurnState.DONE
    final_answer: str = ""
    panel: List[Expert] = field(default_factory=list)
    mindmaps: List[Dict[str, str]] = field(default_factory=list)
    followups: List[str] = field(default_factory=list)
    analysis: Optional[AnalysisResult] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.state == TurnState.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "is_follow_up": self.is_follow_up,
            "route": self.route,
            "state": self.state.value,
            "final_answer": self.final_answer,
            "experts": [expert.to_dict() for expert in self.panel],
            "mindmaps": self.mindmaps,
            "followups": self.followups,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "warnings": self.warnings,
            "error": self.error,
        }


class RoundtableOrchestrator:
    """
    Drives turns for one session.

    Only one turn runs at a time. Submitting a new question cancels the turn
    still in flight; its results are never committed.
    """

    def __init__(
        self,
        state: Optional[SessionState] = None,
        prompts: Optional[PromptSet] = None,
        sandbox: Optional[SandboxWorker] = None,
        fanout: bool = EXPERT_FANOUT,
        on_event: Optional[EventSink] = None,
    ):
        self.state = state or SessionState()
        self.prompts = prompts or get_prompt_set(PROMPT_PRESET)
        self.sandbox = sandbox
        self.fanout = fanout
        self.on_event = on_event
        self._lock = asyncio.Lock()
        self._active: Optional[asyncio.Task] = None
        self._turn_ids = itertools.count(1)
        self._superseded: set = set()

    def _emitter(self, sink: Optional[EventSink]) -> Callable[..., None]:
        def emit(event_type: str, **data: Any) -> None:
            if sink is None:
                return
            try:
                sink({"type": event_type, **data})
            except Exception as e:
                logger.warning(f"Event listener failed for {event_type}: {e}")
        return emit

    def _get_sandbox(self) -> SandboxWorker:
        if self.sandbox is None:
            self.sandbox = SandboxWorker()
        return self.sandbox

    async def close(self) -> None:
        self.cancel()
        if self.sandbox is not None:
            await self.sandbox.close()

    def cancel(self) -> bool:
        """Abandon the turn in flight, if any."""
        if self._active is None or self._active.done():
            return False
        self._superseded.add(self._active.get_name())
        self._active.cancel()
        return True

    async def process_question(
        self,
        question: str,
        is_follow_up: bool = False,
        on_event: Optional[EventSink] = None,
    ) -> TurnResult:
        """
        Run one turn and return its result.

        A turn superseded by a newer question returns a result in the
        CANCELLED state instead of raising.
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("Question must not be empty")

        turn_id = next(self._turn_ids)
        if self.cancel():
            logger.info("New question received; cancelled the turn in flight")

        task = asyncio.create_task(
            self._run_turn(question, is_follow_up, self._emitter(on_event or self.on_event)),
            name=f"turn-{turn_id}",
        )
        self._active = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.get_name() not in self._superseded:
                raise
            return TurnResult(question=question, is_follow_up=is_follow_up, state=TurnState.CANCELLED)
        finally:
            self._superseded.discard(task.get_name())
            if self._active is task:
                self._active = None

    async def _run_turn(self, question: str, is_follow_up: bool, emit: Callable[..., None]) -> TurnResult:
        async with self._lock:
            follow_up = is_follow_up and bool(self.state.panel)
            if is_follow_up and not follow_up:
                logger.info("Follow-up requested without a panel; treating as a new question")
            result = TurnResult(question=question, is_follow_up=follow_up)
            ledger = ConversationLedger(self.state.ledger.turns)
            ledger.add_user(question)

            emit("loading", message="Processing your question...")
            try:
                route = ROUTE_PANEL
                if not follow_up:
                    result.state = TurnState.ROUTING
                    documents = self.state.documents
                    if await needs_tabular_analysis(
                        question,
                        documents.has_tabular(),
                        self.prompts,
                        documents.schema() if documents.has_tabular() else None,
                    ):
                        route = ROUTE_ANALYSIS
                result.route = route
                emit("route", route=route)

                if route == ROUTE_ANALYSIS:
                    await self._analysis_turn(result, ledger, emit)
                else:
                    await self._panel_turn(result, ledger, emit)
            except GenerationError as e:
                logger.error(f"Turn failed: {e}")
                result.state = TurnState.FAILED
                result.error = str(e)
                self._commit(ledger.turns[-1:])
                emit("error", message=result.error)
            except asyncio.CancelledError:
                logger.info(f"Turn cancelled: {question[:60]!r}")
                raise
            except Exception as e:
                logger.error(f"Turn failed unexpectedly: {e}", exc_info=True)
                result.state = TurnState.FAILED
                result.error = f"Unexpected error: {e}"
                self._commit(ledger.turns[-1:])
                emit("error", message=result.error)
            finally:
                emit("idle")
            return result

    def _commit(self, turns: List[Turn]) -> None:
        self.state.ledger.extend(turns)

    async def _analysis_turn(self, result: TurnResult, ledger: ConversationLedger, emit: Callable[..., None]) -> None:
        result.state = TurnState.ANALYZING
        emit("loading", message="Analyzing data...")
        documents = self.state.documents
        try:
            analysis = await run_analysis(
                result.question,
                documents.dataset(),
                documents.schema(),
                self._get_sandbox(),
                self.prompts,
            )
        except AnalysisError as e:
            message = analysis_error_message(e)
            logger.error(message)
            result.state = TurnState.FAILED
            result.error = message
            result.final_answer = message
            ledger.add_assistant(message)
            self._commit(ledger.turns[-2:])
            emit("error", message=message)
            return

        result.analysis = analysis
        result.final_answer = analysis.formatted_explanation
        ledger.add_assistant(result.final_answer)
        emit("analysis_complete", analysis=analysis.to_dict())

        result.state = TurnState.FOLLOWUPS
        result.followups = await generate_followups(
            result.question, result.final_answer, ledger.context(), self.prompts
        )
        emit("followups_complete", followups=result.followups)

        self._commit(ledger.turns[-2:])
        # A data question starts a new topic; the old panel is not reused
        self.state.clear_panel()
        result.state = TurnState.DONE

    async def _panel_turn(self, result: TurnResult, ledger: ConversationLedger, emit: Callable[..., None]) -> None:
        question = result.question
        documents_context = self.state.documents.format_extracted_data()
        conversation_context = ledger.context()

        if result.is_follow_up:
            panel = copy_panel(self.state.panel)
        else:
            result.state = TurnState.FORMING_PANEL
            emit("loading", message="Identifying expert panel...")
            panel = await form_panel(question, documents_context, conversation_context, self.prompts)
        emit("panel_formed", experts=[expert.to_dict() for expert in panel])

        result.state = TurnState.PER_EXPERT_QA
        await self._run_expert_rounds(result, panel, documents_context, conversation_context, emit)
        available = [expert for expert in panel if not expert.unavailable]
        emit("experts_complete", experts=[expert.to_dict() for expert in panel])

        result.state = TurnState.SYNTHESIZING
        emit("loading", message="Synthesizing final answer...")
        result.final_answer = await synthesize(
            question, available, documents_context, conversation_context, self.prompts
        )
        ledger.add_assistant(result.final_answer)
        emit("answer_complete", answer=result.final_answer)

        result.state = TurnState.MINDMAP_GENERATION
        emit("loading", message="Drawing expert mindmaps...")
        for expert in panel:
            if expert.unavailable:
                expert.mermaid_mindmap = None
                continue
            expert.mermaid_mindmap = await generate_expert_mindmap(
                question, expert, result.final_answer, self.prompts
            )
        result.mindmaps = valid_mindmaps(panel)
        if not result.mindmaps:
            result.warnings.append("No valid mindmaps available for visualization.")
        emit("mindmaps_complete", mindmaps=result.mindmaps)

        result.state = TurnState.FOLLOWUPS
        result.followups = await generate_followups(
            question, result.final_answer, ledger.context(), self.prompts
        )
        emit("followups_complete", followups=result.followups)

        if result.is_follow_up:
            self.state.panel = panel
        else:
            self.state.start_topic(question, panel)
        self._commit(ledger.turns[-2:])
        result.panel = panel
        result.state = TurnState.DONE

    async def _run_expert_rounds(
        self,
        result: TurnResult,
        panel: List[Expert],
        documents_context: str,
        conversation_context: str,
        emit: Callable[..., None],
    ) -> None:
        async def guarded(index: int, expert: Expert) -> Optional[GenerationError]:
            emit("loading", message=f"Consulting {expert.title} ({index}/{len(panel)})...")
            try:
                await run_expert_round(
                    result.question, expert, documents_context, conversation_context, self.prompts
                )
            except GenerationError as e:
                logger.warning(f"Expert {expert.title} unavailable this turn: {e}")
                expert.unavailable = True
                expert.error = str(e)
                return e
            return None

        if self.fanout:
            failures = await asyncio.gather(*(guarded(i, expert) for i, expert in enumerate(panel, 1)))
        else:
            failures = [await guarded(i, expert) for i, expert in enumerate(panel, 1)]

        errors = [error for error in failures if error is not None]
        if len(errors) == len(panel):
            raise errors[0]
        for error in errors:
            warning = f"An expert was unavailable for this turn: {error}"
            result.warnings.append(warning)
            emit("warning", message=warning)

    async def generate_finalmap(self) -> Dict[str, Any]:
        if not self.state.panel:
            raise GenerationError("No expert panel to map yet")
        question = self.state.ledger.last_user_question() or self.state.panel_question or ""
        return await generate_finalmap(question, self.state.panel, self.prompts)

    async def related_question(self, node_text: str) -> str:
        current = self.state.ledger.last_user_question()
        if not current:
            raise GenerationError("No current question context available")
        return await generate_related_question(node_text, current, self.prompts)
