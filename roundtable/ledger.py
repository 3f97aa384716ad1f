"""Append-only conversation ledger shared by every LLM call of a session."""

from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Iterable, Optional

USER = "user"
ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class ConversationLedger:
    """Ordered (role, content) turns; turns are never edited or removed."""

    def __init__(self, turns: Optional[Iterable[Turn]] = None):
        self._turns: List[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    def append(self, role: str, content: str) -> Turn:
        if role not in (USER, ASSISTANT):
            raise ValueError(f"Unknown role: {role}")
        turn = Turn(role=role, content=content or "")
        self._turns.append(turn)
        return turn

    def add_user(self, question: str) -> Turn:
        return self.append(USER, question)

    def add_assistant(self, answer: str) -> Turn:
        return self.append(ASSISTANT, answer)

    def extend(self, turns: Iterable[Turn]) -> None:
        for turn in turns:
            self.append(turn.role, turn.content)

    def last_user_question(self) -> Optional[str]:
        for turn in reversed(self._turns):
            if turn.role == USER:
                return turn.content
        return None

    def context(self) -> str:
        """Render the ledger as the context string passed to every prompt."""
        return "\n\n".join(f"{turn.role.upper()}: {turn.content}" for turn in self._turns)

    def to_list(self) -> List[Dict[str, str]]:
        return [turn.to_dict() for turn in self._turns]

    @classmethod
    def from_list(cls, items: Iterable[Dict[str, Any]]) -> "ConversationLedger":
        ledger = cls()
        for item in items or []:
            role = item.get("role")
            if role in (USER, ASSISTANT):
                ledger.append(role, item.get("content", ""))
        return ledger
