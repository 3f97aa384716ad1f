"""One JSON file per roundtable session under DATA_DIR."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DATA_DIR

logger = logging.getLogger("roundtable.storage")

DEFAULT_TITLE = "New Session"


def _session_file(session_id: str) -> Path:
    return Path(DATA_DIR) / f"{session_id}.json"


def _read(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def create_session(session_id: str) -> Dict[str, Any]:
    session = {
        "id": session_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "title": DEFAULT_TITLE,
        "messages": [],
        "panel": [],
        "panel_question": None,
        "documents": {},
    }
    save_session(session)
    return session


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    path = _session_file(session_id)
    if not path.is_file():
        return None
    return _read(path)


def save_session(session: Dict[str, Any]) -> None:
    """Write the session through a temp file so readers never see a partial document."""
    path = _session_file(session["id"])
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(session, f, indent=2, default=str)
    os.replace(tmp, path)


def list_sessions() -> List[Dict[str, Any]]:
    """Session metadata, newest first."""
    directory = Path(DATA_DIR)
    if not directory.is_dir():
        return []

    sessions = []
    for path in directory.glob("*.json"):
        try:
            data = _read(path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable session file {path.name}: {e}")
            continue
        sessions.append({
            "id": data["id"],
            "created_at": data["created_at"],
            "title": data.get("title") or DEFAULT_TITLE,
            "message_count": len(data.get("messages", [])),
        })
    return sorted(sessions, key=lambda s: s["created_at"], reverse=True)


def update_session_title(session_id: str, title: str) -> None:
    session = get_session(session_id)
    if session is None:
        raise ValueError(f"Session {session_id} not found")
    session["title"] = title
    save_session(session)


def delete_session(session_id: str) -> None:
    path = _session_file(session_id)
    if not path.is_file():
        raise ValueError(f"Session {session_id} not found")
    path.unlink()
