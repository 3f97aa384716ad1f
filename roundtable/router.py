"""Decides whether a question goes to the tabular analysis path or the expert panel."""

import json
import logging
from typing import Any, Dict, Optional

from .gateway import query_model
from .prompts import PromptSet

logger = logging.getLogger("roundtable.router")


async def needs_tabular_analysis(
    question: str,
    has_tabular_documents: bool,
    prompts: Optional[PromptSet] = None,
    schema: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Classify a question as needing tabular computation.

    Returns False without any LLM call when no tabular documents are loaded.
    Any answer other than one containing "yes", and any LLM failure, is
    treated as "no" so the question falls through to the expert panel.
    """
    if not has_tabular_documents:
        return False

    prompts = prompts or PromptSet()
    user_message = f"Question: {question}"
    if schema:
        columns = {sheet: info.get("columns", []) for sheet, info in schema.items()}
        user_message += f"\n\nAvailable datasets and columns:\n{json.dumps(columns)}"

    try:
        response = await query_model(prompts.router_system(), user_message)
    except Exception as e:
        logger.warning(f"Analysis routing failed, using expert panel: {e}")
        return False

    decision = "yes" in (response or "").strip().lower()
    logger.info(f"Routing decision for {question[:60]!r}: {'analysis' if decision else 'panel'}")
    return decision
