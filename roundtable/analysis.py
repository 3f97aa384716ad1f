"""
Tabular analysis pipeline.

Question + dataset schema -> generated `generateAnalysis(data)` function ->
sandboxed execution through an appended driver call -> normalized records ->
natural-language explanation.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import AnalysisError, SandboxError
from .gateway import query_model
from .normalize import normalize_result
from .prompts import ANALYSIS_FUNCTION, REQUIRED_IMPORTS, PromptSet
from .sandbox import SandboxWorker

logger = logging.getLogger("roundtable.analysis")

ERROR_PREFIX = "Sorry, there was an error analyzing the data"
NO_DATA_MESSAGE = "There are no data rows in the uploaded spreadsheets to analyze."
NO_TABLE_MESSAGE = "The analysis did not produce a tabular result."

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n(.*?)```", re.S)
_FUNCTION_RE = re.compile(rf"^\s*def\s+{ANALYSIS_FUNCTION}\s*\(", re.M)


@dataclass
class AnalysisResult:
    question: str
    generated_code: str = ""
    raw_result: Any = None
    normalized_table: Optional[List[Dict[str, Any]]] = None
    formatted_explanation: str = ""

    @property
    def has_table(self) -> bool:
        return bool(self.normalized_table)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "generated_code": self.generated_code,
            "raw_result": self.raw_result,
            "normalized_table": self.normalized_table,
            "formatted_explanation": self.formatted_explanation,
            "has_table": self.has_table,
        }


def analysis_error_message(error: Exception) -> str:
    return f"{ERROR_PREFIX}: {error}"


def extract_code(response: str) -> str:
    if not response:
        return ""
    match = _FENCE_RE.search(response)
    if match:
        return match.group(1).strip()
    return response.strip()


def ensure_imports(code: str) -> str:
    """Prepend any required import the generated snippet left out."""
    present = {line.strip() for line in code.splitlines()}
    missing = [line for line in REQUIRED_IMPORTS if line not in present]
    if not missing:
        return code
    return "\n".join(missing) + "\n\n" + code


def with_driver(code: str) -> str:
    return f"{code.rstrip()}\n\n{ANALYSIS_FUNCTION}(data)\n"


def fallback_explanation(question: str, raw_result: Any) -> str:
    dump = json.dumps(raw_result, indent=2, default=str)
    return f"## Analysis Results for: {question}\n\n```json\n{dump}\n```"


def _has_rows(dataset: Dict[str, List[Dict[str, Any]]]) -> bool:
    return any(rows for rows in dataset.values())


async def generate_analysis_code(
    question: str,
    schema: Dict[str, Any],
    prompts: PromptSet,
) -> str:
    user_message = (
        f"Question: {question}\n\n"
        f"Dataset schema (sheet name -> columns, row count, sample rows):\n"
        f"{json.dumps(schema, indent=2, default=str)}"
    )
    try:
        response = await query_model(prompts.analysis_code_system(), user_message)
    except Exception as e:
        raise AnalysisError(f"Failed to generate analysis code: {e}") from e

    code = extract_code(response)
    if not _FUNCTION_RE.search(code):
        raise AnalysisError(f"Generated code does not define {ANALYSIS_FUNCTION}(data)")
    return ensure_imports(code)


async def format_analysis(question: str, raw_result: Any, prompts: PromptSet) -> str:
    user_message = (
        f"Original question: {question}\n\n"
        f"Analysis result (JSON):\n{json.dumps(raw_result, indent=2, default=str)}"
    )
    try:
        return await query_model(prompts.analysis_format_system(), user_message)
    except Exception as e:
        logger.warning(f"Formatting analysis result failed, using raw dump: {e}")
        return fallback_explanation(question, raw_result)


async def run_analysis(
    question: str,
    dataset: Dict[str, List[Dict[str, Any]]],
    schema: Dict[str, Any],
    sandbox: SandboxWorker,
    prompts: Optional[PromptSet] = None,
) -> AnalysisResult:
    """
    Answer a question by generating and executing analysis code.

    Args:
        question: The user's question
        dataset: Sheet name -> row records, passed to the code as `data`
        schema: Columns and sample rows per sheet for the code prompt
        sandbox: Worker that executes the code
        prompts: Prompt templates

    Returns:
        AnalysisResult; normalized_table is None for a "no tabular result" outcome

    Raises:
        AnalysisError: code generation or execution failed
    """
    prompts = prompts or PromptSet()
    result = AnalysisResult(question=question)

    if not _has_rows(dataset):
        logger.info("Tabular analysis skipped: dataset has no rows")
        result.formatted_explanation = NO_DATA_MESSAGE
        return result

    code = await generate_analysis_code(question, schema, prompts)
    result.generated_code = code

    try:
        response = await sandbox.run(with_driver(code), dataset, {})
    except SandboxError as e:
        raise AnalysisError(str(e)) from e
    if not response.ok:
        logger.warning(f"Analysis code raised in sandbox: {response.error}")
        raise AnalysisError(response.error)

    result.raw_result = response.result
    result.normalized_table = normalize_result(response.result)
    if result.normalized_table is None:
        logger.info("Analysis produced no tabular result")
        result.formatted_explanation = NO_TABLE_MESSAGE
        return result

    result.formatted_explanation = await format_analysis(question, response.result, prompts)
    return result
