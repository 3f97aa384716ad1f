"""Extracted document content (PDF, XLSX, CSV, DOCX) held for a session."""

import io
import json
import logging
from pathlib import PurePath
from typing import List, Dict, Any, Iterable, Optional, Tuple

import pandas as pd

from .errors import RoundtableError
from .serializer import to_jsonable

logger = logging.getLogger("roundtable.documents")

PDF = "pdfs"
EXCEL = "excel"
CSV = "csv"
DOCX = "docx"
DOCUMENT_KINDS = (PDF, EXCEL, CSV, DOCX)
TABULAR_KINDS = (EXCEL, CSV)

EXTENSION_KINDS = {
    ".pdf": PDF,
    ".xlsx": EXCEL,
    ".xls": EXCEL,
    ".csv": CSV,
    ".docx": DOCX,
}

_LABELS = {PDF: "PDF", EXCEL: "Excel", CSV: "CSV", DOCX: "DOCX"}

SCHEMA_SAMPLE_ROWS = 3


def _frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    df.columns = [str(column).strip() for column in df.columns]
    return to_jsonable(df)


def extract_csv(raw: bytes) -> List[Dict[str, Any]]:
    """Parse CSV bytes into row records keyed by the header row."""
    if not raw or not raw.strip():
        return []
    try:
        df = pd.read_csv(io.BytesIO(raw), skipinitialspace=True)
    except pd.errors.EmptyDataError:
        return []
    return _frame_to_records(df)


def extract_excel(raw: bytes) -> List[Dict[str, Any]]:
    """Read the first sheet of a workbook into row records."""
    if not raw:
        return []
    df = pd.read_excel(io.BytesIO(raw), sheet_name=0)
    return _frame_to_records(df)


def extract_docx(raw: bytes) -> str:
    from docx import Document

    doc = Document(io.BytesIO(raw))
    return "\n\n".join(p.text for p in doc.paragraphs if p.text.strip())


def extract_pdf(raw: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(raw))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(text.strip() for text in pages if text.strip())


EXTRACTORS = {
    PDF: extract_pdf,
    EXCEL: extract_excel,
    CSV: extract_csv,
    DOCX: extract_docx,
}


def kind_for(filename: str) -> Optional[str]:
    return EXTENSION_KINDS.get(PurePath(filename).suffix.lower())


class DocumentStore:
    """Extracted documents grouped by type; each entry is {filename, content}."""

    def __init__(self):
        self._documents: Dict[str, List[Dict[str, Any]]] = {kind: [] for kind in DOCUMENT_KINDS}

    def add(self, kind: str, filename: str, content: Any) -> None:
        if kind not in self._documents:
            raise ValueError(f"Unknown document kind: {kind}")
        entries = self._documents[kind]
        # Re-uploading a file replaces its previous extraction
        entries[:] = [entry for entry in entries if entry["filename"] != filename]
        entries.append({"filename": filename, "content": content})

    def extract_files(self, files: Iterable[Tuple[str, bytes]]) -> List[str]:
        """
        Extract uploaded files into the store.

        Args:
            files: (filename, raw bytes) pairs

        Returns:
            Filenames that were extracted; unsupported files are skipped
        """
        added = []
        for filename, raw in files:
            kind = kind_for(filename)
            if kind is None:
                logger.warning(f"Skipping unsupported file type: {filename}")
                continue
            try:
                content = EXTRACTORS[kind](raw)
            except Exception as e:
                logger.error(f"Error processing {filename}: {e}", exc_info=True)
                raise RoundtableError(f"Failed to process files: {e}") from e
            self.add(kind, filename, content)
            added.append(filename)
        logger.info(f"Extracted {len(added)} file(s): {added}")
        return added

    def is_empty(self) -> bool:
        return not any(self._documents.values())

    def has_tabular(self) -> bool:
        return any(self._documents[kind] for kind in TABULAR_KINDS)

    def format_extracted_data(self) -> str:
        """Render every document as a text block for prompts."""
        blocks = []
        for kind in DOCUMENT_KINDS:
            for entry in self._documents[kind]:
                content = entry["content"]
                if kind in TABULAR_KINDS:
                    content = json.dumps(content, default=str)
                blocks.append(f"{_LABELS[kind]}: {entry['filename']}\nContent: {content}")
        return "\n\n".join(blocks)

    def dataset(self) -> Dict[str, List[Dict[str, Any]]]:
        """Mapping of sheet name to row records, handed to the sandbox as `data`."""
        data = {}
        for kind in TABULAR_KINDS:
            for entry in self._documents[kind]:
                content = entry["content"]
                data[entry["filename"]] = content if isinstance(content, list) else []
        return data

    def schema(self) -> Dict[str, Dict[str, Any]]:
        """Columns, row counts and a few sample rows per sheet."""
        schema = {}
        for sheet, rows in self.dataset().items():
            columns: List[str] = []
            for row in rows:
                for key in row:
                    if key not in columns:
                        columns.append(key)
            schema[sheet] = {
                "columns": columns,
                "row_count": len(rows),
                "sample_rows": rows[:SCHEMA_SAMPLE_ROWS],
            }
        return schema

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {kind: list(entries) for kind, entries in self._documents.items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DocumentStore":
        store = cls()
        for kind in DOCUMENT_KINDS:
            for entry in (data or {}).get(kind, []) or []:
                store.add(kind, entry.get("filename", ""), entry.get("content"))
        return store
