"""
Normalization of sandbox analysis results into a uniform list of flat records.

The interpreter can hand back several shapes; each is resolved by one pure
function:

    RECORD_LIST         [{...}, {...}]                  -> used as-is
    COLUMNAR            {"values": [[...]], "columns": [...]} -> rows zipped with columns
    SINGLE_ARRAY_FIELD  {"a,b": [[1, 2], ...]}          -> rows zipped with the key's headers
                        {"rows": [{...}, ...]}          -> the inner mappings
    SCALAR_MAP          {"mean": 20.0}                  -> [{"mean": 20.0}]

Every record is flattened (nested mappings become dotted keys) and all
records share the same ordered key set. An empty outcome is reported as None
("no tabular result"), never as an error.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

Record = Dict[str, Any]


class ResultShape(str, Enum):
    RECORD_LIST = "record_list"
    COLUMNAR = "columnar"
    SINGLE_ARRAY_FIELD = "single_array_field"
    SCALAR_MAP = "scalar_map"
    EMPTY = "empty"


def _is_mapping(value: Any) -> bool:
    return isinstance(value, dict)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _array_entries(mapping: Dict[str, Any]) -> List[str]:
    return [key for key, value in mapping.items() if _is_sequence(value)]


def classify(raw: Any) -> ResultShape:
    if raw is None:
        return ResultShape.EMPTY
    if _is_sequence(raw):
        return ResultShape.RECORD_LIST if raw else ResultShape.EMPTY
    if _is_mapping(raw):
        if not raw:
            return ResultShape.EMPTY
        if _is_sequence(raw.get("values")) and _is_sequence(raw.get("columns")):
            return ResultShape.COLUMNAR
        if len(_array_entries(raw)) == 1:
            return ResultShape.SINGLE_ARRAY_FIELD
        return ResultShape.SCALAR_MAP
    if isinstance(raw, str) and not raw.strip():
        return ResultShape.EMPTY
    return ResultShape.SCALAR_MAP


def flatten_record(record: Record, prefix: str = "") -> Record:
    flat: Record = {}
    for key, value in record.items():
        name = f"{prefix}{key}"
        if _is_mapping(value):
            flat.update(flatten_record(value, f"{name}."))
        else:
            flat[name] = value
    return flat


def _zip_row(headers: List[str], row: Any) -> Record:
    values = list(row) if _is_sequence(row) else [row]
    record = {}
    for i, value in enumerate(values):
        header = headers[i] if i < len(headers) and headers[i] else f"column_{i + 1}"
        record[header] = value
    return record


def _uniform(records: List[Record]) -> List[Record]:
    keys: List[str] = []
    for record in records:
        for key in record:
            if key not in keys:
                keys.append(key)
    return [{key: record.get(key) for key in keys} for record in records]


def from_record_list(raw: List[Any]) -> List[Record]:
    records = []
    for item in raw:
        if _is_mapping(item):
            records.append(flatten_record(item))
        elif _is_sequence(item):
            records.append(_zip_row([], item))
        else:
            records.append({"value": item})
    return records


def from_columnar(raw: Dict[str, Any]) -> List[Record]:
    columns = [str(column) for column in raw["columns"]]
    return [flatten_record(_zip_row(columns, row)) for row in raw["values"]]


def from_single_array_field(raw: Dict[str, Any]) -> List[Record]:
    key = _array_entries(raw)[0]
    rows = list(raw[key])
    if rows and all(_is_mapping(row) for row in rows):
        return [flatten_record(row) for row in rows]
    headers = [header.strip() for header in str(key).split(",")]
    return [_zip_row(headers, row) for row in rows]


def from_scalar_map(raw: Any) -> List[Record]:
    if not _is_mapping(raw):
        return [{"result": raw}]
    return [flatten_record(raw)]


RESOLVERS: Dict[ResultShape, Callable[[Any], List[Record]]] = {
    ResultShape.RECORD_LIST: from_record_list,
    ResultShape.COLUMNAR: from_columnar,
    ResultShape.SINGLE_ARRAY_FIELD: from_single_array_field,
    ResultShape.SCALAR_MAP: from_scalar_map,
}


def normalize_result(raw: Any) -> Optional[List[Record]]:
    """
    Normalize a raw analysis result.

    Returns:
        A non-empty list of uniform flat records, or None when the result
        holds no tabular data
    """
    shape = classify(raw)
    resolver = RESOLVERS.get(shape)
    if resolver is None:
        return None
    records = [record for record in resolver(raw) if record]
    if not records:
        return None
    return _uniform(records)
