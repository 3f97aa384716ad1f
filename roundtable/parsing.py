"""Helpers for pulling structured data out of free-form LLM responses."""

import json
import re
from typing import Any, Dict, List, Optional


def strip_code_fence(text: str) -> str:
    if not text:
        return ""
    fence_match = re.match(r"^```[a-zA-Z0-9_-]*\n(.+?)\n```$", text.strip(), re.S)
    if fence_match:
        return fence_match.group(1).strip()
    return text.strip()


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first balanced JSON object in the text, tolerating trailing commas."""
    if not text:
        return None
    try:
        parsed = json.loads(strip_code_fence(text))
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                payload = text[start:idx + 1]
                cleaned = re.sub(r",\s*([\]}])", r"\1", payload)
                for candidate in (payload, cleaned):
                    try:
                        return json.loads(candidate)
                    except json.JSONDecodeError:
                        continue
                return None
    return None


def extract_json_array(text: str) -> Optional[List[Any]]:
    """Parse a bracketed JSON array embedded in the text."""
    if not text:
        return None
    match = re.search(r"\[[\s\S]*\]", text)
    if not match:
        return None
    payload = match.group()
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        cleaned = re.sub(r",\s*([\]}])", r"\1", payload)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            return None
