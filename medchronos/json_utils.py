"""
JSON extraction and repair for free-text model output.

Models wrap JSON in markdown fences, surround it with prose, break long
strings across lines, or stop mid-object at the token limit. extract_json
finds the object (fenced block first, else the widest {...} span) and
applies progressively more aggressive repairs.
"""
import json
import re
import logging

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_MISSING_COMMA = re.compile(r'"\s*\n\s*"')


class JSONExtractionError(ValueError):
    """No parseable JSON object could be recovered from the text."""


def _repair_truncated_json(text: str) -> str:
    """Close any string, array or object left open by a truncated generation."""
    text = text.rstrip()
    text = re.sub(r",\s*$", "", text)

    stack = []
    in_string = False
    i = 0
    while i < len(text):
        c = text[i]
        if in_string:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                in_string = False
        elif c == '"':
            in_string = True
        elif c in "{[":
            stack.append(c)
        elif c == "}" and stack and stack[-1] == "{":
            stack.pop()
        elif c == "]" and stack and stack[-1] == "[":
            stack.pop()
        i += 1

    if in_string:
        text += '"'
    for opener in reversed(stack):
        text += "]" if opener == "[" else "}"
    return text


def _fix_newlines_in_json_strings(text: str) -> str:
    """Replace literal newlines inside JSON string values with spaces."""
    result = []
    in_string = False
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\" and in_string and i + 1 < len(text):
            result.append(text[i:i + 2])
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        result.append(" " if c == "\n" and in_string else c)
        i += 1
    return "".join(result)


def locate_json_object(text: str) -> str:
    """Return the candidate JSON object substring of `text`.

    Raises:
        JSONExtractionError: if there is no opening brace at all.
    """
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        text = fenced.group(1)

    start = text.find("{")
    end = text.rfind("}")
    if start == -1:
        raise JSONExtractionError("Model response contained no JSON object")
    if end < start:
        # No closing brace: truncated output
        return text[start:]
    return text[start:end + 1]


def extract_json(text: str) -> dict:
    """Extract a JSON object from model output, repairing it if needed.

    Raises:
        JSONExtractionError: if no attempt yields a JSON object.
    """
    candidate = _fix_newlines_in_json_strings(locate_json_object(text))

    attempts = (
        ("direct", lambda t: t),
        ("comma fix", lambda t: _TRAILING_COMMA.sub(r"\1", _MISSING_COMMA.sub('",\n"', t))),
        ("truncation repair", lambda t: _TRAILING_COMMA.sub(r"\1", _repair_truncated_json(t))),
    )
    for name, transform in attempts:
        try:
            parsed = json.loads(transform(candidate))
        except json.JSONDecodeError as e:
            logger.warning(f"JSON parse error ({name}): {e}")
            continue
        if isinstance(parsed, dict):
            if name != "direct":
                logger.info(f"JSON recovered via {name}")
            return parsed
        logger.warning(f"JSON parse ({name}) produced {type(parsed).__name__}, expected object")

    logger.error(f"All JSON repair attempts failed. Raw text: {text[:500]}...")
    raise JSONExtractionError("Failed to parse model response as JSON")
