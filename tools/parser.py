"""
In-band tool call extraction from free-form model text

Fallback ladder, first grammar that yields calls wins for the whole text:
  1. <tool_calls>...</tool_calls> blocks (single object or JSON array)
  2. fenced code blocks holding a call object or array
  3. bare lines that are a complete JSON object with a string "name"

Parsing is total: malformed JSON that the repair step cannot fix yields
zero calls for that block and never raises.
"""
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

from core.logger import setup_logger
from core.messages import ToolCall

logger = setup_logger(__name__)

TAG_PATTERN = re.compile(r"<(tool_calls?)>(.*?)</\1>", re.DOTALL)
FENCE_PATTERN = re.compile(r"```\w*\s*\n(.*?)\n```", re.DOTALL)
TRAILING_COMMA_PATTERN = re.compile(r",(\s*[}\]])")
BLANK_LINES_PATTERN = re.compile(r"\n\s*\n")


@dataclass
class ParseResult:
    tool_calls: List[ToolCall] = field(default_factory=list)
    cleaned_text: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def generate_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def repair_json(content: str) -> str:
    """Strip trailing commas and wrap bare key/value content in braces"""
    repaired = TRAILING_COMMA_PATTERN.sub(r"\1", content.strip())
    if not repaired.startswith("{") and not repaired.startswith("["):
        repaired = "{" + repaired + "}"
    return repaired


def load_json(content: str) -> Optional[Any]:
    """Decode JSON, retrying once after repair. Returns None when unrecoverable."""
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        pass

    try:
        value = json.loads(repair_json(content))
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Dropping unparseable tool call block: {e}")
        return None

    logger.debug("Tool call JSON parsed after repair")
    return value


def _normalize_arguments(raw: Any) -> Any:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return {}
    return raw


def calls_from_value(value: Any) -> List[ToolCall]:
    """Turn a decoded call object or array into validated ToolCalls"""
    items = value if isinstance(value, list) else [value]
    calls = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        calls.append(ToolCall(
            id=generate_call_id(),
            name=name.strip(),
            arguments=_normalize_arguments(item.get("arguments")),
        ))
    return calls


def _clean(text: str) -> str:
    return BLANK_LINES_PATTERN.sub("\n", text).strip()


def _parse_tagged(text: str) -> Optional[ParseResult]:
    matches = list(TAG_PATTERN.finditer(text))
    if not matches:
        return None

    calls: List[ToolCall] = []
    for match in matches:
        value = load_json(match.group(2).strip())
        if value is not None:
            calls.extend(calls_from_value(value))

    # Tags are stripped even when their content failed to parse
    cleaned = TAG_PATTERN.sub("", text)
    return ParseResult(tool_calls=calls, cleaned_text=_clean(cleaned))


def _parse_fenced(text: str) -> Optional[ParseResult]:
    calls: List[ToolCall] = []

    def replace(match: re.Match) -> str:
        content = match.group(1).strip()
        if not content.startswith("{") and not content.startswith("["):
            return match.group(0)
        value = load_json(content)
        found = calls_from_value(value) if value is not None else []
        if not found:
            return match.group(0)
        calls.extend(found)
        return ""

    cleaned = FENCE_PATTERN.sub(replace, text)
    if not calls:
        return None
    return ParseResult(tool_calls=calls, cleaned_text=_clean(cleaned))


def _bare_line_call(line: str) -> Optional[ToolCall]:
    stripped = line.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    value = load_json(stripped)
    if value is None:
        return None
    found = calls_from_value(value)
    return found[0] if found else None


def _parse_bare_lines(text: str) -> Optional[ParseResult]:
    calls: List[ToolCall] = []
    kept = []
    for line in text.split("\n"):
        call = _bare_line_call(line)
        if call is None:
            kept.append(line)
        else:
            calls.append(call)
    if not calls:
        return None
    return ParseResult(tool_calls=calls, cleaned_text=_clean("\n".join(kept)))


def parse_tool_calls(text: str) -> ParseResult:
    """Extract tool calls from model text; never raises"""
    if not text:
        return ParseResult(cleaned_text="")

    fallback = ParseResult(cleaned_text=text)
    tagged = _parse_tagged(text)
    if tagged is not None:
        if tagged.has_tool_calls:
            logger.info(f"Parsed {len(tagged.tool_calls)} tool call(s): {summarize_tool_calls(tagged.tool_calls)}")
            return tagged
        # Every tagged block was unusable; later grammars see the text without tags
        fallback = tagged
        text = tagged.cleaned_text

    for grammar in (_parse_fenced, _parse_bare_lines):
        result = grammar(text)
        if result is not None:
            logger.info(f"Parsed {len(result.tool_calls)} tool call(s): {summarize_tool_calls(result.tool_calls)}")
            return result

    return fallback


def has_tool_call_tags(text: str) -> bool:
    """Cheap check for whether the text could contain a tool call"""
    if not text:
        return False
    if TAG_PATTERN.search(text):
        return True
    if any('"name"' in m.group(1) for m in FENCE_PATTERN.finditer(text)):
        return True
    return any(_bare_line_call(line) is not None for line in text.split("\n"))


def summarize_tool_calls(calls: List[Any]) -> str:
    """One-line summary like "calculator(expression='1+1'), echo()" for logs"""
    parts = []
    for call in calls:
        arguments = getattr(call, "arguments", {})
        if isinstance(arguments, str):
            arguments = _normalize_arguments(arguments)
        if isinstance(arguments, dict):
            args = ", ".join(f"{k}={v!r}" for k, v in arguments.items())
        else:
            args = repr(arguments)
        parts.append(f"{call.name}({args})")
    return ", ".join(parts)
