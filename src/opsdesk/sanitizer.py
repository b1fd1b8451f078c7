# sanitizer.py
# History filtering applied to a copy of the conversation before every
# model call. Pure: no I/O, no mutation of the input, cannot fail.
#
# Sanitizing an already sanitized conversation returns it unchanged.

from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from opsdesk.models import Message

TOOL_RESULTS_PREFIX = "Tool execution results:"

# Layout whitespace that str.isprintable() rejects but text legitimately holds.
_LAYOUT = frozenset("\r\n\t")

# Lower-cased fragments seen in error text that leaked into assistant turns.
ERROR_MARKERS: tuple[str, ...] = (
    "invalid json",
    "api error",
    "ai_apicallerror",
    "failed to parse",
)
ERROR_PREFIXES: tuple[str, ...] = ("error", "failed")
# Gamma-prefixed garbage observed when provider errors were echoed back.
ERROR_TOKEN = "Γ"


class SanitizerRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    history_limit: int = Field(default=2, ge=1)
    printable_ratio: float = Field(default=0.6, ge=0, le=1)


def printable_ratio(text: str) -> float:
    if not text:
        return 0.0
    return sum(1 for ch in text if ch.isprintable() or ch in _LAYOUT) / len(text)


def is_degenerate(text: str, threshold: float) -> bool:
    """Empty, whitespace-only, or mostly non-printable once trimmed."""
    trimmed = text.strip()
    return not trimmed or printable_ratio(trimmed) < threshold


def looks_like_error(text: str) -> bool:
    low = text.strip().lower()
    if any(marker in low for marker in ERROR_MARKERS):
        return True
    if low.startswith(ERROR_PREFIXES):
        return True
    return ERROR_TOKEN in text


def is_tool_results(message: Message) -> bool:
    return message.role == "user" and message.content.lstrip().startswith(TOOL_RESULTS_PREFIX)


def sanitize(conversation: Sequence[Message], rules: SanitizerRules = SanitizerRules()) -> list[Message]:
    """
    Return the filtered, windowed copy of `conversation`.

    1. drop empty or mostly non-printable messages
    2. drop assistant messages that look like propagated errors
    3. drop tool-results messages other than the live one (the final message)
    4. keep the last `rules.history_limit` survivors
    """
    last_index = len(conversation) - 1
    kept: list[Message] = []

    for index, message in enumerate(conversation):
        if is_degenerate(message.content, rules.printable_ratio):
            continue
        if message.role == "assistant" and looks_like_error(message.content):
            continue
        if is_tool_results(message) and index != last_index:
            continue
        kept.append(Message(role=message.role, content=message.content.strip()))

    return kept[-rules.history_limit:]
