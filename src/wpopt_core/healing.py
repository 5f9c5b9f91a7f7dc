"""Tolerant decoding of structured payloads from model free text.

Providers are asked for JSON but routinely wrap it in Markdown fences,
surround it with prose, leave trailing commas or stop mid-object when they
run out of tokens. ``ResponseHealer`` tries a fixed chain of repairs and
stops at the first one that yields an object carrying the required field.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import cast

from wpopt_core.errors import ResponseDecodeError
from wpopt_core.logging import LoggerLike, get_logger, log_info

DEFAULT_REQUIRED_FIELD = "htmlContent"
PREVIEW_CHARS = 200

_FENCED_BLOCK = re.compile(r"```[\w-]*[ \t]*\n?(.*?)```", re.DOTALL)
_OPENING_FENCE = re.compile(r"\s*```[\w-]*[ \t]*\n?")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_DANGLING_COMMA = re.compile(r",\s*$")
_CLOSERS = {"{": "}", "[": "]"}


class HealStrategy(StrEnum):
    """Repair strategies, in the order they are attempted."""

    AS_IS = "as_is"
    FENCED = "fenced"
    BRACE_SLICE = "brace_slice"
    TRAILING_COMMAS = "trailing_commas"
    CLOSE_BRACES = "close_braces"


@dataclass(frozen=True)
class HealResult:
    """Outcome of one healing run."""

    ok: bool
    value: dict[str, object] | None = None
    strategy_used: HealStrategy | None = None


def strip_code_fence(text: str) -> str | None:
    """Return the interior of a fenced block, or ``None`` without a fence."""
    match = _FENCED_BLOCK.search(text)
    if match is not None:
        return match.group(1).strip()
    opening = _OPENING_FENCE.match(text)
    if opening is not None:
        # Truncated output: opening fence without its closing fence.
        return text[opening.end() :].strip()
    return None


def _brace_slice(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    return text[start : end + 1] if 0 <= start < end else None


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing brace or bracket."""
    return _TRAILING_COMMA.sub(r"\1", text)


def close_open_structures(text: str) -> str | None:
    """Close an unterminated string and any unclosed objects/arrays.

    Braces and brackets inside string literals are ignored. Returns ``None``
    when nothing is left open.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = in_string
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif stack and char == stack[-1]:
            stack.pop()

    if not stack and not in_string:
        return None

    healed = text + '"' if in_string else text
    healed = _DANGLING_COMMA.sub("", remove_trailing_commas(healed))
    return healed + "".join(reversed(stack))


class ResponseHealer:
    """Recover a JSON object payload from a provider's raw text."""

    def __init__(
        self,
        *,
        required_field: str = DEFAULT_REQUIRED_FIELD,
        logger: LoggerLike | None = None,
    ) -> None:
        """Create a healer.

        Args:
            required_field: Key the decoded object must contain to count as
                a success.
            logger: Optional logger override.
        """
        self.required_field = required_field
        self._logger = get_logger(__name__) if logger is None else logger

    def heal(self, raw_text: object) -> HealResult:
        """Apply the repair chain to ``raw_text``.

        Returns:
            ``HealResult(ok=True, ...)`` with the first strategy that produced
            an object holding ``required_field``; ``HealResult(ok=False)``
            otherwise. No partial payload is ever guessed.
        """
        if not isinstance(raw_text, str) or not raw_text.strip():
            return HealResult(ok=False)

        text = raw_text.strip()
        fenced = strip_code_fence(text)
        # Slices come from the whole text first; a fence may wrap unrelated code.
        bases = [text] if not fenced or fenced == text else [text, fenced]
        sliced = [_brace_slice(base) for base in bases]
        tails = [base[base.find("{") :] for base in bases if "{" in base]

        candidates: list[tuple[HealStrategy, str | None]] = [
            (HealStrategy.AS_IS, text),
            (HealStrategy.FENCED, fenced),
        ]
        candidates += [(HealStrategy.BRACE_SLICE, item) for item in sliced]
        candidates += [
            (HealStrategy.TRAILING_COMMAS, remove_trailing_commas(item))
            for item in sliced
            if item is not None
        ]
        candidates += [
            (HealStrategy.CLOSE_BRACES, close_open_structures(tail)) for tail in tails
        ]
        for strategy, candidate in candidates:
            if not candidate:
                continue
            value = self._decode(candidate)
            if value is None:
                continue
            if strategy != HealStrategy.AS_IS:
                log_info(
                    self._logger,
                    "response_healer.healed",
                    strategy=strategy.value,
                    raw_length=len(raw_text),
                )
            return HealResult(ok=True, value=value, strategy_used=strategy)

        return HealResult(ok=False)

    def heal_or_raise(self, raw_text: object) -> dict[str, object]:
        """Return the healed payload or raise ``ResponseDecodeError``."""
        result = self.heal(raw_text)
        if result.ok and result.value is not None:
            return result.value

        text = raw_text if isinstance(raw_text, str) else ""
        if len(text) > 2 * PREVIEW_CHARS:
            preview = f"{text[:PREVIEW_CHARS]}...{text[-PREVIEW_CHARS:]}"
        else:
            preview = text
        raise ResponseDecodeError(
            f"Response could not be healed into an object with "
            f"'{self.required_field}' ({len(text)} chars).",
            preview=preview,
        )

    def _decode(self, candidate: str) -> dict[str, object] | None:
        try:
            # Models often leave raw newlines inside string values.
            value = json.loads(candidate, strict=False)
        except ValueError:
            return None
        if not isinstance(value, dict) or self.required_field not in value:
            return None
        return cast(dict[str, object], value)
