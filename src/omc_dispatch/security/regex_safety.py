"""Static ReDoS screening and the registry of caller-supplied safe patterns."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass

# Private since 3.11, where they replaced sre_parse and sre_constants; the
# package requires 3.11 or newer.
from re import _constants as sre_constants  # type: ignore[attr-defined]
from re import _parser as sre_parse  # type: ignore[attr-defined]

logger = logging.getLogger(__name__)

MAX_REPETITIONS = 25

_REPEAT_OPS = frozenset(
    op
    for op in (
        sre_constants.MAX_REPEAT,
        sre_constants.MIN_REPEAT,
        getattr(sre_constants, "POSSESSIVE_REPEAT", None),
    )
    if op is not None
)
_UNBOUNDED = sre_constants.MAXREPEAT


@dataclass(slots=True, frozen=True)
class RegexVerdict:
    """Outcome of the static safety check."""

    safe: bool
    reason: str | None = None


def check_regex(pattern: str) -> RegexVerdict:
    """Reject invalid patterns and patterns prone to catastrophic backtracking.

    The check is purely structural: star height above one, overlapping
    alternatives under an unbounded quantifier, or more than
    ``MAX_REPETITIONS`` quantifiers in total.
    """

    try:
        parsed = sre_parse.parse(pattern)
    except (re.error, RecursionError, OverflowError) as error:
        return RegexVerdict(safe=False, reason=f"invalid pattern: {error}")

    counter = _RepeatCounter()
    reason = _scan(parsed, star_height=0, counter=counter)
    if reason is not None:
        return RegexVerdict(safe=False, reason=reason)
    if counter.total > MAX_REPETITIONS:
        return RegexVerdict(safe=False, reason="too many quantifiers")
    return RegexVerdict(safe=True)


def is_regex_safe(pattern: str) -> bool:
    return check_regex(pattern).safe


class _RepeatCounter:
    __slots__ = ("total",)

    def __init__(self) -> None:
        self.total = 0


def _scan(items, *, star_height: int, counter: _RepeatCounter) -> str | None:
    for op, av in items:
        if op in _REPEAT_OPS:
            _low, high, body = av
            counter.total += 1
            height = star_height + 1
            if height > 1:
                return "nested quantifier"
            if high == _UNBOUNDED and _has_overlapping_branch(body):
                return "overlapping alternation under quantifier"
            reason = _scan(body, star_height=height, counter=counter)
        else:
            reason = None
            for child in _children(op, av):
                reason = _scan(child, star_height=star_height, counter=counter)
                if reason is not None:
                    break
        if reason is not None:
            return reason
    return None


def _children(op, av) -> list:
    if op is sre_constants.SUBPATTERN:
        return [av[-1]]
    if op is sre_constants.BRANCH:
        return list(av[1])
    if op in (sre_constants.ASSERT, sre_constants.ASSERT_NOT):
        return [av[1]]
    if op is sre_constants.GROUPREF_EXISTS:
        return [branch for branch in av[1:] if branch is not None]
    if op is getattr(sre_constants, "ATOMIC_GROUP", None):
        return [av]
    return []


def _has_overlapping_branch(body) -> bool:
    for op, av in body:
        if op is sre_constants.SUBPATTERN:
            return _has_overlapping_branch(av[-1])
        if op is not sre_constants.BRANCH:
            continue
        heads = [_head(alternative) for alternative in av[1]]
        for index, head in enumerate(heads):
            for other in heads[index + 1 :]:
                if _heads_overlap(head, other):
                    return True
    return False


def _head(alternative):
    for op, av in alternative:
        if op is sre_constants.SUBPATTERN:
            return _head(av[-1])
        if op in _REPEAT_OPS:
            return _head(av[2])
        return (op, av)
    return None


def _heads_overlap(left, right) -> bool:
    if left is None or right is None:
        return True
    left_op, left_av = left
    right_op, right_av = right
    if sre_constants.ANY in (left_op, right_op):
        return True
    if left_op is sre_constants.LITERAL and right_op is sre_constants.LITERAL:
        return left_av == right_av
    if left_op is sre_constants.LITERAL and right_op is sre_constants.IN:
        return _set_contains(right_av, left_av)
    if left_op is sre_constants.IN and right_op is sre_constants.LITERAL:
        return _set_contains(left_av, right_av)
    # sets, categories and anything else: assume overlap
    return left_op is right_op or sre_constants.IN in (left_op, right_op)


def _set_contains(members, code: int) -> bool:
    for op, av in members:
        if op is sre_constants.LITERAL and av == code:
            return True
        if op is sre_constants.RANGE and av[0] <= code <= av[1]:
            return True
        if op in (sre_constants.CATEGORY, sre_constants.NEGATE):
            return True
    return False


@dataclass(slots=True, frozen=True)
class RegisteredPattern:
    """A compiled pattern accepted into the registry."""

    tool: str
    source: str
    pattern: re.Pattern[str]
    description: str


class PatternRegistry:
    """Per-tool registry of caller-supplied patterns that passed the safety check."""

    def __init__(self) -> None:
        self._patterns: list[RegisteredPattern] = []
        self._lock = threading.Lock()

    def register(
        self,
        *,
        tool: str,
        pattern: str,
        description: str = "",
        source: str = "caller",
    ) -> bool:
        """Register ``pattern`` for ``tool``; returns False and logs when rejected."""

        verdict = check_regex(pattern)
        if not verdict.safe:
            logger.warning(
                "[Security] Skipping unsafe regex pattern from %s: %s (%s)",
                source,
                pattern,
                verdict.reason,
            )
            return False

        entry = RegisteredPattern(
            tool=tool,
            source=source,
            pattern=re.compile(pattern),
            description=description or f"Safe pattern from {source}",
        )
        with self._lock:
            self._patterns.append(entry)
        return True

    def patterns(self, tool: str | None = None) -> list[RegisteredPattern]:
        with self._lock:
            return [entry for entry in self._patterns if tool is None or entry.tool == tool]

    def matches(self, tool: str, text: str) -> RegisteredPattern | None:
        """First registered pattern for ``tool`` that matches ``text``."""

        for entry in self.patterns(tool):
            if entry.pattern.search(text):
                return entry
        return None

    def remove_source(self, source: str) -> int:
        """Drop every pattern registered from ``source``; returns how many were removed."""

        with self._lock:
            kept = [entry for entry in self._patterns if entry.source != source]
            removed = len(self._patterns) - len(kept)
            self._patterns = kept
        return removed

    def reset(self) -> None:
        with self._lock:
            self._patterns.clear()
