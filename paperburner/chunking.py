"""Token estimation and structure-aware Markdown splitting.

Oversized OCR output is cut into chunks that fit a translation request.
Split points are only taken outside fenced code blocks, tables and lists,
so every chunk keeps those structures whole.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from typing import Optional

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FAST_PATH_RATIO = 1.1
MIN_FILL_BEFORE_LIMIT_SPLIT = 0.1
MIN_FILL_BEFORE_HEADING_SPLIT = 0.5
MIN_FILL_BEFORE_PARAGRAPH_SPLIT = 0.7

_NON_LATIN_RE = re.compile(r"[^\x00-\x7f]")
_HEADING_RE = re.compile(r"^(#+)\s+")
_TABLE_ROW_RE = re.compile(r"^\s*\|.*\|\s*$")
_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|[\s\-:|]+\|\s*$")
_LIST_ITEM_RE = re.compile(r"^(\s*)([-*+]|\d+\.)\s+")
_FENCE = "```"


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenEstimator:
    """Character-ratio heuristic for token counts.

    Text where more than ``cjk_threshold`` of the characters fall outside
    Basic Latin is costed per character, everything else per
    ``latin_chars_per_token`` characters.
    """

    cjk_threshold: float = 0.3
    cjk_tokens_per_char: float = 1.1
    latin_chars_per_token: float = 3.5

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        ratio = len(_NON_LATIN_RE.findall(text)) / len(text)
        if ratio > self.cjk_threshold:
            return math.ceil(len(text) * self.cjk_tokens_per_char)
        return math.ceil(len(text) / self.latin_chars_per_token)


DEFAULT_ESTIMATOR = TokenEstimator()


def estimate_tokens(text: str, estimator: Optional[TokenEstimator] = None) -> int:
    """Estimate the token count of *text* with the default heuristic."""
    return (estimator or DEFAULT_ESTIMATOR).estimate(text)


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------


def is_fence(line: str) -> bool:
    return line.strip().startswith(_FENCE)


def is_table_row(line: str) -> bool:
    return bool(_TABLE_ROW_RE.match(line))


def is_table_separator(line: str) -> bool:
    return bool(_TABLE_SEPARATOR_RE.match(line)) and "-" in line


def list_marker_indent(line: str) -> Optional[int]:
    """Return the indent of a bullet/numbered marker, or None."""
    match = _LIST_ITEM_RE.match(line)
    if match is None:
        return None
    return len(match.group(1).expandtabs(4))


def heading_level(line: str) -> int:
    match = _HEADING_RE.match(line)
    return len(match.group(1)) if match else 0


def _indent_of(line: str) -> int:
    return len(line.expandtabs(4)) - len(line.expandtabs(4).lstrip(" "))


# ---------------------------------------------------------------------------
# Scan state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScanState:
    """Which Markdown structure the scanner is inside after a line."""

    in_code_block: bool = False
    in_table: bool = False
    in_list: bool = False
    list_indent: int = 0


def transition(state: ScanState, line: str, next_line: Optional[str] = None) -> ScanState:
    """Return the scan state after consuming *line*.

    *next_line* is needed to recognise a table header, which only counts
    as a table when a separator row follows it.
    """
    if is_fence(line):
        if state.in_code_block:
            return replace(state, in_code_block=False)
        if state.in_list and _indent_of(line) <= state.list_indent:
            return ScanState(in_code_block=True)
        return replace(state, in_code_block=True, in_table=False)
    if state.in_code_block:
        return state

    stripped = line.strip()

    in_table = state.in_table
    if is_table_row(line):
        if not in_table:
            in_table = is_table_separator(line) or (
                next_line is not None and is_table_separator(next_line)
            )
    elif stripped:
        in_table = False

    in_list = state.in_list
    list_indent = state.list_indent
    marker_indent = list_marker_indent(line)
    if marker_indent is not None:
        list_indent = min(list_indent, marker_indent) if in_list else marker_indent
        in_list = True
    elif in_list and stripped and _indent_of(line) <= list_indent:
        in_list = False
        list_indent = 0

    return ScanState(
        in_code_block=False,
        in_table=in_table,
        in_list=in_list,
        list_indent=list_indent,
    )


def boundary_is_open(before: ScanState, after: ScanState) -> bool:
    """True if a chunk boundary in front of the line would cut a structure."""
    return (
        before.in_code_block
        or (before.in_table and after.in_table)
        or (before.in_list and after.in_list)
    )


def _scan(lines: list[str]) -> list[bool]:
    """For each line, whether a split directly before it is structurally safe."""
    safe: list[bool] = []
    state = ScanState()
    for i, line in enumerate(lines):
        next_line = lines[i + 1] if i + 1 < len(lines) else None
        after = transition(state, line, next_line)
        safe.append(not boundary_is_open(state, after))
        state = after
    return safe


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------


def smart_split(
    markdown: str,
    token_limit: int,
    log_label: str = "",
    *,
    estimator: Optional[TokenEstimator] = None,
) -> list[str]:
    """Split *markdown* into chunks of roughly *token_limit* tokens.

    ``"\\n".join(result) == markdown`` holds for every input. Chunks that
    stay over budget after the line pass are re-split by structural
    units; a single table, code block or list that alone exceeds the
    budget is kept whole.
    """
    estimator = estimator or DEFAULT_ESTIMATOR
    label = log_label or "smart_split"
    total = estimator.estimate(markdown)
    log.debug("%s: estimated %s tokens, limit %s", label, total, token_limit)

    if total <= token_limit * FAST_PATH_RATIO:
        return [markdown]

    lines = markdown.split("\n")
    safe = _scan(lines)
    chunks: list[list[str]] = []
    current: list[str] = []
    current_tokens = 0

    for i, line in enumerate(lines):
        line_tokens = estimator.estimate(line)
        split = False
        reason = ""
        if current and safe[i]:
            if current_tokens + line_tokens > token_limit:
                split = current_tokens > token_limit * MIN_FILL_BEFORE_LIMIT_SPLIT
                reason = "token limit"
            elif 0 < heading_level(line) <= 2:
                split = current_tokens > token_limit * MIN_FILL_BEFORE_HEADING_SPLIT
                reason = "heading"
            elif not line.strip():
                split = current_tokens > token_limit * MIN_FILL_BEFORE_PARAGRAPH_SPLIT
                reason = "paragraph break"
            if split:
                log.debug(
                    "%s: split before line %s (%s, %s tokens)",
                    label,
                    i + 1,
                    reason,
                    current_tokens,
                )
        if split:
            chunks.append(current)
            current = []
            current_tokens = 0
        current.append(line)
        current_tokens += line_tokens

    if current:
        chunks.append(current)

    result: list[str] = []
    for idx, chunk_lines in enumerate(chunks, start=1):
        text = "\n".join(chunk_lines)
        tokens = estimator.estimate(text)
        if tokens > token_limit * FAST_PATH_RATIO:
            log.info(
                "%s: chunk %s (%s tokens) over limit %s, re-splitting by structure",
                label,
                idx,
                tokens,
                token_limit,
            )
            result.extend(
                split_by_structural_units(text, token_limit, label, estimator=estimator)
            )
        else:
            result.append(text)

    log.info("%s: split into %s chunks", label, len(result))
    return result


def structural_units(lines: list[str]) -> list[list[str]]:
    """Group *lines* into units that must never be separated.

    A table, fenced code block or list (with its blank and continuation
    lines) forms one unit; every other line is a unit of its own. An
    unterminated fence runs to the end of the input.
    """
    units: list[list[str]] = []
    for line, safe in zip(lines, _scan(lines)):
        if safe or not units:
            units.append([line])
        else:
            units[-1].append(line)
    return units


def split_by_structural_units(
    text: str,
    token_limit: int,
    log_label: str = "",
    *,
    estimator: Optional[TokenEstimator] = None,
) -> list[str]:
    """Greedily pack structural units into chunks under *token_limit*."""
    estimator = estimator or DEFAULT_ESTIMATOR
    label = log_label or "split_by_structural_units"
    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0

    for unit_lines in structural_units(text.split("\n")):
        unit = "\n".join(unit_lines)
        unit_tokens = estimator.estimate(unit)

        if unit_tokens > token_limit * FAST_PATH_RATIO:
            if current:
                chunks.append("\n".join(current))
                current, current_tokens = [], 0
            log.warning(
                "%s: structural unit of %s tokens exceeds limit %s, kept whole",
                label,
                unit_tokens,
                token_limit,
            )
            chunks.append(unit)
            continue

        if current and current_tokens + unit_tokens > token_limit:
            chunks.append("\n".join(current))
            current, current_tokens = [], 0
        current.append(unit)
        current_tokens += unit_tokens

    if current:
        chunks.append("\n".join(current))
    return chunks
