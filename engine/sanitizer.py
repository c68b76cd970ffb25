"""Deterministic cleanup of raw completion text."""

from __future__ import annotations

import re

from engine.templates import ALL_STOP_MARKERS

MATH_ARTIFACT = "mathematical expression:"
PARAGRAPH_BREAK = "\n\n\n"

# Devanagari and Bengali blocks: the small models drift into these mid-answer.
_SCRIPT_DRIFT_RE = re.compile(r"[\u0900-\u097F\u0980-\u09FF]")

# Leftmost, greedy: a unit of 10+ chars repeated back-to-back up to the end.
_TRAILING_LOOP_RE = re.compile(r"(.{10,})\1+$", re.DOTALL)


def _cut_at(text: str, marker: str) -> str:
    idx = text.find(marker)
    return text if idx < 0 else text[:idx]


def _cut_at_stop_marker(text: str) -> str:
    positions = [idx for idx in (text.find(m) for m in ALL_STOP_MARKERS) if idx >= 0]
    return text[: min(positions)] if positions else text


def _cut_at_script_drift(text: str) -> str:
    match = _SCRIPT_DRIFT_RE.search(text)
    return text[: match.start()] if match else text


def collapse_trailing_loop(text: str) -> str:
    """Replace a trailing run of a repeated unit with a single copy of it.

    The greedy unit may itself be periodic (four copies match as two doubled
    copies), so collapsing repeats until the tail no longer loops.
    """
    body = text.rstrip()
    collapsed = body
    match = _TRAILING_LOOP_RE.search(collapsed)
    while match is not None:
        collapsed = collapsed[: match.start()] + match.group(1)
        match = _TRAILING_LOOP_RE.search(collapsed)
    return text if collapsed == body else collapsed


def clean_response(raw_text: str | None) -> str:
    text = raw_text or ""
    text = _cut_at_stop_marker(text)
    text = _cut_at(text, MATH_ARTIFACT)
    text = _cut_at(text, PARAGRAPH_BREAK)
    text = _cut_at_script_drift(text)
    text = collapse_trailing_loop(text)
    return text.strip()
