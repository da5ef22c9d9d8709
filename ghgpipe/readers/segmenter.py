"""Deterministic paragraph segmenter.

Splits converted markdown into the ordered paragraph list that is stored,
indexed and later cited by sequence number.  The output depends only on the
input text and the two size limits, so re-running a document yields the
same ``(fingerprint, seq)`` keys.

Rules
-----
1. Blocks are separated by one or more blank lines.
2. Prose blocks have their whitespace collapsed to single spaces; markdown
   table blocks keep their line structure.
3. A block shorter than ``min_chars`` is merged into the following one (a
   short tail is merged into the preceding one).  Headings therefore travel
   with the paragraph they introduce.
4. A block longer than ``max_chars`` is split at sentence boundaries; a
   single over-long sentence is hard-split.  Long tables are split between
   rows, each piece repeating the header.
"""
from __future__ import annotations

import re

_BLANK_LINE = re.compile(r"\n[ \t]*\n+")
_SENTENCE_END = re.compile(r"(?<=[.!?:;])\s+")


def _is_table(block: str) -> bool:
    lines = block.splitlines()
    return bool(lines) and all(line.lstrip().startswith("|") for line in lines)


def _normalize(block: str) -> str:
    if _is_table(block):
        return "\n".join(line.strip() for line in block.splitlines())
    return " ".join(block.split())


def _hard_split(text: str, max_chars: int) -> list[str]:
    return [text[i:i + max_chars].strip() for i in range(0, len(text), max_chars) if text[i:i + max_chars].strip()]


def _split_prose(text: str, max_chars: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for sentence in _SENTENCE_END.split(text):
        if len(sentence) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(_hard_split(sentence, max_chars))
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = sentence
    if current:
        pieces.append(current)
    return pieces


def _split_table(text: str, max_chars: int) -> list[str]:
    lines = text.splitlines()
    header, rows = lines[:2], lines[2:]
    header_text = "\n".join(header)
    if len(header_text) >= max_chars or not rows:
        return _hard_split(text, max_chars)
    pieces: list[str] = []
    current: list[str] = []
    for row in rows:
        candidate = "\n".join(header + current + [row])
        if current and len(candidate) > max_chars:
            pieces.append("\n".join(header + current))
            current = []
        current.append(row)
    pieces.append("\n".join(header + current))
    return pieces


def _join(first: str, second: str) -> str:
    separator = "\n" if _is_table(first) or _is_table(second) else " "
    return f"{first}{separator}{second}"


def segment(text: str, *, min_chars: int = 40, max_chars: int = 1500) -> list[str]:
    """Split *text* into ordered paragraphs."""
    if min_chars < 0 or max_chars <= 0 or min_chars >= max_chars:
        raise ValueError("require 0 <= min_chars < max_chars")

    blocks = [_normalize(b) for b in _BLANK_LINE.split(text.replace("\r\n", "\n"))]
    blocks = [b for b in blocks if b]

    merged: list[str] = []
    pending = ""
    for block in blocks:
        block = _join(pending, block) if pending else block
        if len(block) < min_chars:
            pending = block
            continue
        pending = ""
        merged.append(block)
    if pending:
        if merged:
            merged[-1] = _join(merged[-1], pending)
        else:
            merged.append(pending)

    paragraphs: list[str] = []
    for block in merged:
        if len(block) <= max_chars:
            paragraphs.append(block)
        elif _is_table(block):
            paragraphs.extend(_split_table(block, max_chars))
        else:
            paragraphs.extend(_split_prose(block, max_chars))
    return paragraphs
