#!/usr/bin/env python3
from __future__ import annotations

import re
from typing import Optional

from math_env_finder import MathRegion, RegionKind
from text_document import TextDocument

# Commands whose brace argument(s) must stay intact.
ARGUMENT_COMMANDS = {
    "begin": 1, "end": 1, "label": 1, "tag": 1, "ref": 1, "eqref": 1,
    "color": 1, "textcolor": 1, "hspace": 1, "vspace": 1,
    "text": 1, "textrm": 1, "textbf": 1, "textit": 1, "textsf": 1,
    "texttt": 1, "textup": 1, "textnormal": 1, "mbox": 1,
}

# \left( etc.: the delimiter belongs to the command.
DELIMITER_COMMANDS = {
    "left", "right", "middle",
    "big", "Big", "bigg", "Bigg",
    "bigl", "bigr", "Bigl", "Bigr", "biggl", "biggr", "Biggl", "Biggr",
}

# Environments taking one mandatory argument after their name.
ENVIRONMENTS_WITH_ARGUMENT = {"alignat", "alignedat", "array", "subarray"}

_BEGIN_RE = re.compile(r"\A\\begin\s*\{([^{}]*)\}")
_END_RE = re.compile(r"\\end\s*\{[^{}]*\}\s*\Z")


def cursor_marker(color: str) -> str:
    """
    Thin colored rule marking the cursor, valid in text and math mode.
    """
    html = color.lstrip("#").upper()
    return "{\\color[HTML]{" + html + "}\\rule[-0.3ex]{0.06em}{2.2ex}}"


def _group_end(source: str, i: int) -> int:
    """
    Index just past the `{...}` group (or `[...]` option) at `i`, else `i`.
    """
    n = len(source)
    if i >= n or source[i] not in "{[":
        return i
    open_ch = source[i]
    close_ch = "}" if open_ch == "{" else "]"
    depth = 0
    k = i
    while k < n:
        ch = source[k]
        if ch == "\\":
            k += 2
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return k + 1
        k += 1
    return n


def _skip_blanks(source: str, i: int) -> int:
    while i < len(source) and source[i] in " \t":
        i += 1
    return i


def _token_end(source: str, i: int) -> int:
    """
    End of the single token at `i`: control word, escape pair, group or char.
    """
    n = len(source)
    if i >= n:
        return n
    ch = source[i]
    if ch == "\\":
        j = i + 1
        if j < n and source[j].isascii() and source[j].isalpha():
            while j < n and source[j].isascii() and source[j].isalpha():
                j += 1
            return j
        return min(i + 2, n)
    if ch == "{":
        return _group_end(source, i)
    return i + 1


def _command_end(source: str, word: str, j: int) -> int:
    """
    End of a control word's arguments, for commands listed above.
    """
    if word in DELIMITER_COMMANDS:
        return _token_end(source, _skip_blanks(source, j))

    count = ARGUMENT_COMMANDS.get(word)
    if count is None:
        return j

    end = j
    if word in ("color", "textcolor"):
        end = _group_end(source, _skip_blanks(source, end))
    for _ in range(count):
        k = _skip_blanks(source, end)
        if k >= len(source) or source[k] != "{":
            return end
        name_start = k + 1
        end = _group_end(source, k)
        if word == "begin":
            name = source[name_start : end - 1].strip().rstrip("*")
            if name in ENVIRONMENTS_WITH_ARGUMENT:
                end = _group_end(source, _skip_blanks(source, end))
    return end


def _atoms(source: str) -> list[tuple[int, int, int]]:
    """
    Spans the marker must not be inserted into.

    Each entry is (lo, hi, target): inserting at p with lo < p < hi is
    unsafe, and `target` is where the marker goes instead.
    """
    atoms: list[tuple[int, int, int]] = []
    n = len(source)
    i = 0
    while i < n:
        ch = source[i]

        if ch == "%":
            nl = source.find("\n", i)
            end = n + 1 if nl == -1 else nl + 1
            atoms.append((i, end, end))
            i = end
            continue

        if ch == "\\":
            if i + 1 >= n:
                break
            if source[i + 1].isascii() and source[i + 1].isalpha():
                j = i + 1
                while j < n and source[j].isascii() and source[j].isalpha():
                    j += 1
                end = _command_end(source, source[i + 1 : j], j)
                atoms.append((i, end, end))
                i = end
            else:
                atoms.append((i, i + 2, i + 2))
                i += 2
            continue

        if ch in "^_":
            arg_start = _skip_blanks(source, i + 1)
            arg_end = _token_end(source, arg_start)
            atoms.append((i, arg_start + 1, arg_end))
            i += 1
            continue

        i += 1
    return atoms


def _content_bounds(source: str, region: MathRegion) -> tuple[int, int]:
    """
    Insertable part of the region text: inside `\\begin{..}`/`\\end{..}`.
    """
    if region.kind is not RegionKind.ENVIRONMENT:
        return 0, len(source)
    lo, hi = 0, len(source)
    m = _BEGIN_RE.match(source)
    if m:
        lo = _command_end(source, "begin", len("\\begin"))
    m = _END_RE.search(source)
    if m:
        hi = m.start()
    return lo, max(lo, hi)


def safe_insertion_point(
    source: str,
    local: int,
    lo_limit: int = 0,
    hi_limit: Optional[int] = None,
) -> Optional[int]:
    """
    Nearest offset at or around `local` where the marker keeps `source` valid.

    Moves right past the atom the offset falls in, or left to its start when
    that would leave [lo_limit, hi_limit]. None if no safe offset is found.
    """
    if hi_limit is None:
        hi_limit = len(source)
    local = min(max(local, lo_limit), hi_limit)
    atoms = _atoms(source)

    for _ in range(len(atoms) + 1):
        for lo, hi, target in atoms:
            if lo < local < hi:
                local = target if target <= hi_limit else lo
                break
        else:
            return local if lo_limit <= local <= hi_limit else None
    return None


def annotate(
    doc: TextDocument,
    region: MathRegion,
    cursor_offset: int,
    color: str,
) -> str:
    """
    Return the region's source with a cursor marker at `cursor_offset`.

    An offset outside the region returns the source unchanged.
    """
    source = doc.get_text(region.start, region.end)
    if not region.contains(cursor_offset):
        return source

    lo, hi = _content_bounds(source, region)
    local = safe_insertion_point(source, cursor_offset - region.start, lo, hi)
    if local is None:
        return source
    return source[:local] + cursor_marker(color) + source[local:]
