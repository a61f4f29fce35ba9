#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional

from config_loader import DEFAULT_MATH_ENVIRONMENTS
from text_document import TextDocument

# Environments whose body is never scanned for delimiters.
VERBATIM_ENVIRONMENTS = {"verbatim", "Verbatim", "lstlisting", "minted", "comment"}


class RegionKind(str, Enum):
    INLINE = "inline"
    DISPLAY = "display"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class MathRegion:
    """
    A delimited span of math inside a document.

    For `$..$`, `\\(..\\)`, `$$..$$` and `\\[..\\]` the range covers the
    content between the delimiters. For named environments it covers the
    whole `\\begin{name}...\\end{name}` text, so `env_name` is recoverable
    from `raw_text` too.

    `outer_start`/`outer_end` always include the delimiters; hit testing
    uses them.
    """
    kind: RegionKind
    start: int
    end: int
    raw_text: str
    label: Optional[str] = None
    env_name: Optional[str] = None
    outer_start: Optional[int] = None
    outer_end: Optional[int] = None

    @property
    def source_range(self) -> tuple[int, int]:
        return self.start, self.end

    @property
    def outer_range(self) -> tuple[int, int]:
        start = self.start if self.outer_start is None else self.outer_start
        end = self.end if self.outer_end is None else self.outer_end
        return start, end

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def outer_length(self) -> int:
        start, end = self.outer_range
        return end - start

    def contains(self, offset: int) -> bool:
        # closed on both ends: hovering right at a delimiter counts
        start, end = self.outer_range
        return start <= offset <= end


@dataclass
class _Opener:
    """
    One still-open delimiter on the scan stack.

    token:
      - "$" / "\\("        inline
      - "$$" / "\\["       display
      - "env"              \\begin{env_name}
    """
    token: str
    outer_start: int
    content_start: int
    env_name: Optional[str] = None


@dataclass
class _ScanState:
    stack: list[_Opener] = field(default_factory=list)
    regions: list[MathRegion] = field(default_factory=list)
    labels: list[tuple[int, str]] = field(default_factory=list)


def _base_env_name(name: str) -> str:
    return name[:-1] if name.endswith("*") else name


def _read_group(text: str, i: int) -> tuple[Optional[str], int]:
    """
    Read a `{...}` group starting at `i` (leading blanks allowed).

    Nested braces and escaped characters are honored. Returns the inner text
    and the index just past the closing brace, or (None, i) when there is no
    complete group.
    """
    j = i
    n = len(text)
    while j < n and text[j] in " \t":
        j += 1
    if j >= n or text[j] != "{":
        return None, i

    depth = 0
    k = j
    while k < n:
        ch = text[k]
        if ch == "\\":
            k += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[j + 1 : k], k + 1
        k += 1
    return None, i


def _open(state: _ScanState, token: str, outer_start: int, content_start: int,
          env_name: Optional[str] = None) -> None:
    state.stack.append(_Opener(token, outer_start, content_start, env_name))


def _find_opener(state: _ScanState, token: str, env_name: Optional[str] = None) -> int:
    for idx in range(len(state.stack) - 1, -1, -1):
        opener = state.stack[idx]
        if opener.token == token and opener.env_name == env_name:
            return idx
    return -1


def _close(
    state: _ScanState,
    text: str,
    token: str,
    closer_start: int,
    closer_end: int,
    env_name: Optional[str] = None,
) -> bool:
    """
    Match a closer against the stack and record its region.

    Openers above the match are unterminated and dropped without a region.
    Returns False when nothing on the stack matches.
    """
    idx = _find_opener(state, token, env_name)
    if idx < 0:
        return False

    opener = state.stack[idx]
    del state.stack[idx:]

    if token == "env":
        start, end, kind = opener.outer_start, closer_end, RegionKind.ENVIRONMENT
    else:
        start, end = opener.content_start, closer_start
        kind = RegionKind.INLINE if token in ("$", "\\(") else RegionKind.DISPLAY

    if start < end:
        state.regions.append(
            MathRegion(
                kind=kind,
                start=start,
                end=end,
                raw_text=text[start:end],
                env_name=env_name,
                outer_start=opener.outer_start,
                outer_end=closer_end,
            )
        )
    return True


def _is_blank_line_at(text: str, i: int) -> bool:
    """True if the newline at `i` is followed by a whitespace-only line."""
    j = i + 1
    n = len(text)
    while j < n and text[j] in " \t\r":
        j += 1
    return j < n and text[j] == "\n"


def _attach_labels(regions: list[MathRegion], labels: list[tuple[int, str]]) -> list[MathRegion]:
    out: list[MathRegion] = []
    for region in regions:
        label = next(
            (name for offset, name in labels if region.start <= offset < region.end),
            None,
        )
        if label is not None:
            region = replace(region, label=label)
        out.append(region)
    return out


def scan_math_regions(
    text: str,
    environments: Iterable[str] = DEFAULT_MATH_ENVIRONMENTS,
) -> list[MathRegion]:
    """
    Single left-to-right scan that returns every well-formed math region.

    Recognized:
      $...$  \\(...\\)          -> inline
      $$...$$  \\[...\\]        -> display
      \\begin{env}...\\end{env} -> environment (env or env* in `environments`)

    Escaped characters (`\\$`, `\\%`, `\\{`, `\\\\`, ...) are single units, an
    unescaped `%` comments out the rest of the line, a blank line ends any
    open inline span, and verbatim material is skipped. Unbalanced input
    never raises; the unterminated span simply yields no region.
    """
    env_names = set(environments)
    state = _ScanState()
    n = len(text)
    i = 0

    while i < n:
        ch = text[i]

        # --- comments ---------------------------------------------------
        if ch == "%":
            nl = text.find("\n", i)
            if nl == -1:
                break
            i = nl
            continue

        # --- paragraph break ends inline math -------------------------
        if ch == "\n":
            if _is_blank_line_at(text, i):
                while state.stack and state.stack[-1].token in ("$", "\\("):
                    state.stack.pop()
            i += 1
            continue

        # --- backslash: control word, delimiter or escape -----------------
        if ch == "\\":
            if i + 1 >= n:
                break
            nxt = text[i + 1]

            if nxt.isascii() and nxt.isalpha():
                j = i + 1
                while j < n and text[j].isascii() and text[j].isalpha():
                    j += 1
                word = text[i + 1 : j]

                if word in ("begin", "end"):
                    name, after = _read_group(text, j)
                    if name is not None:
                        name = name.strip()
                        if word == "begin" and name in VERBATIM_ENVIRONMENTS:
                            stop = text.find(f"\\end{{{name}}}", after)
                            if stop == -1:
                                break
                            i = stop + len(name) + 6
                            continue
                        if _base_env_name(name) in env_names:
                            if word == "begin":
                                _open(state, "env", i, after, env_name=name)
                            else:
                                _close(state, text, "env", i, after, env_name=name)
                        i = after
                        continue

                elif word == "label":
                    name, after = _read_group(text, j)
                    if name is not None:
                        state.labels.append((i, name.strip()))
                        i = after
                        continue

                elif word == "verb" and j < n:
                    k = j + 1 if text[j] == "*" else j
                    if k < n:
                        stop = text.find(text[k], k + 1)
                        nl = text.find("\n", k + 1)
                        if stop != -1 and (nl == -1 or stop < nl):
                            i = stop + 1
                            continue

                i = j
                continue

            if nxt in "([":
                token = "\\(" if nxt == "(" else "\\["
                _open(state, token, i, i + 2)
            elif nxt in ")]":
                token = "\\(" if nxt == ")" else "\\["
                _close(state, text, token, i, i + 2)
            # anything else is an escaped character: one unit
            i += 2
            continue

        # --- dollar delimiters ----------------------------------------------
        if ch == "$":
            if state.stack and state.stack[-1].token == "$":
                _close(state, text, "$", i, i + 1)
                i += 1
            elif text.startswith("$$", i):
                if _find_opener(state, "$$") >= 0:
                    _close(state, text, "$$", i, i + 2)
                else:
                    _open(state, "$$", i, i + 2)
                i += 2
            elif _find_opener(state, "$") >= 0:
                _close(state, text, "$", i, i + 1)
                i += 1
            else:
                _open(state, "$", i, i + 1)
                i += 1
            continue

        i += 1

    regions = _attach_labels(state.regions, state.labels)
    regions.sort(key=lambda r: (r.start, -r.end))
    return regions


class MathEnvironmentLocator:
    """
    Finds math regions in a TextDocument.

    Pure and synchronous. Cross-file lookups are the caller's business.
    """

    def __init__(self, environments: Optional[Iterable[str]] = None):
        self.environments = set(environments) if environments is not None else set(DEFAULT_MATH_ENVIRONMENTS)

    def regions(self, doc: TextDocument) -> list[MathRegion]:
        return scan_math_regions(doc.text, self.environments)

    def find_innermost(self, doc: TextDocument, offset: int) -> Optional[MathRegion]:
        """
        Smallest region whose delimited span contains `offset`, or None.
        """
        candidates = [r for r in self.regions(doc) if r.contains(offset)]
        if not candidates:
            return None
        return min(candidates, key=lambda r: r.outer_length)

    def find_by_label(self, doc: TextDocument, label: str) -> Optional[MathRegion]:
        """
        Smallest region carrying `label`; the earlier one on ties.
        """
        candidates = [r for r in self.regions(doc) if r.label == label]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (r.length, r.start))
