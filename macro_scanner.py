#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

from loguru import logger

from cancellation import CancelSignal, PreviewCancelled
from config_loader import DEFAULT_CONFIG


@dataclass(frozen=True)
class MacroPreamble:
    """
    Concatenated user macro definitions, as of one completed scan.
    """
    text: str
    scanned_at_version: int


def strip_comments(text: str) -> str:
    """Remove TeX comments (unescaped %) but keep the line breaks."""
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\" and i + 1 < n:
            out.append(text[i : i + 2])
            i += 2
            continue
        if ch == "%":
            nl = text.find("\n", i)
            if nl == -1:
                break
            i = nl
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _skip_blanks(text: str, i: int) -> int:
    while i < len(text) and text[i] in " \t\r\n":
        i += 1
    return i


def _balanced_end(text: str, i: int, open_ch: str = "{", close_ch: str = "}") -> int:
    """Index just past the group opening at `i`, or -1 if it never closes."""
    if i >= len(text) or text[i] != open_ch:
        return -1
    depth = 0
    k = i
    while k < len(text):
        ch = text[k]
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
    return -1


def _read_control_sequence(text: str, i: int) -> tuple[Optional[str], int]:
    """Read `\\name` (or a control symbol) at `i`."""
    if i >= len(text) or text[i] != "\\":
        return None, i
    j = i + 1
    while j < len(text) and text[j].isascii() and (text[j].isalpha() or text[j] == "@"):
        j += 1
    if j == i + 1:
        j = min(i + 2, len(text))
    return text[i:j], j


def _read_name(text: str, i: int) -> tuple[Optional[str], int]:
    """Macro name given as `{\\name}` or bare `\\name`."""
    i = _skip_blanks(text, i)
    if i < len(text) and text[i] == "{":
        end = _balanced_end(text, i)
        if end < 0:
            return None, i
        return text[i + 1 : end - 1].strip() or None, end
    return _read_control_sequence(text, i)


def _skip_options(text: str, i: int, limit: int) -> int:
    """Skip up to `limit` `[...]` groups (argument count, default value)."""
    for _ in range(limit):
        k = _skip_blanks(text, i)
        end = _balanced_end(text, k, "[", "]")
        if end < 0:
            break
        i = end
    return i


def _read_groups(text: str, i: int, count: int) -> int:
    """Index past `count` consecutive brace groups, or -1."""
    for _ in range(count):
        k = _skip_blanks(text, i)
        i = _balanced_end(text, k)
        if i < 0:
            return -1
    return i


def _parse_definition(text: str, start: int, command: str) -> tuple[Optional[str], int]:
    """
    Parse one definition whose command word ends at `start`.

    Returns (macro_name, end) or (None, start) when malformed.
    """
    i = start
    if i < len(text) and text[i] == "*":
        i += 1

    if command in ("newcommand", "renewcommand", "providecommand"):
        name, i = _read_name(text, i)
        if name is None:
            return None, start
        end = _read_groups(text, _skip_options(text, i, 2), 1)
        return (name, end) if end > 0 else (None, start)

    if command == "DeclareMathOperator":
        name, i = _read_name(text, i)
        if name is None:
            return None, start
        end = _read_groups(text, i, 1)
        return (name, end) if end > 0 else (None, start)

    if command in ("newenvironment", "renewenvironment"):
        k = _skip_blanks(text, i)
        name_end = _balanced_end(text, k)
        if name_end < 0:
            return None, start
        name = "env:" + text[k + 1 : name_end - 1].strip()
        end = _read_groups(text, _skip_options(text, name_end, 2), 2)
        return (name, end) if end > 0 else (None, start)

    # \def family: \def\name<parameter text>{body}
    name, i = _read_control_sequence(text, _skip_blanks(text, i))
    if name is None:
        return None, start
    brace = text.find("{", i)
    if brace < 0 or "\n\n" in text[i:brace]:
        return None, start
    end = _balanced_end(text, brace)
    return (name, end) if end > 0 else (None, start)


def extract_macro_definitions(
    text: str,
    macro_re: re.Pattern = DEFAULT_CONFIG.latex_macro_re,
) -> Iterator[tuple[str, str]]:
    """
    Yield (macro_name, definition_source) for each definition in `text`.

    Handles \\newcommand, \\renewcommand, \\providecommand (starred too, with
    optional [n][default]), \\def / \\gdef / \\edef / \\xdef,
    \\DeclareMathOperator and \\newenvironment / \\renewenvironment.
    """
    clean = strip_comments(text)
    pos = 0
    for m in macro_re.finditer(clean):
        if m.start() < pos:
            # inside the body of a definition already yielded
            continue
        command = m.group(0).lstrip("\\")
        name, end = _parse_definition(clean, m.end(), command)
        if name is None:
            continue
        pos = end
        yield name, clean[m.start() : end]


class MacroDefinitionScanner:
    """
    Project-wide macro preamble, cached until invalidated.

    Files are read in glob order (each glob sorted), `extra_file` first.
    A macro defined more than once keeps its first position and its last
    definition.
    """

    def __init__(
        self,
        root: Path,
        globs: Iterable[str] = ("**/*.tex",),
        *,
        extra_file: Optional[Path] = None,
        macro_re: re.Pattern = DEFAULT_CONFIG.latex_macro_re,
    ):
        self.root = Path(root)
        self.globs = list(globs)
        self.extra_file = Path(extra_file) if extra_file is not None else None
        self.macro_re = macro_re

        self._cached: Optional[MacroPreamble] = None
        self._dirty = True
        self._generation = 0
        self._version = 0
        self._scan_task: Optional[asyncio.Task] = None
        self._waiters = 0

    @property
    def cached(self) -> Optional[MacroPreamble]:
        return self._cached

    def invalidate(self) -> None:
        """Mark the cache stale; the next get_preamble() rescans."""
        self._dirty = True
        self._generation += 1

    def is_current(self, preamble: MacroPreamble) -> bool:
        return not self._dirty and preamble.scanned_at_version == self._version

    def _list_files(self) -> list[Path]:
        files: list[Path] = []
        seen: set[Path] = set()
        if self.extra_file is not None:
            files.append(self.extra_file)
            seen.add(self.extra_file.resolve())
        for pattern in self.globs:
            for p in sorted(self.root.glob(pattern)):
                # skip hidden dirs
                if any(seg.startswith(".") for seg in p.relative_to(self.root).parts):
                    continue
                resolved = p.resolve()
                if resolved in seen or not p.is_file():
                    continue
                seen.add(resolved)
                files.append(p)
        return files

    async def _scan(self) -> MacroPreamble:
        generation = self._generation
        files = await asyncio.to_thread(self._list_files)

        definitions: dict[str, str] = {}
        for path in files:
            try:
                text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping unreadable macro source {path}: {e}")
                continue
            for name, source in extract_macro_definitions(text, self.macro_re):
                definitions[name] = source

        self._version += 1
        preamble = MacroPreamble("\n".join(definitions.values()), self._version)
        self._cached = preamble
        if generation == self._generation:
            self._dirty = False
        logger.debug(
            f"Scanned {len(files)} files, {len(definitions)} macros (version {self._version})"
        )
        return preamble

    def _scan_finished(self, task: asyncio.Task) -> None:
        if self._scan_task is task:
            self._scan_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Macro scan failed: {task.exception()!r}")

    async def get_preamble(self, cancel: Optional[CancelSignal] = None) -> MacroPreamble:
        """
        Cached preamble, or the result of a (shared) rescan when invalidated.

        A caller whose signal fires stops waiting; the scan itself is
        abandoned only when no caller is waiting for it any more.
        """
        cancel = cancel or CancelSignal()
        cancel.raise_if_cancelled()
        if self._cached is not None and not self._dirty:
            return self._cached

        task = self._scan_task
        if task is None:
            task = asyncio.ensure_future(self._scan())
            task.add_done_callback(self._scan_finished)
            self._scan_task = task

        self._waiters += 1
        try:
            return await cancel.guard(task)
        except PreviewCancelled:
            logger.debug("Macro scan wait cancelled")
            raise
        finally:
            self._waiters -= 1
            if self._waiters == 0 and not task.done():
                task.cancel()
                if self._scan_task is task:
                    self._scan_task = None
