# text_document.py
from __future__ import annotations

import asyncio
import re
from bisect import bisect_right
from pathlib import Path
from typing import NamedTuple, Optional

from loguru import logger

from cancellation import CancelSignal


class Position(NamedTuple):
    """Zero-based line / character position, as editors report it."""
    line: int
    character: int


class TextDocument:
    """
    Addressable text buffer: line/offset conversion and substring reads.

    The line-start index is built on first positional access.
    """

    def __init__(self, text: str, path: Optional[Path] = None):
        self._text = text
        self.path = path
        self._line_starts: Optional[list[int]] = None

    @property
    def text(self) -> str:
        return self._text

    def _index(self) -> list[int]:
        if self._line_starts is None:
            starts = [0]
            for m in re.finditer("\n", self._text):
                starts.append(m.end())
            self._line_starts = starts
        return self._line_starts

    @property
    def line_count(self) -> int:
        return len(self._index())

    def line_at(self, line: int) -> str:
        starts = self._index()
        start = starts[line]
        end = starts[line + 1] - 1 if line + 1 < len(starts) else len(self._text)
        return self._text[start:end].rstrip("\r")

    def offset_at(self, position: Position) -> int:
        """
        Clamp `position` into the document and return its absolute offset.
        """
        starts = self._index()
        line = min(max(position.line, 0), len(starts) - 1)
        line_len = len(self.line_at(line))
        character = min(max(position.character, 0), line_len)
        return starts[line] + character

    def position_at(self, offset: int) -> Position:
        starts = self._index()
        offset = min(max(offset, 0), len(self._text))
        line = bisect_right(starts, offset) - 1
        return Position(line, offset - starts[line])

    def get_text(self, start: int = 0, end: Optional[int] = None) -> str:
        return self._text[start:end]

    def snapshot(self) -> "TextDocument":
        """Frozen copy of the current text; later edits do not reach it."""
        return TextDocument(self.text, self.path)

    def word_range_at(self, offset: int, pattern: re.Pattern) -> Optional[tuple[int, int]]:
        """
        Range of the `pattern` match on the offset's line that covers `offset`.
        """
        pos = self.position_at(offset)
        line_start = self._index()[pos.line]
        for m in pattern.finditer(self.line_at(pos.line)):
            if m.start() <= pos.character <= m.end():
                return line_start + m.start(), line_start + m.end()
        return None


class LiveDocument(TextDocument):
    """
    A buffer the host has open. The host owns it and pushes edits.
    """

    def __init__(self, text: str, path: Optional[Path] = None, version: int = 0):
        super().__init__(text, path)
        self.version = version

    def set_text(self, text: str) -> None:
        self._text = text
        self._line_starts = None
        self.version += 1


class ProjectedDocument(TextDocument):
    """
    Read-only snapshot of a file that is not open in the host.
    """

    @classmethod
    def load(cls, path: Path) -> "ProjectedDocument":
        path = Path(path)
        return cls(path.read_text(encoding="utf-8"), path.resolve())


class DocumentCache:
    """
    path -> ProjectedDocument, loaded once and reused for the process lifetime.

    Concurrent requests for the same path share one in-flight load. Failed
    loads are not cached, so a file that appears later can still be read.
    """

    def __init__(self) -> None:
        self._documents: dict[Path, ProjectedDocument] = {}
        self._loading: dict[Path, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and Path(path).resolve() in self._documents

    def forget(self, path: Path) -> None:
        self._documents.pop(Path(path).resolve(), None)

    async def get(
        self,
        path: Path,
        cancel: Optional[CancelSignal] = None,
    ) -> Optional[ProjectedDocument]:
        cancel = cancel or CancelSignal()
        cancel.raise_if_cancelled()
        key = Path(path).resolve()

        cached = self._documents.get(key)
        if cached is not None:
            return cached

        task = self._loading.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key))
            self._loading[key] = task
        return await cancel.guard(task)

    async def _load(self, key: Path) -> Optional[ProjectedDocument]:
        try:
            document = await asyncio.to_thread(ProjectedDocument.load, key)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot load {key}: {e}")
            return None
        finally:
            self._loading.pop(key, None)
        self._documents[key] = document
        return document
