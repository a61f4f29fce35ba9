#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from cancellation import CancelSignal
from engine_pool import RenderingEnginePool
from macro_scanner import MacroDefinitionScanner
from math_env_finder import MathEnvironmentLocator, MathRegion
from math_renderer import (
    RenderError,
    RenderOptions,
    RenderResult,
    build_standalone_source,
    prepare_math_source,
)
from text_document import DocumentCache, Position, TextDocument
from theme import ThemeColorTracker


@dataclass(frozen=True)
class PreviousNumber:
    """Numbering of a label as of the last successful compilation."""
    ref_number: str


@dataclass(frozen=True)
class ReferenceTarget:
    """
    A resolved `\\ref{..}` target, supplied by the reference index.
    """
    file: Path
    position: Position
    label: str
    documentation: str = ""
    previous_compile_number: Optional[PreviousNumber] = None


@dataclass(frozen=True)
class ReferencePreview:
    result: RenderResult
    region: MathRegion
    numbering: Optional[str] = None


def number_message(target: ReferenceTarget) -> Optional[str]:
    if target.previous_compile_number is not None:
        return f"numbered {target.previous_compile_number.ref_number} at last compilation"
    return None


class ReferencePreviewCoordinator:
    """
    Renders the math a reference points at, wherever it lives.

    Open buffers come from `live_documents` (path -> document or None);
    anything else is loaded once through the DocumentCache.
    """

    def __init__(
        self,
        *,
        locator: MathEnvironmentLocator,
        scanner: MacroDefinitionScanner,
        pool: RenderingEnginePool,
        colors: ThemeColorTracker,
        documents: DocumentCache,
        scale: float = 1.0,
        packages: Optional[list[str]] = None,
        live_documents: Optional[Callable[[Path], Optional[TextDocument]]] = None,
    ):
        self.locator = locator
        self.scanner = scanner
        self.pool = pool
        self.colors = colors
        self.documents = documents
        self.scale = scale
        self.packages = packages
        self._live_documents = live_documents

    async def resolve_document(
        self,
        path: Path,
        cancel: CancelSignal,
    ) -> Optional[TextDocument]:
        if self._live_documents is not None:
            live = self._live_documents(Path(path))
            if live is not None:
                return live
        return await self.documents.get(path, cancel)

    async def find_region(
        self,
        target: ReferenceTarget,
        cancel: CancelSignal,
    ) -> Optional[MathRegion]:
        doc = await self.resolve_document(target.file, cancel)
        if doc is None:
            logger.debug(f"No document for reference target {target.file}")
            return None
        return self.locator.find_by_label(doc, target.label)

    async def render_for_reference(
        self,
        target: ReferenceTarget,
        cancel: Optional[CancelSignal] = None,
    ) -> Optional[ReferencePreview]:
        """
        Render the labelled math, or None when there is nothing to show.

        An unreadable file counts as "nothing to show". With a previous
        number, the equation is rendered with that number as its tag.
        """
        cancel = cancel or CancelSignal()
        region = await self.find_region(target, cancel)
        if region is None:
            return None

        preamble = await self.scanner.get_preamble(cancel)
        options = RenderOptions(scale=self.scale, color=self.colors.current_color())

        tag = None
        if target.previous_compile_number is not None:
            tag = target.previous_compile_number.ref_number
        body = prepare_math_source(region.raw_text, region.kind, region.env_name, tag=tag)
        source = build_standalone_source(
            body, macros=preamble.text, color=options.color, packages=self.packages
        )

        try:
            result = await self.pool.typeset(source, options, cancel)
        except RenderError as e:
            logger.warning(f"Error when rendering reference {target.label!r}: {e.diagnostic}")
            raise
        cancel.raise_if_cancelled()
        return ReferencePreview(result=result, region=region, numbering=number_message(target))
