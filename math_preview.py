#!/usr/bin/env python3
"""
math_preview.py

Hover previews for LaTeX math, built from the smaller pieces:

- math_env_finder   finds the math under the cursor / behind a label
- cursor_renderer   marks the cursor inside the extracted source
- macro_scanner     supplies the project's \\newcommand & co.
- engine_pool       typesets on a bounded set of latex/dvisvgm engines
- reference_preview handles hovers on \\ref{..} targets in other files

Run as a script to render the math at FILE LINE CHARACTER to an SVG file.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from cancellation import CancelSignal, PreviewCancelled
from config_loader import DEFAULT_CONFIG, PreviewConfig, load_config
from cursor_renderer import annotate
from engine_pool import Engine, RenderingEnginePool
from helper import configure_logging
from macro_scanner import MacroDefinitionScanner
from math_env_finder import MathEnvironmentLocator, MathRegion
from math_renderer import (
    LatexEngine,
    RenderError,
    RenderOptions,
    RenderResult,
    build_standalone_source,
    prepare_math_source,
)
from reference_preview import ReferencePreviewCoordinator, ReferenceTarget, number_message
from text_document import DocumentCache, Position, ProjectedDocument, TextDocument
from theme import ThemeColorTracker


@dataclass(frozen=True)
class HoverPreview:
    """
    What a hover shows: the rendered image, the math it came from and an
    optional note (e.g. the equation number at the last compilation).
    """
    result: RenderResult
    region: MathRegion
    range: tuple[int, int]
    note: Optional[str] = None

    def markdown(self) -> str:
        md = f"![equation]({self.result.data_url()})"
        if self.note:
            md += f"\n\n{self.note}"
        return md


class MathPreviewCoordinator:
    """
    Entry points for "hover on math" and "hover on reference".

    Owns the color tracker, locator, macro scanner, engine pool and the
    projected-document cache; the host only calls into it.
    """

    def __init__(
        self,
        config: PreviewConfig = DEFAULT_CONFIG,
        *,
        engine_factory: Optional[Callable[[], Engine]] = None,
        colors: Optional[ThemeColorTracker] = None,
        live_documents: Optional[Callable[[Path], Optional[TextDocument]]] = None,
    ):
        self.config = config
        self.colors = colors or ThemeColorTracker()
        self.locator = MathEnvironmentLocator(config.math_environments)
        self.scanner = MacroDefinitionScanner(
            config.macro_root,
            config.macro_globs,
            extra_file=config.macro_file,
            macro_re=config.latex_macro_re,
        )
        if engine_factory is None:
            engine_factory = partial(
                LatexEngine,
                latex_command=config.latex_command,
                dvisvgm_command=config.dvisvgm_command,
                timeout=config.render_timeout,
            )
        self.pool = RenderingEnginePool(config.pool_size, engine_factory)
        self.documents = DocumentCache()
        self.references = ReferencePreviewCoordinator(
            locator=self.locator,
            scanner=self.scanner,
            pool=self.pool,
            colors=self.colors,
            documents=self.documents,
            scale=config.scale,
            packages=config.latex_packages,
            live_documents=live_documents,
        )

    # ---------------- host notifications -----------------------------------

    def on_theme_changed(self, kind: Optional[str] = None) -> str:
        return self.colors.on_theme_changed(kind)

    def invalidate_macros(self) -> None:
        self.scanner.invalidate()

    # ---------------- rendering ---------------------------------------------

    async def find_project_macros(self, cancel: Optional[CancelSignal] = None) -> str:
        return (await self.scanner.get_preamble(cancel)).text

    async def _typeset(
        self,
        body: str,
        macros: str,
        options: RenderOptions,
        cancel: CancelSignal,
    ) -> RenderResult:
        source = build_standalone_source(
            body, macros=macros, color=options.color, packages=self.config.latex_packages
        )
        try:
            result = await self.pool.typeset(source, options, cancel)
        except RenderError as e:
            logger.warning(f"Error when rendering {body!r}: {e.diagnostic}")
            raise
        cancel.raise_if_cancelled()
        return result

    async def hover_on_math(
        self,
        doc: TextDocument,
        position: Position,
        macro_override: Optional[str] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> Optional[HoverPreview]:
        """
        Render the innermost math at `position` with a cursor marker in it.

        None when the position is not inside math.
        """
        cancel = cancel or CancelSignal()
        cancel.raise_if_cancelled()

        # host edits may land on another thread while we work
        doc = doc.snapshot()
        offset = doc.offset_at(position)
        region = self.locator.find_innermost(doc, offset)
        if region is None:
            return None

        color = self.colors.current_color()
        annotated = annotate(doc, region, offset, color)
        if macro_override is None:
            macros = (await self.scanner.get_preamble(cancel)).text
        else:
            macros = macro_override

        body = prepare_math_source(annotated, region.kind, region.env_name)
        options = RenderOptions(scale=self.config.scale, color=color)
        result = await self._typeset(body, macros, options, cancel)
        return HoverPreview(result=result, region=region, range=region.source_range)

    async def hover_on_reference(
        self,
        target: ReferenceTarget,
        cancel: Optional[CancelSignal] = None,
    ) -> Optional[HoverPreview]:
        """
        Render the math behind a reference; None means "show plain text".
        """
        if not self.config.ref_enabled:
            return None
        preview = await self.references.render_for_reference(target, cancel)
        if preview is None:
            return None
        note = preview.numbering if self.config.ref_number_enabled else None
        return HoverPreview(
            result=preview.result,
            region=preview.region,
            range=preview.region.source_range,
            note=note,
        )

    def fallback_markdown(self, target: ReferenceTarget) -> str:
        """
        Plain hover text for a reference without a rendered preview.
        """
        md = "```latex\n" + target.documentation + "\n```\n"
        note = number_message(target)
        if note is not None and self.config.ref_number_enabled:
            md += f"\n{note}\n"
        return md

    async def generate_svg(
        self,
        region: MathRegion,
        macro_override: Optional[str] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> tuple[RenderResult, str]:
        """
        Render a region as-is (no cursor) and return the macros used with it.
        """
        cancel = cancel or CancelSignal()
        if macro_override is None:
            macros = await self.find_project_macros(cancel)
        else:
            macros = macro_override
        options = RenderOptions(scale=self.config.scale, color=self.colors.current_color())
        body = prepare_math_source(region.raw_text, region.kind, region.env_name)
        result = await self._typeset(body, macros, options, cancel)
        return result, macros

    def close(self) -> None:
        self.pool.close()


# ---------------- CLI ---------------------------------------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="math_preview.py",
        description="Render the LaTeX math at a position of a file to SVG.",
    )
    parser.add_argument("input", help="LaTeX file")
    parser.add_argument("line", type=int, help="zero-based line")
    parser.add_argument("character", type=int, help="zero-based character")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yml (default: built-in defaults)",
    )
    parser.add_argument(
        "--out",
        default="preview.svg",
        help="Output SVG path (default: preview.svg)",
    )
    parser.add_argument("--theme", choices=["dark", "light"], default="light")
    parser.add_argument("--log-level", default="WARNING")
    return parser


async def _render_once(args: argparse.Namespace, cfg: PreviewConfig) -> int:
    try:
        doc = ProjectedDocument.load(Path(args.input))
    except (OSError, UnicodeDecodeError) as e:
        print(f"[math_preview] Cannot read input: {e}", file=sys.stderr)
        return 2

    coordinator = MathPreviewCoordinator(cfg, colors=ThemeColorTracker(args.theme))
    try:
        preview = await coordinator.hover_on_math(doc, Position(args.line, args.character))
    except RenderError as e:
        print(f"[math_preview] Render error:\n{e.diagnostic}", file=sys.stderr)
        return 3
    except PreviewCancelled:
        return 3
    finally:
        coordinator.close()

    if preview is None:
        print("[math_preview] No math at that position.", file=sys.stderr)
        return 1

    out_path = Path(args.out)
    out_path.write_bytes(preview.result.image)
    print(out_path)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(Path(args.config)) if args.config else DEFAULT_CONFIG
    except Exception as e:
        print(f"[math_preview] Failed to load config: {e}", file=sys.stderr)
        return 2

    return asyncio.run(_render_once(args, cfg))


if __name__ == "__main__":
    raise SystemExit(main())
