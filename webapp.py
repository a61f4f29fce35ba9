#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from flask import Flask, abort, jsonify, request
from loguru import logger

from cancellation import CancelSignal, PreviewCancelled
from config_loader import DEFAULT_CONFIG, PreviewConfig, load_config
from engine_pool import Engine
from helper import configure_logging
from math_preview import HoverPreview, MathPreviewCoordinator
from math_renderer import RenderError
from reference_preview import PreviousNumber, ReferenceTarget
from text_document import LiveDocument, Position, TextDocument

BASE_DIR = Path.cwd()
CONFIG_PATH = BASE_DIR / "config.yml"


class PreviewRuntime:
    """
    Runs the coordinator on its own event loop thread.

    Flask views are synchronous; they hand coroutines to the loop and block
    on the result. Each call gets a CancelSignal that fires after `timeout`.
    """

    def __init__(self, coordinator: MathPreviewCoordinator):
        self.coordinator = coordinator
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self.loop.run_forever, name="math-preview-loop", daemon=True
        )
        self._thread.start()

    def run(self, make_coro: Callable[[CancelSignal], Awaitable[Any]], timeout: float) -> Any:
        async def runner() -> Any:
            cancel = CancelSignal.after(timeout)
            try:
                return await make_coro(cancel)
            finally:
                cancel.dispose()

        return asyncio.run_coroutine_threadsafe(runner(), self.loop).result()

    def call(self, fn: Callable[[], Any]) -> Any:
        """Run a plain function on the loop thread."""
        async def runner() -> Any:
            return fn()

        return asyncio.run_coroutine_threadsafe(runner(), self.loop).result()

    def close(self) -> None:
        self.call(self.coordinator.close)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


class LiveDocumentRegistry:
    """Buffers the host has open, keyed by resolved path."""

    def __init__(self) -> None:
        self._docs: dict[Path, LiveDocument] = {}
        self._lock = threading.Lock()

    def get(self, path: Path) -> Optional[TextDocument]:
        with self._lock:
            return self._docs.get(Path(path).resolve())

    def put(self, path: Path, text: str) -> LiveDocument:
        key = Path(path).resolve()
        with self._lock:
            doc = self._docs.get(key)
            if doc is None:
                doc = LiveDocument(text, key)
                self._docs[key] = doc
            else:
                doc.set_text(text)
            return doc

    def remove(self, path: Path) -> bool:
        with self._lock:
            return self._docs.pop(Path(path).resolve(), None) is not None


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        abort(400, description=f"'{key}' must be a non-negative integer")
    return value


def _preview_json(preview: Optional[HoverPreview]) -> dict[str, Any]:
    if preview is None:
        return {"found": False}
    return {
        "found": True,
        "image": preview.result.data_url(),
        "range": list(preview.range),
        "note": preview.note,
        "markdown": preview.markdown(),
    }


def create_app(
    cfg: PreviewConfig = DEFAULT_CONFIG,
    *,
    engine_factory: Optional[Callable[[], Engine]] = None,
) -> Flask:
    app = Flask(__name__)
    registry = LiveDocumentRegistry()
    coordinator = MathPreviewCoordinator(
        cfg, engine_factory=engine_factory, live_documents=registry.get
    )
    runtime = PreviewRuntime(coordinator)
    app.extensions["math_preview"] = runtime

    def run_hover(make_coro: Callable[[CancelSignal], Awaitable[Any]]):
        try:
            return jsonify(runtime.run(make_coro, cfg.hover_timeout))
        except RenderError as e:
            return jsonify({"found": False, "error": "render", "diagnostic": e.diagnostic}), 422
        except PreviewCancelled:
            logger.debug("Hover timed out")
            return jsonify({"found": False, "error": "cancelled"}), 504

    @app.route("/documents", methods=["PUT"])
    def open_document():
        payload = request.get_json(silent=True) or {}
        path, text = payload.get("path"), payload.get("text")
        if not isinstance(path, str) or not isinstance(text, str):
            abort(400, description="'path' and 'text' are required")
        doc = registry.put(Path(path), text)
        return jsonify({"path": str(doc.path), "version": doc.version})

    @app.route("/documents", methods=["DELETE"])
    def close_document():
        payload = request.get_json(silent=True) or {}
        path = payload.get("path")
        if not isinstance(path, str):
            abort(400, description="'path' is required")
        return jsonify({"closed": registry.remove(Path(path))})

    @app.route("/hover/math", methods=["POST"])
    def hover_math():
        payload = request.get_json(silent=True) or {}
        position = Position(_require_int(payload, "line"), _require_int(payload, "character"))
        text, path = payload.get("text"), payload.get("path")

        doc: Optional[TextDocument] = None
        if isinstance(text, str):
            doc = LiveDocument(text)
        elif isinstance(path, str):
            doc = registry.get(Path(path))
        else:
            abort(400, description="'text' or 'path' is required")

        async def hover(cancel: CancelSignal):
            target_doc = doc
            if target_doc is None:
                target_doc = await coordinator.documents.get(Path(path), cancel)
            if target_doc is None:
                return {"found": False}
            preview = await coordinator.hover_on_math(target_doc, position, cancel=cancel)
            return _preview_json(preview)

        return run_hover(hover)

    @app.route("/hover/reference", methods=["POST"])
    def hover_reference():
        payload = request.get_json(silent=True) or {}
        file, label = payload.get("file"), payload.get("label")
        if not isinstance(file, str) or not isinstance(label, str):
            abort(400, description="'file' and 'label' are required")
        previous = payload.get("previous_number")
        target = ReferenceTarget(
            file=Path(file),
            position=Position(_require_int(payload, "line"), _require_int(payload, "character")),
            label=label,
            documentation=str(payload.get("documentation", "")),
            previous_compile_number=PreviousNumber(str(previous)) if previous else None,
        )

        async def hover(cancel: CancelSignal):
            preview = await coordinator.hover_on_reference(target, cancel)
            body = _preview_json(preview)
            if preview is None:
                body["fallback"] = coordinator.fallback_markdown(target)
            return body

        return run_hover(hover)

    @app.route("/theme", methods=["POST"])
    def theme_changed():
        payload = request.get_json(silent=True) or {}
        kind = payload.get("kind")
        if kind is not None and not isinstance(kind, str):
            abort(400, description="'kind' must be 'dark' or 'light'")
        try:
            color = runtime.call(lambda: coordinator.on_theme_changed(kind))
        except ValueError as e:
            abort(400, description=str(e))
        return jsonify({"color": color})

    @app.route("/macros", methods=["GET"])
    def macros():
        async def fetch(cancel: CancelSignal):
            preamble = await coordinator.scanner.get_preamble(cancel)
            return {"text": preamble.text, "version": preamble.scanned_at_version}

        return run_hover(fetch)

    @app.route("/macros/invalidate", methods=["POST"])
    def invalidate_macros():
        runtime.call(coordinator.invalidate_macros)
        return jsonify({"invalidated": True})

    return app


if __name__ == "__main__":
    configure_logging("INFO")
    cfg = load_config(CONFIG_PATH) if CONFIG_PATH.exists() else DEFAULT_CONFIG
    create_app(cfg).run(debug=False)
