# math_renderer.py
from __future__ import annotations

import asyncio
import base64
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from math_env_finder import RegionKind

# Numbered display environments; rendered starred so no equation number shows.
NUMBERED_ENVIRONMENTS = {"equation", "align", "gather", "multline", "flalign", "alignat", "eqnarray"}

# Environments that start math mode themselves.
MATH_MODE_ENVIRONMENTS = NUMBERED_ENVIRONMENTS | {"math", "displaymath"}

_LABEL_RE = re.compile(r"\\label\s*\{[^{}]*\}")
_ENV_NAME_RE = r"(\\(?:begin|end)\s*\{)(%s)(\})"


class RenderError(Exception):
    """
    The typesetting engine rejected the input.
    """

    def __init__(self, diagnostic: str):
        super().__init__(diagnostic)
        self.diagnostic = diagnostic


@dataclass(frozen=True)
class RenderOptions:
    scale: float
    color: str

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale!r}")


@dataclass(frozen=True)
class RenderResult:
    image: bytes

    def data_url(self) -> str:
        return "data:image/svg+xml;base64," + base64.b64encode(self.image).decode("ascii")


def prepare_math_source(
    text: str,
    kind: RegionKind,
    env_name: Optional[str] = None,
    *,
    tag: Optional[str] = None,
) -> str:
    """
    Turn extracted region text into something a standalone document can set.

    - inline     -> $...$
    - display    -> \\[...\\]
    - environment: numbered families become starred; environments that need
      math mode (aligned, cases, pmatrix, ...) are wrapped in \\[...\\]

    `\\label{..}` is removed. With `tag`, the first label becomes `\\tag{tag}`
    so the preview shows the number from the last compilation.
    """
    if tag is not None and _LABEL_RE.search(text):
        text = _LABEL_RE.sub(lambda _: "\\tag{" + tag + "}", text, count=1)
    text = _LABEL_RE.sub("", text)

    if kind is RegionKind.INLINE:
        return f"${text}$"
    if kind is RegionKind.DISPLAY:
        return f"\\[{text}\\]"

    name = env_name or ""
    base = name.rstrip("*")
    if base in NUMBERED_ENVIRONMENTS and not name.endswith("*"):
        pattern = re.compile(_ENV_NAME_RE % re.escape(name))
        text = pattern.sub(lambda m: m.group(1) + name + "*" + m.group(3), text)
    if base not in MATH_MODE_ENVIRONMENTS:
        return f"\\[{text}\\]"
    return text


def build_standalone_source(
    body: str,
    *,
    macros: str = "",
    color: str = "#000000",
    packages: Optional[list[str]] = None,
) -> str:
    """
    Minimal standalone LaTeX document around `body`.

    Macro definitions go into the preamble, before \\begin{document}.
    """
    lines = [r"\documentclass[varwidth,border=1pt]{standalone}"]
    for package in packages if packages is not None else ["amsmath", "amssymb", "xcolor"]:
        lines.append(f"\\usepackage{{{package}}}")

    macros = (macros or "").strip()
    if macros:
        lines.append("% --- project macros ---")
        lines.append(macros)
        lines.append("% --- end macros ---")

    lines.append(r"\begin{document}")
    lines.append("\\color[HTML]{" + color.lstrip("#").upper() + "}")
    lines.append(body)
    lines.append(r"\end{document}")
    return "\n".join(lines) + "\n"


def extract_latex_diagnostic(log_text: str) -> str:
    """
    Pull the `! ...` error lines (and their `l.N` context) out of a LaTeX log.
    """
    out: list[str] = []
    lines = log_text.splitlines()
    for idx, line in enumerate(lines):
        if line.startswith("!"):
            out.append(line)
            for follow in lines[idx + 1 : idx + 6]:
                if follow.startswith("l."):
                    out.append(follow)
                    break
    if out:
        return "\n".join(out)
    tail = [ln for ln in lines if ln.strip()][-5:]
    return "\n".join(tail) or "unknown LaTeX error"


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


class LatexEngine:
    """
    One typesetting engine instance: latex -> dvi -> dvisvgm -> SVG.

    Each instance owns a private work directory, so instances can run side
    by side. Cancelling `typeset` kills the running subprocess.

    Requires `latex` and `dvisvgm` in PATH (or configured commands).
    """

    def __init__(
        self,
        *,
        latex_command: str = "latex",
        dvisvgm_command: str = "dvisvgm",
        timeout: float = 20.0,
    ):
        self.latex_command = latex_command
        self.dvisvgm_command = dvisvgm_command
        self.timeout = timeout
        self.workdir = Path(tempfile.mkdtemp(prefix="mathpreview-"))

    async def _run(self, args: list[str]) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=self.workdir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            raise RenderError(f"{args[0]} timed out after {self.timeout:g}s") from None
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        return proc.returncode or 0, out.decode("utf-8", errors="replace")

    async def typeset(self, source: str, options: RenderOptions) -> RenderResult:
        """
        Compile the complete LaTeX document `source` and return its SVG.
        """
        tex_path = self.workdir / "preview.tex"
        dvi_path = tex_path.with_suffix(".dvi")
        svg_path = tex_path.with_suffix(".svg")
        for stale in (dvi_path, svg_path):
            stale.unlink(missing_ok=True)
        tex_path.write_text(source, encoding="utf-8")

        # 1) latex -> dvi
        code, output = await self._run(
            [self.latex_command, "-interaction=nonstopmode", "-halt-on-error", tex_path.name]
        )
        if code != 0 or not dvi_path.exists():
            log_path = tex_path.with_suffix(".log")
            log_text = log_path.read_text(encoding="utf-8", errors="replace") if log_path.exists() else output
            raise RenderError(extract_latex_diagnostic(log_text))

        # 2) dvi -> svg
        code, output = await self._run(
            [
                self.dvisvgm_command,
                "-n",
                "-e",
                f"--zoom={options.scale:g}",
                "-o",
                svg_path.name,
                dvi_path.name,
            ]
        )
        if code != 0 or not svg_path.exists():
            raise RenderError(output.strip() or "dvisvgm failed")

        return RenderResult(image=svg_path.read_bytes())

    def close(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)
        logger.debug(f"Removed engine work directory {self.workdir}")
