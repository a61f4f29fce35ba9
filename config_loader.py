# config_loader.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import re

try:
    import yaml  # PyYAML
except ImportError as e:
    raise SystemExit(
        "Missing dependency: PyYAML\n"
        "Install with: python -m pip install pyyaml"
    ) from e


class PreviewConfig:
    """
    Immutable-ish container for hover preview configuration.
    """

    def __init__(
        self,
        *,
        scale: float,
        ref_enabled: bool,
        ref_number_enabled: bool,
        pool_size: int,
        render_timeout: float,
        hover_timeout: float,
        macro_root: Path,
        macro_globs: list[str],
        macro_file: Optional[Path],
        math_environments: set[str],
        latex_command: str,
        dvisvgm_command: str,
        latex_packages: list[str],
        latex_macro_re: re.Pattern,
    ):
        self.scale = scale
        self.ref_enabled = ref_enabled
        self.ref_number_enabled = ref_number_enabled
        self.pool_size = pool_size
        self.render_timeout = render_timeout
        self.hover_timeout = hover_timeout
        self.macro_root = macro_root
        self.macro_globs = macro_globs
        self.macro_file = macro_file
        self.math_environments = math_environments
        self.latex_command = latex_command
        self.dvisvgm_command = dvisvgm_command
        self.latex_packages = latex_packages
        self.latex_macro_re = latex_macro_re


# ---------------- Defaults ---------------------------------------------------

DEFAULT_MATH_ENVIRONMENTS = {
    "align", "alignat", "aligned", "alignedat", "array", "Bmatrix", "bmatrix",
    "cases", "CD", "displaymath", "eqnarray", "equation", "flalign", "gather",
    "gathered", "math", "matrix", "multline", "pmatrix", "smallmatrix", "split",
    "subarray", "Vmatrix", "vmatrix",
}

DEFAULT_CONFIG = PreviewConfig(
    scale=1.0,
    ref_enabled=True,
    ref_number_enabled=True,
    pool_size=2,
    render_timeout=20.0,
    hover_timeout=30.0,
    macro_root=Path("."),
    macro_globs=["**/*.tex", "**/*.sty", "**/*.cls"],
    macro_file=None,
    math_environments=DEFAULT_MATH_ENVIRONMENTS,
    latex_command="latex",
    dvisvgm_command="dvisvgm",
    latex_packages=["amsmath", "amssymb", "xcolor"],
    latex_macro_re=re.compile(
        r"\\(?:[gex]?def|(?:re)?newcommand|providecommand|DeclareMathOperator"
        r"|(?:re)?newenvironment)(?![A-Za-z])"
    ),
)

# ---------------- Loader -----------------------------------------------------


def _as_str_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{name} must be a list of strings")
    return [str(v) for v in value]


def _as_positive(value: Any, name: str) -> float:
    number = float(value)
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return number


def _as_optional_path(value: Any, base: Path) -> Optional[Path]:
    if value is None or str(value).strip() == "":
        return None
    p = Path(str(value)).expanduser()
    return p if p.is_absolute() else (base / p)


def load_config(path: Path) -> PreviewConfig:
    """
    Load YAML config and return a PreviewConfig instance.

    Relative paths (macro_root, macro_file) are resolved against the
    directory holding the config file.
    """
    path = Path(path)
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise TypeError("Config root must be a mapping")

    base = path.resolve().parent
    regex = raw.get("regex", {}) or {}

    macro_root = _as_optional_path(raw.get("macro_root"), base) or base

    return PreviewConfig(
        scale=_as_positive(raw.get("scale", DEFAULT_CONFIG.scale), "scale"),
        ref_enabled=bool(raw.get("ref_enabled", DEFAULT_CONFIG.ref_enabled)),
        ref_number_enabled=bool(
            raw.get("ref_number_enabled", DEFAULT_CONFIG.ref_number_enabled)
        ),
        pool_size=int(_as_positive(raw.get("pool_size", DEFAULT_CONFIG.pool_size), "pool_size")),
        render_timeout=_as_positive(
            raw.get("render_timeout", DEFAULT_CONFIG.render_timeout), "render_timeout"
        ),
        hover_timeout=_as_positive(
            raw.get("hover_timeout", DEFAULT_CONFIG.hover_timeout), "hover_timeout"
        ),
        macro_root=macro_root,
        macro_globs=_as_str_list(
            raw.get("macro_globs", DEFAULT_CONFIG.macro_globs), "macro_globs"
        ),
        macro_file=_as_optional_path(raw.get("macro_file"), base),
        math_environments=set(
            _as_str_list(
                raw.get("math_environments", sorted(DEFAULT_CONFIG.math_environments)),
                "math_environments",
            )
        ),
        latex_command=str(raw.get("latex_command", DEFAULT_CONFIG.latex_command)),
        dvisvgm_command=str(raw.get("dvisvgm_command", DEFAULT_CONFIG.dvisvgm_command)),
        latex_packages=_as_str_list(
            raw.get("latex_packages", DEFAULT_CONFIG.latex_packages), "latex_packages"
        ),
        latex_macro_re=re.compile(
            regex.get("latex_macro_re", DEFAULT_CONFIG.latex_macro_re.pattern)
        ),
    )
