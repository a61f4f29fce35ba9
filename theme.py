# theme.py
from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

LIGHT_FOREGROUND = "#ffffff"
DARK_FOREGROUND = "#000000"

_FOREGROUND_FOR_THEME = {
    "dark": LIGHT_FOREGROUND,
    "light": DARK_FOREGROUND,
}


class ThemeColorTracker:
    """
    Foreground color for rendered math, derived from the host theme.

    Only `on_theme_changed` writes; readers take whatever string is bound
    at the moment they call `current_color()`.
    """

    def __init__(
        self,
        kind: str = "light",
        *,
        lightness_provider: Optional[Callable[[], str]] = None,
    ):
        self._lightness_provider = lightness_provider
        self._color = _color_for(kind)

    def current_color(self) -> str:
        return self._color

    def on_theme_changed(self, kind: Optional[str] = None) -> str:
        """
        Called by the host when its color theme changes.

        `kind` is "dark" or "light". Without it the lightness provider is
        asked; without a provider the color flips.
        """
        if kind is None and self._lightness_provider is not None:
            kind = self._lightness_provider()

        if kind is None:
            new_color = DARK_FOREGROUND if self._color == LIGHT_FOREGROUND else LIGHT_FOREGROUND
        else:
            new_color = _color_for(kind)

        self._color = new_color
        logger.debug(f"Theme changed ({kind or 'toggle'}), math color is now {new_color}")
        return new_color


def _color_for(kind: str) -> str:
    try:
        return _FOREGROUND_FOR_THEME[kind.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown theme kind: {kind!r} (expected 'dark' or 'light')") from None
