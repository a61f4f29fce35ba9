# cancellation.py
from __future__ import annotations

import asyncio
from typing import Any, Callable


class PreviewCancelled(Exception):
    """
    The caller's cancel signal fired before the preview was produced.
    """


class CancelSignal:
    """
    Explicit cancellation value threaded through every suspending call.

    The signal is single-shot: once cancelled it stays cancelled and runs
    each registered callback exactly once. It is not thread-safe; callers on
    other threads go through `loop.call_soon_threadsafe(signal.cancel)`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], Any]] = []
        self._timer: asyncio.TimerHandle | None = None

    @classmethod
    def after(cls, seconds: float) -> "CancelSignal":
        """
        Signal that fires `seconds` from now. Needs a running loop.
        """
        signal = cls()
        loop = asyncio.get_running_loop()
        signal._timer = loop.call_later(seconds, signal.cancel)
        return signal

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def dispose(self) -> None:
        """Stop a pending timer without cancelling."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """
        Run `callback` on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PreviewCancelled()

    async def guard(self, future: "asyncio.Future[Any]") -> Any:
        """
        Await `future`, raising PreviewCancelled as soon as the signal fires.

        The future itself is left alone: whoever owns it decides whether to
        cancel it. A result that lands after cancellation is never returned.
        """
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        fired = loop.create_future()

        def on_cancel() -> None:
            if not fired.done():
                fired.set_result(None)

        remove = self.add_callback(on_cancel)
        try:
            await asyncio.wait({future, fired}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            remove()
            if not fired.done():
                fired.cancel()

        if self._cancelled:
            if future.done() and not future.cancelled():
                # mark the exception as retrieved
                future.exception()
            raise PreviewCancelled()
        return future.result()
