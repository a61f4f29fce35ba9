# engine_pool.py
from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from cancellation import CancelSignal, PreviewCancelled
from math_renderer import RenderError, RenderOptions, RenderResult


class Engine(Protocol):
    async def typeset(self, source: str, options: RenderOptions) -> RenderResult: ...

    def close(self) -> None: ...


class RenderingEnginePool:
    """
    Fixed-size pool of reusable typesetting engine instances.

    Instances are created lazily, up to `size`. Requests beyond that wait in
    a FIFO queue. Cancelling a queued request removes it without touching an
    instance; cancelling a dispatched one cancels the engine job and the
    instance goes back to the pool once the job has stopped.

    A RenderError stays with the request that caused it. Any other failure
    retires the instance and its slot is refilled on demand.
    """

    def __init__(self, size: int, engine_factory: Callable[[], Engine]):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self._engine_factory = engine_factory
        self._idle: list[Engine] = []
        self._waiters: deque[asyncio.Future] = deque()
        self._created = 0
        self._active = 0
        self._closed = False

    # ---------------- introspection ------------------------------------

    @property
    def created(self) -> int:
        return self._created

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    # ---------------- instance bookkeeping -------------------------------

    async def _acquire(self, cancel: CancelSignal) -> Engine:
        cancel.raise_if_cancelled()
        if self._closed:
            raise RuntimeError("engine pool is closed")

        if self._idle and not self._waiters:
            return self._idle.pop()
        if self._created < self.size:
            self._created += 1
            try:
                return self._engine_factory()
            except Exception:
                self._created -= 1
                raise

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await cancel.guard(waiter)
        except (PreviewCancelled, asyncio.CancelledError):
            if waiter.done() and not waiter.cancelled():
                # handed an instance (or a failed rebuild) in the same tick
                if waiter.exception() is None:
                    self._release(waiter.result())
            else:
                waiter.cancel()
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self, engine: Engine) -> None:
        if self._closed:
            engine.close()
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(engine)
                return
        self._idle.append(engine)

    def _retire(self, engine: Engine) -> None:
        self._created -= 1
        try:
            engine.close()
        except Exception as e:
            logger.warning(f"Failed to close retired engine: {e}")
        # a freed slot lets the oldest waiter build a fresh instance
        while self._waiters and not self._closed:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._created += 1
            try:
                engine = self._engine_factory()
            except Exception as e:
                self._created -= 1
                logger.error(f"Could not rebuild typesetting engine: {e!r}")
                waiter.set_exception(e)
                continue
            waiter.set_result(engine)
            return

    def _on_job_done(self, engine: Engine, job: "asyncio.Future[Any]") -> None:
        self._active -= 1
        if job.cancelled():
            self._release(engine)
            return
        exc = job.exception()
        if exc is None or isinstance(exc, RenderError):
            self._release(engine)
        else:
            logger.error(f"Typesetting engine failed, retiring instance: {exc!r}")
            self._retire(engine)

    # ---------------- public API -------------------------------------------

    async def typeset(
        self,
        source: str,
        options: RenderOptions,
        cancel: Optional[CancelSignal] = None,
    ) -> RenderResult:
        """
        Typeset `source` on the next free instance.

        Raises RenderError for input the engine rejects and PreviewCancelled
        when `cancel` fires first.
        """
        cancel = cancel or CancelSignal()
        try:
            engine = await self._acquire(cancel)
        except PreviewCancelled:
            raise
        except Exception as e:
            raise RenderError(f"no typesetting engine available: {e}") from e

        self._active += 1
        job = asyncio.ensure_future(engine.typeset(source, options))
        job.add_done_callback(lambda fut: self._on_job_done(engine, fut))

        try:
            return await cancel.guard(job)
        except (PreviewCancelled, asyncio.CancelledError):
            job.cancel()
            logger.debug("Render cancelled after dispatch")
            raise
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"typesetting engine failure: {e}") from e

    def close(self) -> None:
        self._closed = True
        for waiter in self._waiters:
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
        for engine in self._idle:
            engine.close()
        self._idle.clear()
