"""Cooperative, linkable cancellation tokens."""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    A cancellation flag that can be linked to parent tokens.

    A linked token is cancelled as soon as any of its parents is.  Code
    checks :attr:`cancelled` at safe points; callbacks registered with
    :meth:`register` run synchronously on cancellation (for example to
    cancel an in-flight ``asyncio`` task).
    """

    def __init__(self, *parents: CancellationToken | None) -> None:
        self._cancelled = False
        self.reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._unlink: list[Callable[[], None]] = []
        for parent in parents:
            if parent is None:
                continue
            if parent.cancelled:
                self._cancelled = True
                self.reason = parent.reason
            else:
                self._unlink.append(parent.register(self._on_parent_cancelled(parent)))

    @classmethod
    def linked(cls, *tokens: CancellationToken | None) -> CancellationToken:
        return cls(*tokens)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        logger.debug("Cancellation requested: %s", reason)
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback failed")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run *callback* on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unregister

    def close(self) -> None:
        """Detach from parent tokens."""
        for unlink in self._unlink:
            unlink()
        self._unlink.clear()
        self._callbacks.clear()

    def _on_parent_cancelled(self, parent: CancellationToken) -> Callable[[], None]:
        return lambda: self.cancel(parent.reason or "Cancelled")
