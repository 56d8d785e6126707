"""Abstract rendering engine interface.

The scheduler only talks to engines through this contract: prepare a
deployable bundle once, select a composition for a set of props, then render
it while streaming ``RenderProgress`` events and honouring a ``CancelSignal``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

from ..composition import CompositionProps

logger = logging.getLogger(__name__)


class RenderEngineError(RuntimeError):
    """Composition selection or rendering failed."""


class RenderCancelledError(RenderEngineError):
    """Rendering stopped because the cancel signal fired."""


@dataclass(frozen=True)
class Composition:
    """Resolved composition metadata (what the template will produce)."""
    id: str
    fps: int
    width: int
    height: int
    duration_in_frames: int

    @property
    def duration_s(self) -> float:
        return self.duration_in_frames / self.fps


@dataclass(frozen=True)
class RenderProgress:
    """One progress event from an engine; ``fraction`` is in [0, 1]."""
    fraction: float


ProgressCallback = Callable[[RenderProgress], None]


class CancelSignal:
    """Engine-side cancellation handle.

    ``cancel()`` is idempotent and runs every registered callback once;
    callbacks registered after cancellation run immediately.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")


class RenderEngine(ABC):
    """Abstract rendering engine.

    Implementations must provide:
    - An expensive, idempotent ``prepare_bundle`` run at startup and after cache clears
    - ``select_composition`` that resolves output metadata from props
    - ``render`` that writes the MP4 and reports progress
    """

    @abstractmethod
    async def prepare_bundle(self, bundle_dir: Path) -> str:
        """Build the deployable bundle into ``bundle_dir``.

        Returns:
            Serve location passed back into select_composition/render
        """

    @abstractmethod
    async def select_composition(self, serve_url: str, props: CompositionProps) -> Composition:
        """Resolve the composition metadata for ``props``.

        Raises:
            RenderEngineError: If the bundle is missing or invalid
        """

    @abstractmethod
    async def render(
        self,
        serve_url: str,
        composition: Composition,
        props: CompositionProps,
        output_path: Path,
        on_progress: ProgressCallback,
        cancel_signal: CancelSignal,
    ) -> None:
        """Render ``props`` to ``output_path``.

        Implementation notes:
        - Must not leave a partial file at ``output_path`` on failure
        - Must raise RenderCancelledError if ``cancel_signal`` fired
        - ``on_progress`` may be called from the event loop at any rate
        """
