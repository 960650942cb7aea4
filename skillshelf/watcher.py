"""Debounced filesystem watching of skill roots and skill directories."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from skillshelf.logging import get_logger
from skillshelf.scanner import list_skill_dirs

log = get_logger(__name__)

DEFAULT_DEBOUNCE_MS = 250
# Observer threads are daemons; a stop never blocks the loop longer than this.
STOP_JOIN_TIMEOUT_SECONDS = 0.2


class _RelayHandler(FileSystemEventHandler):
    """Forwards every watchdog event to a single callback."""

    def __init__(self, callback: Callable[[], None]):
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._callback()


class SkillWatcher:
    """Watch skill roots and coalesce bursts of events into one notification.

    Each event re-arms a single-shot timer. When the timer fires the watch set
    is rebuilt from scratch (so new or removed skill directories are picked up)
    and ``on_change`` is called once.
    """

    def __init__(
        self,
        roots_provider: Callable[[], list[Path]],
        on_change: Callable[[], None],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self._roots_provider = roots_provider
        self._on_change = on_change
        self._debounce_seconds = max(0, debounce_ms) / 1000
        self._observer_factory = observer_factory
        self._observer: Any | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._watched: list[Path] = []

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def watched_paths(self) -> list[Path]:
        return list(self._watched)

    def start(self) -> None:
        """(Re)build the watch set. Must be called from the event loop thread."""
        self.stop()
        self._loop = asyncio.get_running_loop()

        observer = self._observer_factory()
        observer.start()
        self._observer = observer
        handler = _RelayHandler(self._on_fs_event)

        seen: set[Path] = set()
        for root in self._roots_provider():
            if not root.exists():
                continue
            self._watch(observer, handler, root, seen)
            for skill_dir in list_skill_dirs(root):
                self._watch(observer, handler, skill_dir, seen)

        log.debug("Watching skills", paths=len(self._watched))

    def stop(self) -> None:
        """Tear down all watches and cancel a pending notification. Idempotent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        observer = self._observer
        self._observer = None
        self._watched = []
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)
        except RuntimeError as exc:
            log.warning("Error stopping skills watcher", error=str(exc))

    def _watch(self, observer: Any, handler: FileSystemEventHandler, path: Path, seen: set[Path]) -> None:
        if path in seen:
            return
        seen.add(path)
        try:
            observer.schedule(handler, str(path), recursive=False)
        except OSError as exc:
            log.warning("Failed to watch skills path", path=str(path), error=str(exc))
            return
        self._watched.append(path)

    def _on_fs_event(self) -> None:
        # Runs on the observer thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule_notify)
        except RuntimeError:
            # Loop closed between the check and the call.
            return

    def _schedule_notify(self) -> None:
        if self._observer is None or self._loop is None:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self.start()
        self._on_change()
