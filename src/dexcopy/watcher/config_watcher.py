from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

ReloadCallback = Callable[[], Awaitable[None]]


class Debouncer:
    """Collapses bursts of notifications into one callback after a quiet window."""

    def __init__(self, window_s: float, callback: ReloadCallback) -> None:
        self._window_s = window_s
        self._callback = callback
        self._pending: asyncio.Task[None] | None = None
        self._log = logging.getLogger(self.__class__.__name__)

    def notify(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.create_task(self._fire_after())

    async def _fire_after(self) -> None:
        await asyncio.sleep(self._window_s)
        self._pending = None
        try:
            await self._callback()
        except Exception as exc:
            self._log.warning("debounced_callback_error error=%s", exc)

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None


class ReloadGuard:
    """At most one reload at a time; triggers arriving meanwhile are dropped, not queued."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.dropped = 0
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, reload: ReloadCallback) -> bool:
        if self._lock.locked():
            self.dropped += 1
            self._log.warning("reload_dropped reason=reload_in_progress dropped=%s", self.dropped)
            return False
        async with self._lock:
            await reload()
        return True


class ConfigFileWatcher:
    """Polls a file's mtime/size and reports each observed change."""

    def __init__(
        self,
        path: str | Path,
        on_change: Callable[[], None],
        *,
        poll_interval_s: float = 0.25,
    ) -> None:
        self._path = Path(path)
        self._on_change = on_change
        self._poll_interval_s = poll_interval_s
        self._stop_event = asyncio.Event()
        self._log = logging.getLogger(self.__class__.__name__)

    async def run_forever(self) -> None:
        last = self._fingerprint()
        self._log.info("config_watch_started path=%s", self._path)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                pass
            current = self._fingerprint()
            if current != last:
                last = current
                if current is not None:
                    self._log.info("config_file_changed path=%s", self._path)
                    self._on_change()

    def stop(self) -> None:
        self._stop_event.set()

    def _fingerprint(self) -> tuple[int, int] | None:
        try:
            stat = os.stat(self._path)
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size
