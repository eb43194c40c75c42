"""
Change Watcher

Watches the app sources and reports "something changed" once per burst of
file events. Consumers never see which files changed: any change means
rebuild everything.

Two windows are involved:
- stability_ms: watchfiles groups raw events until writes settle
- debounce_ms: the Debouncer waits for this much quiet after the last
  batch before firing

The project root is watched and filtered down to the app sources and .env,
so files that appear later are picked up. Writes the build itself makes
(server/, the bundle directory) are ignored.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchfiles import Change, DefaultFilter, awatch

logger = logging.getLogger(__name__)

RESTART_PAUSE = 1.0


class Debouncer:
    """Trailing-edge debounce on the running event loop"""

    def __init__(self, delay: float, callback: Callable[[], None]):
        """
        Args:
            delay: Quiet period in seconds
            callback: Called once per burst, on the event loop
        """
        self.delay = delay
        self.callback = callback
        self.fire_count = 0
        self._handle: Optional[asyncio.TimerHandle] = None

    def notify(self) -> None:
        """Record an event; restarts the quiet period"""
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.fire_count += 1
        self.callback()


class ProjectFilter(DefaultFilter):
    """
    DefaultFilter limited to the watched paths.

    Watched paths don't have to exist: the project root is what gets watched,
    so a file created later (a new .env) still counts.
    """

    def __init__(self, watched: Iterable[Path | str] = (), ignore_paths: Iterable[Path | str] = ()):
        super().__init__(ignore_paths=[str(Path(p).resolve()) for p in ignore_paths])
        self.watched = tuple(str(Path(p).resolve()) for p in watched)

    def __call__(self, change: Change, path: str) -> bool:
        if self.watched and not any(path == w or path.startswith(w + os.sep) for w in self.watched):
            return False
        return super().__call__(change, path)


def make_filter(ignore_paths: Iterable[Path | str], watched: Iterable[Path | str] = ()) -> ProjectFilter:
    """Default watchfiles filter plus the build's own output directories"""
    return ProjectFilter(watched=watched, ignore_paths=ignore_paths)


class ChangeWatcher:
    """Turns file events under root into debounced change notifications"""

    def __init__(self, root: Path | str, on_change: Callable[[], None],
                 paths: Iterable[Path | str] = (), debounce_ms: int = 300,
                 stability_ms: int = 500, ignore_paths: Iterable[Path | str] = ()):
        """
        Initialize watcher.

        Args:
            root: Directory to watch
            on_change: Called once per burst of changes
            paths: Directories/files under root that count (default: all of
                root); they may not exist yet
            debounce_ms: Quiet period before on_change fires
            stability_ms: Time writes must settle before a batch is reported
            ignore_paths: Paths whose changes never count
        """
        self.root = Path(root)
        self.paths = [Path(p) for p in paths]
        self.stability_ms = stability_ms
        self.watch_filter = make_filter(ignore_paths, watched=self.paths)
        self.debouncer = Debouncer(debounce_ms / 1000, on_change)
        self.batches = 0

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Watch until stop_event is set.

        Errors from the watch backend are logged and the watch restarts;
        they never propagate.
        """
        while not stop_event.is_set():
            if not self.root.is_dir():
                await self._pause(stop_event)
                continue
            try:
                async for changes in awatch(
                    self.root.resolve(),
                    watch_filter=self.watch_filter,
                    debounce=self.stability_ms,
                    stop_event=stop_event,
                ):
                    self.handle_batch(changes)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning('File watcher error (restarting): %s', e)
                await self._pause(stop_event)

        self.debouncer.cancel()

    def handle_batch(self, changes) -> None:
        """Feed one batch of raw changes into the debouncer"""
        if not changes:
            return
        self.batches += 1
        logger.debug('%d file change(s)', len(changes))
        self.debouncer.notify()

    async def _pause(self, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=RESTART_PAUSE)
        except asyncio.TimeoutError:
            pass
