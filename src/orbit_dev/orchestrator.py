"""
Dev Orchestrator

Wires the pieces into the `dev` loop:

    file change -> (debounce) -> stop server -> build -> start server

Only one cycle runs at a time. A change that arrives mid-cycle is remembered
and causes exactly one more cycle afterwards, however many changes arrived.

Usage:
    orchestrator = DevOrchestrator(DevConfig('.'))
    asyncio.run(orchestrator.run())
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from rich.markup import escape

from . import __version__
from .config import DevConfig
from .console import Console
from .pipeline import BuildPipeline, BuildResult
from .supervisor import WAITING_MESSAGE, ServerSupervisor
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class DevOrchestrator:
    """Owns the supervisor and runs rebuild/restart cycles"""

    def __init__(self, config: DevConfig, console: Optional[Console] = None,
                 pipeline: Optional[BuildPipeline] = None,
                 supervisor: Optional[ServerSupervisor] = None):
        self.config = config
        self.console = console or Console()
        self.pipeline = pipeline or BuildPipeline(config)
        self.supervisor = supervisor or ServerSupervisor(config, self.console)
        self.watcher = ChangeWatcher(
            config.root_dir,
            on_change=self.request_rebuild,
            paths=[config.app_path, config.env_file],
            debounce_ms=config.debounce_ms,
            stability_ms=config.stability_ms,
            ignore_paths=[config.server_path, config.bundle_path],
        )
        self.cycles = 0
        self.last_result: Optional[BuildResult] = None
        self._running = False
        self._pending = False
        self._cycle_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # Cycles

    def request_rebuild(self) -> None:
        """Ask for a rebuild; coalesces with a cycle already in flight"""
        scheduled = self._cycle_task is not None and not self._cycle_task.done()
        if self._running or scheduled:
            self._pending = True
            return
        self._cycle_task = asyncio.get_running_loop().create_task(self.run_cycles())

    async def run_cycles(self) -> None:
        """Run one cycle, plus one more for every batch of requests made meanwhile"""
        if self._running:
            self._pending = True
            return
        self._running = True
        try:
            while True:
                self._pending = False
                await self.rebuild_and_restart()
                if not self._pending or self._stop_event.is_set():
                    break
        finally:
            self._running = False

    async def rebuild_and_restart(self) -> bool:
        """
        One cycle: stop the server, build, start the server.

        Returns:
            True if the build succeeded and the server was started
        """
        self.cycles += 1
        await self.supervisor.stop()

        self.console.start_spinner('Preparing runtime...')
        # Off the event loop so watcher events and the spinner keep flowing
        result = await asyncio.to_thread(self.pipeline.build)
        self.last_result = result

        if not result.ok:
            self.console.stop_spinner(False, 'Runtime preparation failed')
            self.console.line()
            self.console.line(result.render())
            self.console.line()
            self.console.muted(WAITING_MESSAGE)
            return False

        self.console.stop_spinner(True, 'Metadata written successfully')
        if result.message:
            self.console.info(result.message)

        if self._stop_event.is_set():
            return False

        await self.supervisor.start()
        return True

    # Main loop

    async def run(self) -> int:
        """Banner, first cycle, then watch until interrupted"""
        self._install_signal_handlers()
        self.print_banner()

        watch_task = asyncio.create_task(self.watcher.run(self._stop_event))
        try:
            await self.run_cycles()
            await self._stop_event.wait()
        finally:
            await self.shutdown()
            watch_task.cancel()
            try:
                await watch_task
            except asyncio.CancelledError:
                pass
        return 0

    def request_shutdown(self) -> None:
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop spinner, stop the server; used on interrupt"""
        self._stop_event.set()
        self.watcher.debouncer.cancel()
        self.console.stop_spinner()
        self.console.muted('\n[Orbit] Stopping server...')

        if self._cycle_task is not None and not self._cycle_task.done():
            # A build in flight runs to completion; don't start a server after it
            try:
                await self._cycle_task
            except Exception as e:
                logger.debug('Cycle ended with %s during shutdown', e)

        await self.supervisor.stop()

    def _install_signal_handlers(self) -> None:
        if sys.platform == 'win32':
            return  # KeyboardInterrupt is handled by the CLI
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

    def print_banner(self) -> None:
        config = self.config
        has_rust = config.actions_path.is_dir() and any(config.actions_path.rglob('*.rs'))
        mode = 'Rust + Python Actions' if has_rust else 'Python Actions'

        self.console.line()
        self.console.print(f'  [bold cyan]⏣ Orbit[/]     [bright_black]v{__version__}[/]    [yellow]{escape("[ Dev Mode ]")}[/]')
        self.console.line()
        self.console.print(f'  [bright_black]Type:       [/] {mode}')
        self.console.print('  [bright_black]Hot Reload: [/] [green]Enabled[/]')
        if config.env_file.exists():
            self.console.print('  [bright_black]Env:        [/] [yellow]Loaded[/]')
        self.console.line()
