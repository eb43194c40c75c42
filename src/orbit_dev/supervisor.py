"""
Process Supervisor

Owns the one dev server process:
- Spawns it with stdout/stderr captured line by line
- Watches stdout for the readiness marker
- Classifies crashes (port conflict vs anything else)
- Retries with fixed delays, up to max_attempts per build
- Stops it (whole process tree) before anything else is spawned

States:
    Idle -> Spawning -> Booting -> Ready
    Booting -> CrashedPortConflict
    Booting | Ready -> CrashedOther
    Booting | Ready -> Killed -> Idle

Every transition the developer should know about prints one status line;
unrecoverable conditions end with a rendered diagnostic.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .config import DevConfig
from .console import Console
from .diagnostics import DiagnosticRecord, render
from .process import spawn_options, terminate_tree

logger = logging.getLogger(__name__)

# stderr phrasings of "address already in use" across platforms
PORT_CONFLICT_MARKERS = (
    'Address already in use',
    'address in use',
    'os error 10048',
    'EADDRINUSE',
    'AddrInUse',
    'Only one usage of each socket address',
)

# Startup banner lines printed by the server
BANNER_MARKERS = ('████████╗', '╚══', '   ██║', '   ╚═╝')

STDERR_TAIL_LIMIT = 64 * 1024
STDERR_SHOWN = 2000
LINE_LIMIT = 1024 * 1024

WAITING_MESSAGE = '[Orbit] Waiting for changes to retry...'


class ProcessState(str, Enum):
    IDLE = 'idle'
    SPAWNING = 'spawning'
    BOOTING = 'booting'
    READY = 'ready'
    CRASHED_PORT_CONFLICT = 'crashed-port-conflict'
    CRASHED_OTHER = 'crashed-other'
    KILLED = 'killed'


class CrashKind(str, Enum):
    PORT_CONFLICT = 'port-conflict'
    OTHER = 'other'


@dataclass
class ProcessHandle:
    pid: int
    state: ProcessState
    started_at: float


@dataclass
class RetryContext:
    attempt: int = 0
    max_attempts: int = 3
    last_failure_kind: Optional[CrashKind] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


def classify_crash(stderr_text: str) -> CrashKind:
    """Port conflict if stderr mentions an address already in use"""
    if any(marker in stderr_text for marker in PORT_CONFLICT_MARKERS):
        return CrashKind.PORT_CONFLICT
    return CrashKind.OTHER


def is_ready_line(line: str, marker: str) -> bool:
    """The marker, or the first line of the server's banner"""
    return marker in line or BANNER_MARKERS[0] in line


def is_banner_line(line: str, marker: str) -> bool:
    return marker in line or any(banner in line for banner in BANNER_MARKERS)


def strip_banner(text: str, marker: str) -> str:
    """Drop banner and blank lines from buffered startup output"""
    kept = [line for line in text.splitlines() if line.strip() and not is_banner_line(line, marker)]
    return ''.join(line + '\n' for line in kept)


def read_configured_port(routes_file: Path, default: int) -> int:
    """Port from routes.json __config, or default if it can't be read"""
    try:
        with open(routes_file, 'r', encoding='utf-8') as f:
            port = json.load(f)['__config']['port']
        return int(port)
    except (OSError, ValueError, KeyError, TypeError):
        return default


class ServerSupervisor:
    """Lifecycle of the dev server process"""

    def __init__(self, config: DevConfig, console: Optional[Console] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize supervisor.

        Args:
            config: Dev configuration (command, delays, marker)
            console: Where status lines and server output go
            clock: Monotonic clock (seconds), replaceable in tests
        """
        self.config = config
        self.console = console or Console()
        self.clock = clock

        self.state = ProcessState.IDLE
        self.history: List[ProcessState] = [ProcessState.IDLE]
        self.handle: Optional[ProcessHandle] = None
        self.retry = RetryContext(max_attempts=config.max_attempts)
        self.last_diagnostic: Optional[DiagnosticRecord] = None
        self.spawn_count = 0
        self.slow_boot_reported = False

        self._process: Optional[asyncio.subprocess.Process] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._slow_timer: Optional[asyncio.TimerHandle] = None
        self._killing = False
        self._first_boot = True
        self._settled = asyncio.Event()

    # Public API

    async def start(self) -> None:
        """
        Start the server for a new build.

        Resets the retry budget, stops any running instance and spawns a
        fresh one. Returns once the process is booting; use wait_settled()
        to wait for Ready or a final failure.
        """
        self._cancel_retry()
        self.retry = RetryContext(max_attempts=self.config.max_attempts)
        self.last_diagnostic = None
        self._settled.clear()
        await self._launch(0)

    async def stop(self) -> None:
        """Terminate the server (if any) and wait until it has exited"""
        self._cancel_retry()
        await self._terminate()

    async def _terminate(self) -> None:
        proc = self._process

        if proc is None:
            if self.state is not ProcessState.IDLE:
                self.handle = None
                self._transition(ProcessState.IDLE)
            return

        self._killing = True
        self._cancel_slow_timer()
        if self.console.spinning:
            self.console.stop_spinner()
        self._transition(ProcessState.KILLED)

        try:
            if proc.returncode is None:
                terminate_tree(proc.pid)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.config.stop_timeout_s)
                except asyncio.TimeoutError:
                    logger.debug('Server %s ignored SIGTERM; killing tree', proc.pid)
                    terminate_tree(proc.pid, force=True)
                    await proc.wait()

            if self._monitor_task is not None:
                try:
                    await asyncio.wait_for(self._monitor_task, timeout=self.config.stop_timeout_s)
                except asyncio.TimeoutError:
                    self._monitor_task.cancel()
        finally:
            self._process = None
            self._monitor_task = None
            self._killing = False
            self.handle = None
            self._transition(ProcessState.IDLE)

    async def wait_settled(self) -> ProcessState:
        """Wait until the server is Ready or has given up; returns the state"""
        await self._settled.wait()
        return self.state

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    # Lifecycle

    async def _launch(self, attempt: int) -> None:
        await self._terminate()

        delay_ms = self.config.retry_settle_delay_ms if attempt > 0 else self.config.settle_delay_ms
        await asyncio.sleep(delay_ms / 1000)

        self.retry.attempt = attempt
        self.slow_boot_reported = False
        self._transition(ProcessState.SPAWNING)
        self.console.start_spinner('Starting server...')
        started = self.clock()

        env = dict(os.environ)
        env['ORBIT_DEV'] = '1'
        env['CARGO_INCREMENTAL'] = '1'

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.config.command(),
                cwd=str(self.config.server_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=LINE_LIMIT,
                **spawn_options()
            )
        except (OSError, ValueError) as e:
            self.console.stop_spinner(False, 'Server failed to launch')
            self.retry.last_failure_kind = CrashKind.OTHER
            self._transition(ProcessState.CRASHED_OTHER)
            self._report(DiagnosticRecord(
                title='Launch Error',
                file=self.config.relative(self.config.server_path),
                message=f'Cannot run "{self.config.server_command}": {e}',
                suggestion='Check server_command in orbit.tsv (or ORBIT_SERVER_COMMAND) and that its toolchain is installed.',
            ))
            self.console.muted(WAITING_MESSAGE)
            self._settled.set()
            return

        self.spawn_count += 1
        self._process = proc
        self.handle = ProcessHandle(pid=proc.pid, state=ProcessState.SPAWNING, started_at=started)
        logger.debug('Spawned server pid=%s attempt=%s', proc.pid, attempt)
        self._transition(ProcessState.BOOTING)

        loop = asyncio.get_running_loop()
        self._slow_timer = loop.call_later(self.config.slow_boot_s, self._slow_boot)
        self._monitor_task = asyncio.create_task(self._monitor(proc, attempt, started))

    async def _monitor(self, proc: asyncio.subprocess.Process, attempt: int, started: float) -> None:
        stderr_tail = []
        await asyncio.gather(
            self._read_stdout(proc),
            self._read_stderr(proc, stderr_tail),
        )
        code = await proc.wait()
        self._cancel_slow_timer()

        if self._killing or proc is not self._process:
            return

        self._process = None
        self._monitor_task = None
        runtime = self.clock() - started
        self._handle_exit(code, attempt, runtime, ''.join(stderr_tail))

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        marker = self.config.readiness_marker
        quiet = not self._first_boot
        buffered = []
        ready = False

        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace')

            if ready:
                if not (quiet and is_banner_line(line, marker)):
                    self.console.write(line)
                continue

            buffered.append(line)
            if is_ready_line(line, marker):
                ready = True
                self._on_ready(''.join(buffered))
                buffered = []

    async def _read_stderr(self, proc: asyncio.subprocess.Process, tail: List[str]) -> None:
        size = 0
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace')
            tail.append(line)
            size += len(line)
            while size > STDERR_TAIL_LIMIT and len(tail) > 1:
                size -= len(tail.pop(0))

    def _on_ready(self, output: str) -> None:
        if self._killing:
            return
        self._cancel_slow_timer()
        self._transition(ProcessState.READY)
        self.console.stop_spinner(True, 'Server ready')

        if self._first_boot:
            self.console.write(output)
            self._first_boot = False
        else:
            self.console.write(strip_banner(output, self.config.readiness_marker))

        self._settled.set()

    def _handle_exit(self, code: Optional[int], attempt: int, runtime: float, stderr_text: str) -> None:
        if code is None or code <= 0:
            # Clean exit, or ended by a signal we didn't send
            self.console.stop_spinner(False, f'Server exited (code {code})')
            self.handle = None
            self._transition(ProcessState.IDLE)
            self.console.muted(WAITING_MESSAGE)
            self._settled.set()
            return

        kind = classify_crash(stderr_text)
        self.retry.last_failure_kind = kind
        logger.debug('Server exited with %s after %.1fs (%s): %s', code, runtime, kind.value, stderr_text[-500:])

        if kind is CrashKind.PORT_CONFLICT:
            self._transition(ProcessState.CRASHED_PORT_CONFLICT)
            if attempt < self.retry.max_attempts:
                # A previous instance may still be releasing the socket
                self.console.start_spinner(f'Port busy, retrying ({attempt + 1}/{self.retry.max_attempts})...')
                self._schedule_retry(self.config.port_retry_delay_ms, attempt + 1)
                return

            self.console.stop_spinner(False, 'Server failed to start')
            port = read_configured_port(self.config.routes_file, self.config.default_port)
            script = self.config.relative(self.config.route_script_path)
            self._report(DiagnosticRecord(
                title='Port Conflict',
                file=script,
                message=f'Another application is already bound to port {port}.',
                suggestion=f'Stop the service using port {port}, or move this app to a free port with app.start({port + 1}) in {script}.',
            ))
            self.console.muted(WAITING_MESSAGE)
            self._settled.set()
            return

        self._transition(ProcessState.CRASHED_OTHER)
        self.console.stop_spinner(False, 'Server failed to start' if runtime < self.config.min_viable_runtime_s else 'Server crashed')

        if runtime < self.config.min_viable_runtime_s and attempt < self.retry.max_attempts:
            self._schedule_retry(self.config.crash_retry_delay_ms, attempt + 1)
            return

        if stderr_text.strip():
            self.console.muted(stderr_text.strip()[-STDERR_SHOWN:])
        self.console.muted(WAITING_MESSAGE)
        self._settled.set()

    def _slow_boot(self) -> None:
        self._slow_timer = None
        if self.state is ProcessState.BOOTING and not self._killing:
            self.slow_boot_reported = True
            self.console.start_spinner('Still starting... (the first build of the server takes longer)')

    # Helpers

    def _schedule_retry(self, delay_ms: int, attempt: int) -> None:
        self._retry_task = asyncio.create_task(self._retry_after(delay_ms / 1000, attempt))

    async def _retry_after(self, delay: float, attempt: int) -> None:
        await asyncio.sleep(delay)
        await self._launch(attempt)

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

    def _cancel_slow_timer(self) -> None:
        if self._slow_timer is not None:
            self._slow_timer.cancel()
            self._slow_timer = None

    def _transition(self, state: ProcessState) -> None:
        self.state = state
        self.history.append(state)
        if self.handle is not None:
            self.handle.state = state
        logger.debug('Server state -> %s', state.value)

    def _report(self, record: DiagnosticRecord) -> None:
        self.last_diagnostic = record
        self.console.line()
        self.console.line(render(record))
        self.console.line()
