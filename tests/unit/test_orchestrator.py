"""
Unit tests for the dev orchestrator

The pipeline and supervisor are replaced by recording fakes so the cycle
logic (ordering, coalescing, failure handling) can be checked in isolation.
"""

import asyncio
import time

import pytest

from orbit_dev.config import DevConfig
from orbit_dev.diagnostics import DiagnosticRecord
from orbit_dev.orchestrator import DevOrchestrator
from orbit_dev.pipeline import BuildFailure, BuildSuccess
from orbit_dev.routes import RouteTable
from orbit_dev.supervisor import WAITING_MESSAGE


class FakePipeline:
    """Build that takes `duration` seconds (in the worker thread)"""

    def __init__(self, events, duration=0.0, fail=False):
        self.events = events
        self.duration = duration
        self.fail = fail
        self.builds = 0

    def build(self):
        self.builds += 1
        self.events.append('build')
        time.sleep(self.duration)
        if self.fail:
            return BuildFailure((DiagnosticRecord(title='Build Error', file='app/actions/x.py', message='Could not resolve "requests"'),))
        return BuildSuccess(
            actions=(),
            route_table=RouteTable(message='listening'),
            dispatch_map={},
            routes_file=None,
            action_map_file=None,
        )


class FakeSupervisor:
    def __init__(self, events):
        self.events = events

    async def start(self):
        self.events.append('start')

    async def stop(self):
        self.events.append('stop')


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_orchestrator(tmp_path, console, events):
    def make(**pipeline_options):
        config = DevConfig(tmp_path, environ={})
        return DevOrchestrator(
            config,
            console=console,
            pipeline=FakePipeline(events, **pipeline_options),
            supervisor=FakeSupervisor(events),
        )
    return make


class TestCycle:
    """Test one rebuild/restart cycle"""

    @pytest.mark.asyncio
    async def test_stop_build_start_order(self, make_orchestrator, events, console):
        """Should stop the server, build, then start it"""
        orchestrator = make_orchestrator()

        assert await orchestrator.rebuild_and_restart()

        assert events == ['stop', 'build', 'start']
        assert 'Metadata written successfully' in console.text
        assert 'listening' in console.text

    @pytest.mark.asyncio
    async def test_failed_build_does_not_start(self, make_orchestrator, events, console):
        """Should render diagnostics and wait instead of starting"""
        orchestrator = make_orchestrator(fail=True)

        assert not await orchestrator.rebuild_and_restart()

        assert events == ['stop', 'build']
        assert 'Could not resolve "requests"' in console.text
        assert WAITING_MESSAGE in console.text
        assert not orchestrator.last_result.ok


class TestCoalescing:
    """Test that rebuild requests never overlap"""

    @pytest.mark.asyncio
    async def test_requests_during_cycle_run_one_more(self, make_orchestrator, events):
        """Should run exactly one extra cycle for any number of requests mid-cycle"""
        orchestrator = make_orchestrator(duration=0.2)

        orchestrator.request_rebuild()
        await asyncio.sleep(0.05)
        for _ in range(5):
            orchestrator.request_rebuild()
        await asyncio.wait_for(orchestrator._cycle_task, timeout=10)

        assert orchestrator.cycles == 2
        assert events == ['stop', 'build', 'start'] * 2

    @pytest.mark.asyncio
    async def test_requests_before_cycle_starts_coalesce(self, make_orchestrator):
        """Should fold requests made before the cycle began into it"""
        orchestrator = make_orchestrator()

        for _ in range(10):
            orchestrator.request_rebuild()
        await asyncio.wait_for(orchestrator._cycle_task, timeout=10)

        assert orchestrator.cycles == 1

    @pytest.mark.asyncio
    async def test_debounced_burst_triggers_one_cycle(self, make_orchestrator):
        """Should turn a burst of watcher batches into one cycle"""
        orchestrator = make_orchestrator()
        watcher = orchestrator.watcher
        watcher.debouncer.delay = 0.05

        for i in range(10):
            watcher.handle_batch({('modified', f'app/actions/{i}.py')})
        await asyncio.sleep(0.2)
        await asyncio.wait_for(orchestrator._cycle_task, timeout=10)

        assert orchestrator.cycles == 1


class TestBanner:
    """Test the dev banner"""

    def test_python_actions(self, make_orchestrator, console):
        """Should show the mode and hot reload status"""
        make_orchestrator().print_banner()

        assert '[ Dev Mode ]' in console.text
        assert 'Python Actions' in console.text
        assert 'Rust' not in console.text
        assert 'Hot Reload:  Enabled' in console.text
        assert 'Env:' not in console.text

    def test_rust_actions_and_env(self, make_orchestrator, console, tmp_path):
        """Should mention Rust actions and a loaded .env"""
        (tmp_path / 'app' / 'actions').mkdir(parents=True)
        (tmp_path / 'app' / 'actions' / 'fast.rs').write_text('')
        (tmp_path / '.env').write_text('KEY=value\n')

        make_orchestrator().print_banner()

        assert 'Rust + Python Actions' in console.text
        assert 'Loaded' in console.text


class TestRun:
    """Test the main loop and shutdown"""

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, make_orchestrator, events, console):
        """Should run the first cycle, then stop the server on shutdown"""
        orchestrator = make_orchestrator()
        asyncio.get_running_loop().call_later(0.2, orchestrator.request_shutdown)

        code = await asyncio.wait_for(orchestrator.run(), timeout=10)

        assert code == 0
        assert events == ['stop', 'build', 'start', 'stop']
        assert '[Orbit] Stopping server...' in console.text

    @pytest.mark.asyncio
    async def test_shutdown_during_build_skips_start(self, make_orchestrator, events):
        """Should let an in-flight build finish without starting the server"""
        orchestrator = make_orchestrator(duration=0.2)

        orchestrator.request_rebuild()
        await asyncio.sleep(0.05)
        await orchestrator.shutdown()

        assert events == ['stop', 'build', 'stop']
