"""
Shared pytest fixtures for orbit-dev tests.

Provides:
- Sample projects copied into tmp_path (builds write into the project)
- A quiet Console that records output
- Server commands running the fake server with this interpreter
"""

import io
import shutil
from pathlib import Path

import pytest

from orbit_dev.config import DevConfig
from orbit_dev.console import Console, strip_ansi
from tests.fixtures import BASIC_APP_DIR, fake_server_command


class RecordingConsole(Console):
    """Console writing to memory, never animating"""

    def __init__(self):
        super().__init__(stream=io.StringIO(), animate=False)

    @property
    def text(self) -> str:
        return strip_ansi(self.stream.getvalue())


@pytest.fixture
def console():
    return RecordingConsole()


@pytest.fixture
def basic_project(tmp_path):
    """The sample app copied into a fresh project root"""
    root = tmp_path / 'project'
    shutil.copytree(BASIC_APP_DIR, root)
    return root


@pytest.fixture
def write_file(tmp_path):
    """Write a file under tmp_path (parents created), return its path"""
    def write(relative: str, content: str) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
        return path
    return write


@pytest.fixture
def server_config(tmp_path):
    """
    Config factory for supervisor tests: fast delays, fake server command.

    Usage:
        config = server_config('ready')
        config = server_config('crash', max_attempts=1)
    """
    def make(*args: str, **overrides) -> DevConfig:
        (tmp_path / 'server').mkdir(exist_ok=True)
        settings = {
            'server_command': fake_server_command(*args),
            'settle_delay_ms': 0,
            'retry_settle_delay_ms': 0,
            'port_retry_delay_ms': 10,
            'crash_retry_delay_ms': 10,
            'stop_timeout_s': 2.0,
            'slow_boot_s': 30.0,
        }
        settings.update(overrides)
        return DevConfig(tmp_path, overrides=settings, environ={})
    return make
