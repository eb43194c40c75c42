"""
Process tree control

The dev server is usually a wrapper (cargo run) around the real server
binary, so stopping it means stopping the whole tree:
- POSIX: the server runs in its own session; signal the process group
- Windows: no process groups to signal; kill every process in the tree

Shutdown is graceful first (SIGTERM), forced after a timeout (SIGKILL).
"""

import os
import signal
import subprocess
import sys
from typing import Any, Dict, List

import psutil

IS_WINDOWS = sys.platform == 'win32'


def spawn_options() -> Dict[str, Any]:
    """Extra subprocess options so the child gets its own process group"""
    if IS_WINDOWS:
        return {'creationflags': subprocess.CREATE_NEW_PROCESS_GROUP}
    return {'start_new_session': True}


def process_tree(pid: int) -> List[psutil.Process]:
    """The process and all its descendants (children first)"""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    return children + [parent]


def terminate_tree(pid: int, force: bool = False) -> int:
    """
    Signal a process tree to stop.

    Args:
        pid: Root process ID
        force: SIGKILL instead of SIGTERM (always kill on Windows)

    Returns:
        Number of processes signalled
    """
    tree = process_tree(pid)
    if not tree:
        return 0

    if IS_WINDOWS:
        return _kill_all(tree)

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(pid), sig)
    except (ProcessLookupError, PermissionError):
        pass

    if force:
        # Descendants that left the group (setsid, daemonized helpers)
        _kill_all(tree)

    return len(tree)


def _kill_all(processes: List[psutil.Process]) -> int:
    killed = 0
    for proc in processes:
        try:
            proc.kill()
            killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return killed
