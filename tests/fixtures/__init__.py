"""
Test fixtures for orbit-dev

This package contains fixtures used for testing:
- A sample Orbit app (apps/basic: route script, two actions, a helper module)
- A fake dev server script (servers/fake_server.py) standing in for cargo
"""

import os
import shlex
import sys

# Path to fixtures directory
FIXTURES_DIR = os.path.dirname(__file__)
APPS_DIR = os.path.join(FIXTURES_DIR, 'apps')
BASIC_APP_DIR = os.path.join(APPS_DIR, 'basic')
FAKE_SERVER = os.path.join(FIXTURES_DIR, 'servers', 'fake_server.py')


def fake_server_command(*args):
    """Shell command running the fake server with this interpreter"""
    return ' '.join(shlex.quote(part) for part in (sys.executable, FAKE_SERVER) + args)
