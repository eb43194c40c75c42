"""
Test suite for orbit-dev.

Test structure:
- unit/ - Unit tests, one module per source module
- integration/ - Real pipeline + supervisor against the fake server
- fixtures/ - Sample app and the fake server script

Run tests:
    pytest                    # All tests
    pytest tests/unit         # Unit tests only
    pytest -m integration     # Dev loop tests only
    pytest -k "supervisor"    # Tests matching name

Supervisor tests spawn real processes (the fake server, run with the
current interpreter), so they take up to a few seconds; everything else
runs in milliseconds.
"""
