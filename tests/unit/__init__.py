"""Unit tests for orbit-dev.

One module per source module. Filesystem access goes through tmp_path;
process tests spawn short-lived interpreters.
"""
