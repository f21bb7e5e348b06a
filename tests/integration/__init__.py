"""Integration tests that run real subprocesses."""
