"""
End-to-end tests for syn2mas.

These tests run complete migrations between two file-backed SQLite
databases created in a temporary directory; they need aiosqlite but no
database server.

Run integration tests:
    pytest tests/integration/ -v
"""
