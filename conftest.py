"""
Pytest configuration and fixtures.
"""

import os
import sys
import tempfile

# Add app directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Create temp file for test database
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)

# Set test environment BEFORE importing app modules
os.environ["TESTING"] = "1"
os.environ["DATABASE_PATH"] = _test_db_path
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ.pop("ALLOW_OPEN_ADMIN_KEY_CREATION", None)
os.environ.pop("MEMBER_COUNTERS", None)

import pytest


@pytest.fixture(scope="session", autouse=True)
def cleanup_db():
    """Cleanup database file after all tests."""
    yield
    if os.path.exists(_test_db_path):
        os.remove(_test_db_path)


@pytest.fixture(autouse=True)
def clear_admin_sessions():
    """Admin sessions live in memory and must not leak between tests."""
    from auth import admin_sessions
    admin_sessions.clear()
    yield
    admin_sessions.clear()
