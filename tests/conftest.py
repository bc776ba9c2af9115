"""Shared fixtures for swarmbus tests."""

import tempfile
import uuid
from pathlib import Path

import pytest


@pytest.fixture
def socket_path():
    """A short unix socket path.

    ``tmp_path`` can exceed the unix socket path limit on some platforms, so
    sockets live directly in the system temp directory.
    """
    path = Path(tempfile.gettempdir()) / f"sbt-{uuid.uuid4().hex[:12]}.sock"
    yield path
    if path.is_dir() and not path.is_symlink():
        path.rmdir()
    else:
        path.unlink(missing_ok=True)


@pytest.fixture
def socket_dir():
    """A short, private directory for socket sweeping tests."""
    with tempfile.TemporaryDirectory(prefix="sbt-", dir=tempfile.gettempdir()) as directory:
        yield Path(directory)
