"""Pytest setup: force temp files into workspace, keep narration on templates, shared DB fixtures."""
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from uuid import uuid4

import pytest


def pytest_sessionstart(session) -> None:
    """Redirect temp files to a writable workspace path for tests."""
    tmp_root = Path(__file__).resolve().parent / ".tmp"
    tmp_root.mkdir(parents=True, exist_ok=True)
    for key in ("TMPDIR", "TEMP", "TMP"):
        os.environ[key] = str(tmp_root)
    tempfile.tempdir = str(tmp_root)
    os.environ["ENGINE_NARRATION_LLM_ENABLED"] = "0"

    class _WorkspaceTemporaryDirectory:
        """TemporaryDirectory variant that uses a workspace path with safe permissions."""

        def __init__(self, suffix: str | None = None, prefix: str | None = None, dir: str | None = None, **_kwargs):
            base = Path(dir) if dir else tmp_root
            name = f"{(prefix or 'tmp')}{uuid4().hex}{suffix or ''}"
            self._path = base / name
            self._path.mkdir(parents=True, exist_ok=False)

        def __enter__(self) -> str:
            return str(self._path)

        def __exit__(self, exc_type, exc, tb) -> None:
            shutil.rmtree(self._path, ignore_errors=True)

    tempfile.TemporaryDirectory = _WorkspaceTemporaryDirectory


@pytest.fixture
def db_path():
    """Path to a freshly migrated temp database."""
    from backend.app.db.migrate import apply_schema

    with tempfile.TemporaryDirectory() as td:
        path = str(Path(td) / "engine.db")
        apply_schema(path)
        yield path


@pytest.fixture
def conn(db_path):
    from backend.app.db.connection import get_connection

    connection = get_connection(db_path)
    try:
        yield connection
    finally:
        connection.close()


class FixedRng:
    """randint() stand-in that returns queued values (cycling the last one)."""

    def __init__(self, *values: int) -> None:
        self._values = list(values) or [10]

    def randint(self, a: int, b: int) -> int:
        value = self._values.pop(0) if len(self._values) > 1 else self._values[0]
        return max(a, min(b, value))


@pytest.fixture
def fixed_rng():
    return FixedRng
