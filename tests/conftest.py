import json
from pathlib import Path

import pytest

from fakes import FakeActions, FakeDatabase, make_config


@pytest.fixture
def actions() -> FakeActions:
    return FakeActions()


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def config(tmp_path: Path):
    return make_config(tmp_path)


@pytest.fixture
def write_spec(tmp_path: Path):
    """Write a spec dict to ``tmp_path/specs/<name>`` and return its path."""

    def _write(name: str, data: dict) -> Path:
        path = tmp_path / "specs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
