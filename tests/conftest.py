import os
import sys
import textwrap

# Keep the module-level store in main.py off the filesystem
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("BACKEND_API_KEY", None)

import pytest
from fastapi.testclient import TestClient

import main
from forecast.launcher import PredictionLauncher
from forecast.state import JobStatusTable
from forecast.storage import RecordStore

QUIET_SCRIPT = "import sys\n"


@pytest.fixture
def store():
    return RecordStore("sqlite://")


@pytest.fixture
def table():
    return JobStatusTable()


@pytest.fixture
def make_script(tmp_path):
    counter = {"n": 0}

    def _make(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"job_{counter['n']}.py"
        path.write_text(textwrap.dedent(body))
        return str(path)

    return _make


@pytest.fixture
def launcher(store, table, make_script):
    return PredictionLauncher(store, table, script=make_script(QUIET_SCRIPT), python=sys.executable)


@pytest.fixture
def client(store, table, launcher):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_status_table] = lambda: table
    main.app.dependency_overrides[main.get_launcher] = lambda: launcher
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
