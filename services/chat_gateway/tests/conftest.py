import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
REPO_ROOT = Path(__file__).resolve().parents[3]
if str(SRC) not in sys.path:
    sys.path.append(str(SRC))
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

import pytest
from fastapi.testclient import TestClient

os.environ.pop("ALL_PROXY", None)
os.environ.pop("AUTHORIZATION", None)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BACKEND_BASE_URL", "https://backend.test")
os.environ.setdefault("RETRY_ATTEMPTS", "3")
os.environ.setdefault("RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("POW_MAX_ATTEMPTS", "100000")

from chat_gateway import settings as settings_module

settings_module.get_settings.cache_clear()

from chat_gateway.challenge import ChallengeSolver
from chat_gateway.main import app, get_session_client
from chat_gateway.session_client import SessionClient

from .utils import StubBackend


@pytest.fixture()
def settings():
    return settings_module.get_settings()


@pytest.fixture()
def solver(settings):
    return ChallengeSolver(settings.pow_max_attempts)


@pytest.fixture()
def backend():
    return StubBackend()


@pytest.fixture()
def session_client(settings, solver, backend):
    return SessionClient(settings, solver, transport=backend.transport(), screen=4000)


@pytest.fixture()
def client(session_client):
    app.dependency_overrides[get_session_client] = lambda: session_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
