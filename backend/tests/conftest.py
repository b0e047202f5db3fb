from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from chat_fakes import FakeChatApi  # noqa: E402

THERAPISTS = "therapist-a:Dr Avery;therapist-b:Dr Blake"


@pytest.fixture
def fake_api() -> FakeChatApi:
    return FakeChatApi()


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "therapy-test.sqlite"
    monkeypatch.setenv("THERAPY_HOST_DB_PATH", str(db_path))
    monkeypatch.setenv("THERAPY_HOST_THERAPISTS", THERAPISTS)
    # Keep CI deterministic; assistant tests patch the completion call directly.
    monkeypatch.setenv("THERAPY_HOST_CHAT_PROVIDER", "none")
    monkeypatch.delenv("THERAPY_HOST_TAG_REASONS", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"X-User-Id": user_id}

    return _make
