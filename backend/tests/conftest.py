from __future__ import annotations

import importlib
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for _path in (BACKEND_DIR, TESTS_DIR):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from fake_portal import API_URL, FakePortal, SleepRecorder  # noqa: E402


@pytest.fixture
def portal() -> FakePortal:
    return FakePortal()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def portal_settings(tmp_path):
    from teleconsult_portal import PortalSettings

    return PortalSettings(api_url=API_URL, audit_db_path=str(tmp_path / "teleconsult-audit.sqlite"))


@pytest.fixture
def stack(portal, sleeps, portal_settings):
    from audit import CommandAuditLog, SQLiteAuditDB
    from teleconsult_core import (
        InFlightFlags,
        PrescriptionLifecycleController,
        ResilientActionInvoker,
        default_registry,
    )
    from teleconsult_portal import ConsultationGateway, PortalClient, StaticSession

    client = PortalClient(portal_settings, StaticSession("token-doc-1"), transport=portal.transport())
    gateway = ConsultationGateway(client)
    in_flight = InFlightFlags()
    invoker = ResilientActionInvoker(client=client, registry=default_registry(), sleep=sleeps)
    audit = CommandAuditLog(SQLiteAuditDB(portal_settings.audit_db_path))
    controller = PrescriptionLifecycleController(
        gateway=gateway,
        invoker=invoker,
        audit=audit,
        in_flight=in_flight,
    )
    return SimpleNamespace(
        client=client,
        gateway=gateway,
        invoker=invoker,
        in_flight=in_flight,
        audit=audit,
        controller=controller,
    )


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    monkeypatch.setenv("TELECONSULT_API_URL", API_URL)
    monkeypatch.setenv("TELECONSULT_AUDIT_DB_PATH", str(tmp_path / "teleconsult-api.sqlite"))
    monkeypatch.setenv("TELECONSULT_LOG_LEVEL", "WARNING")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module, portal, sleeps, monkeypatch):
    container = backend_module.TeleconsultApp(
        backend_module.PortalSettings.from_env(),
        transport=portal.transport(),
        sleep=sleeps,
    )
    monkeypatch.setattr(backend_module, "container", container)
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(physician_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {physician_id}"}

    return _make
