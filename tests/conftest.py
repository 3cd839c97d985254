"""
Shared fixtures for the Careflow test suite.

Provides a scripted inference backend, a temporary durable store, a small
set of records for two patients, and a fully wired application so the
individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

import time

import pytest
import pytest_asyncio

from careflow.app import build_app
from careflow.config import CareflowConfig, MemoryConfig, RiskConfig
from careflow.memory.store import DurableStore
from careflow.records.models import Resource
from careflow.records.store import InMemoryDocumentStore

from fakes import (
    DAY,
    DOCUMENT_ID,
    MEDICATION_ID,
    OBSERVATION_ID,
    OTHER_ID,
    OTHER_PATIENT,
    PATIENT,
    FakeInference,
)


# ---------------------------------------------------------------------------
# Configs
# ---------------------------------------------------------------------------

@pytest.fixture()
def memory_config(tmp_path) -> MemoryConfig:
    return MemoryConfig(
        CAREFLOW_DATA_DIR=tmp_path,
        CAREFLOW_DB_PATH=tmp_path / "careflow.db",
        CAREFLOW_GENERATE_TITLES=False,
    )


@pytest.fixture()
def risk_config() -> RiskConfig:
    return RiskConfig()


# ---------------------------------------------------------------------------
# Inference and storage
# ---------------------------------------------------------------------------

@pytest.fixture()
def fake_inference() -> FakeInference:
    return FakeInference()


@pytest_asyncio.fixture()
async def durable_store(tmp_path):
    store = DurableStore(tmp_path / "careflow.db")
    await store.initialize()
    yield store
    await store.close()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@pytest.fixture()
def sample_records() -> list[Resource]:
    """Three records for PATIENT and one for OTHER_PATIENT."""
    now = time.time()
    return [
        Resource(
            resource_id=MEDICATION_ID,
            subject_id=PATIENT,
            kind="medication",
            title="Lisinopril",
            content="Lisinopril for blood pressure.",
            fields={"dosage": "10mg", "frequency": "daily"},
            status="active",
            created_at=now - 30 * DAY,
            updated_at=now - 30 * DAY,
        ),
        Resource(
            resource_id=OBSERVATION_ID,
            subject_id=PATIENT,
            kind="observation",
            title="HbA1c",
            content="HbA1c measured at the annual checkup.",
            fields={"value": 6.1, "unit": "%"},
            created_at=now - 20 * DAY,
            updated_at=now - 20 * DAY,
        ),
        Resource(
            resource_id=DOCUMENT_ID,
            subject_id=PATIENT,
            title="Blood test results",
            content="Complete blood count within normal limits.",
            created_at=now - 60 * DAY,
            updated_at=now - 60 * DAY,
        ),
        Resource(
            resource_id=OTHER_ID,
            subject_id=OTHER_PATIENT,
            title="Chest x-ray report",
            content="No acute findings. Blood test pending.",
            created_at=now - 10 * DAY,
            updated_at=now - 10 * DAY,
        ),
    ]


@pytest.fixture()
def documents(sample_records) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(sample_records)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

@pytest.fixture()
def careflow_config(tmp_path, monkeypatch) -> CareflowConfig:
    monkeypatch.setenv("CAREFLOW_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("CAREFLOW_DB_PATH", raising=False)
    monkeypatch.setenv("CAREFLOW_GENERATE_TITLES", "false")
    return CareflowConfig()


@pytest_asyncio.fixture()
async def app(careflow_config, fake_inference, documents):
    """A started application over the sample records and the scripted backend."""
    application = build_app(careflow_config, inference=fake_inference, documents=documents)
    async with application:
        yield application
