import time

import pytest
from sqlalchemy.exc import SQLAlchemyError

from prescription_service.app.chain import Allowed, Denied
from prescription_service.app.db import Base, make_engine, make_session_factory
from prescription_service.app.errors import DependencyError
from prescription_service.app.pinning import PinResult
from prescription_service.app.schemas import OnChainPrescription

DOCTOR = "0x" + "a" * 40
PATIENT = "0x" + "b" * 40
STRANGER = "0x" + "c" * 40
TX_HASH = "0x" + "a" * 64


class FakePinner:
    def __init__(self, cid: str = "Qm123", error: Exception = None):
        self.cid = cid
        self.error = error
        self.pinned = []

    async def pin(self, content, name=None):
        self.pinned.append((content, name))
        if self.error is not None:
            raise self.error
        return PinResult(
            ipfs_hash=self.cid,
            metadata_uri=f"https://gateway.pinata.cloud/ipfs/{self.cid}",
        )


class FakeChain:
    """In-memory registry: viewers[prescription_id] is the set of allowed viewers."""

    def __init__(self, viewers=None, doctors=(), fail=False):
        self.viewers = {k: set(v) for k, v in (viewers or {}).items()}
        self.doctors = set(doctors)
        self.fail = fail
        self.can_view_calls = []

    async def can_view(self, prescription_id, viewer):
        self.can_view_calls.append((prescription_id, viewer))
        if self.fail:
            raise DependencyError("canView failed")
        return viewer in self.viewers.get(prescription_id, set())

    async def get_prescription(self, prescription_id, viewer):
        if self.fail:
            raise DependencyError("getPrescription failed")
        if viewer not in self.viewers.get(prescription_id, set()):
            return Denied()
        return Allowed(
            OnChainPrescription(
                prescription_id=prescription_id,
                doctor=DOCTOR,
                patient=PATIENT,
                metadata_uri="ipfs://Qm123",
                created_at=1700000000,
            )
        )

    async def is_doctor(self, address):
        return address in self.doctors


class _UnavailableSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def add_all(self, rows):
        list(rows)

    async def commit(self):
        raise SQLAlchemyError("database unavailable")


class FlakySessionFactory:
    """Session factory whose writes fail while ``down`` is set."""

    def __init__(self, factory):
        self._factory = factory
        self.down = True

    def __call__(self):
        if self.down:
            return _UnavailableSession()
        return self._factory()


def prescription_body(**overrides):
    body = {
        "kind": "prescription",
        "patient_address": PATIENT,
        "payload": {
            "title": "Rx1",
            "summary": "Seasonal allergy",
            "medications": [{"name": "Cetirizine", "dosage": "10mg", "frequency": "daily"}],
        },
        "doctor_signature": "0x" + "1f" * 65,
        "nonce": 1,
        "valid_until": int(time.time()) + 3600,
    }
    body.update(overrides)
    return body


def access_body(**overrides):
    body = {"kind": "access", "patient_address": PATIENT, "reason": "Follow-up visit"}
    body.update(overrides)
    return body


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = make_session_factory(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s
