import asyncio

import pytest

from prescription_service.app import repositories as repo
from prescription_service.app.authorization import AuthorizationResolver
from prescription_service.app.chain import Allowed, Denied
from prescription_service.app.errors import DependencyError, ValidationError

from conftest import DOCTOR, PATIENT, STRANGER, FakeChain

PHARMACIST = "0x" + "d" * 40


async def _recorded(session, prescription_id, doctor=DOCTOR, patient=PATIENT):
    req = await repo.create_request(
        session,
        kind="prescription",
        doctor_address=doctor,
        patient_address=patient,
        payload={"title": f"Rx{prescription_id}"},
        ipfs_hash="Qm",
        metadata_uri="ipfs://Qm",
    )
    return await repo.update_request(
        session, req.id, {"status": "recorded", "prescription_id": prescription_id}
    )


@pytest.mark.asyncio
async def test_owner_and_doctor_see_everything_without_chain_calls(session):
    await _recorded(session, 1)
    await _recorded(session, 2, doctor=STRANGER)
    chain = FakeChain()
    resolver = AuthorizationResolver(session, chain)

    as_patient = await resolver.resolve_patient_records(PATIENT, PATIENT)
    assert [r.prescription_id for r in as_patient] == [1, 2]
    assert chain.can_view_calls == []

    as_doctor = await resolver.resolve_patient_records(PATIENT, DOCTOR.upper().replace("0X", "0x"))
    assert [r.prescription_id for r in as_doctor] == [1]
    assert chain.can_view_calls == [(2, DOCTOR)]


@pytest.mark.asyncio
async def test_third_party_filtered_by_chain_in_order(session):
    for pid in (1, 2, 3, 4):
        await _recorded(session, pid)
    chain = FakeChain(viewers={2: {PHARMACIST}, 4: {PHARMACIST}})
    resolver = AuthorizationResolver(session, chain)

    records = await resolver.resolve_patient_records(PATIENT, PHARMACIST)

    assert [r.prescription_id for r in records] == [2, 4]
    assert sorted(chain.can_view_calls) == [(1, PHARMACIST), (2, PHARMACIST), (3, PHARMACIST), (4, PHARMACIST)]
    for record in records:
        assert PHARMACIST in chain.viewers[record.prescription_id]


@pytest.mark.asyncio
async def test_order_is_stable_when_checks_finish_out_of_order(session):
    for pid in (1, 2, 3):
        await _recorded(session, pid)

    class SlowFirstChain(FakeChain):
        async def can_view(self, prescription_id, viewer):
            await asyncio.sleep(0.03 if prescription_id == 1 else 0)
            return True

    resolver = AuthorizationResolver(session, SlowFirstChain())
    records = await resolver.resolve_patient_records(PATIENT, PHARMACIST)
    assert [r.prescription_id for r in records] == [1, 2, 3]


@pytest.mark.asyncio
async def test_pending_and_other_patients_are_not_candidates(session):
    await _recorded(session, 1)
    await _recorded(session, 2, patient=STRANGER)
    await repo.create_request(
        session,
        kind="prescription",
        doctor_address=DOCTOR,
        patient_address=PATIENT,
        payload={"title": "draft"},
        ipfs_hash="Qm",
        metadata_uri="ipfs://Qm",
    )
    resolver = AuthorizationResolver(session, FakeChain())

    records = await resolver.resolve_patient_records(PATIENT, PATIENT)
    assert [r.prescription_id for r in records] == [1]


@pytest.mark.asyncio
async def test_chain_failure_propagates(session):
    await _recorded(session, 1)
    resolver = AuthorizationResolver(session, FakeChain(fail=True))
    with pytest.raises(DependencyError):
        await resolver.resolve_patient_records(PATIENT, PHARMACIST)


@pytest.mark.asyncio
async def test_can_view_prescription_asks_chain_every_time(session):
    chain = FakeChain(viewers={5: {PHARMACIST}})
    resolver = AuthorizationResolver(session, chain)

    assert await resolver.can_view_prescription(5, PHARMACIST) is True
    chain.viewers[5].clear()
    assert await resolver.can_view_prescription(5, PHARMACIST) is False
    assert len(chain.can_view_calls) == 2


@pytest.mark.asyncio
async def test_fetch_single_record_allowed_and_denied(session):
    resolver = AuthorizationResolver(session, FakeChain(viewers={9: {PATIENT}}))

    allowed = await resolver.fetch_single_record(9, PATIENT)
    assert isinstance(allowed, Allowed)
    assert allowed.record.prescription_id == 9

    denied = await resolver.fetch_single_record(9, STRANGER)
    assert isinstance(denied, Denied)


@pytest.mark.asyncio
async def test_fetch_single_record_validates_input(session):
    resolver = AuthorizationResolver(session, FakeChain())
    with pytest.raises(ValidationError):
        await resolver.fetch_single_record(0, PATIENT)
    with pytest.raises(ValidationError):
        await resolver.fetch_single_record(1, "0xnope")


@pytest.mark.asyncio
async def test_owners_resolve_without_chain_client(session):
    await _recorded(session, 1)
    await _recorded(session, 2, doctor=STRANGER)
    resolver = AuthorizationResolver(session, None)

    as_patient = await resolver.resolve_patient_records(PATIENT, PATIENT)
    assert [r.prescription_id for r in as_patient] == [1, 2]

    with pytest.raises(DependencyError):
        await resolver.resolve_patient_records(PATIENT, DOCTOR)
    with pytest.raises(DependencyError):
        await resolver.can_view_prescription(1, PHARMACIST)
    with pytest.raises(DependencyError):
        await resolver.fetch_single_record(1, PATIENT)
