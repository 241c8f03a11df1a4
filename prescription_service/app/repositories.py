from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from .models import MetricSample, Request, utcnow


async def create_request(session: AsyncSession, **fields: Any) -> Request:
    """
    Persist a new request with status 'pending'.
    The id and the created_at / updated_at stamps are assigned here.
    """
    now = utcnow()
    req = Request(status="pending", created_at=now, updated_at=now, **fields)
    session.add(req)
    await session.commit()
    await session.refresh(req)
    return req


async def get_request(session: AsyncSession, request_id: str) -> Optional[Request]:
    """Return the request with the given id or None."""
    res = await session.execute(select(Request).where(Request.id == request_id))
    return res.scalar_one_or_none()


async def list_requests(session: AsyncSession) -> List[Request]:
    """Return every request in insertion order."""
    res = await session.execute(select(Request).order_by(Request.seq))
    return list(res.scalars().all())


async def list_by_address(
    session: AsyncSession, address: str, role: Optional[str] = None
) -> List[Request]:
    """
    Return requests where the address is the doctor, the patient, or either.
    Addresses are stored lowercase, so the caller passes a normalised one.
    """
    stmt = select(Request)
    if role == "doctor":
        stmt = stmt.where(Request.doctor_address == address)
    elif role == "patient":
        stmt = stmt.where(Request.patient_address == address)
    else:
        stmt = stmt.where(
            (Request.doctor_address == address) | (Request.patient_address == address)
        )
    res = await session.execute(stmt.order_by(Request.seq))
    return list(res.scalars().all())


async def list_recorded_prescriptions(
    session: AsyncSession, patient_address: str
) -> List[Request]:
    """Return the patient's prescriptions already recorded on chain."""
    res = await session.execute(
        select(Request)
        .where(
            Request.kind == "prescription",
            Request.status == "recorded",
            Request.patient_address == patient_address,
        )
        .order_by(Request.seq)
    )
    return list(res.scalars().all())


async def update_request(
    session: AsyncSession,
    request_id: str,
    fields: Dict[str, Any],
    expected_status: Optional[str] = None,
) -> Optional[Request]:
    """
    Merge fields into the request and refresh updated_at in a single UPDATE.
    With ``expected_status`` the write only applies while the row still has
    that status, so of two concurrent transitions exactly one lands.
    Returns the row as stored afterwards (unchanged when the status guard
    did not match) or None if it does not exist.
    """
    stmt = update(Request).where(Request.id == request_id)
    if expected_status is not None:
        stmt = stmt.where(Request.status == expected_status)
    await session.execute(
        stmt.values(**fields, updated_at=utcnow()).execution_options(
            synchronize_session=False
        )
    )
    await session.commit()
    res = await session.execute(
        select(Request)
        .where(Request.id == request_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def add_metric_samples(
    session: AsyncSession, samples: Iterable[Tuple[str, float, int]]
) -> None:
    """Append (name, value, timestamp_ms) rows in one commit."""
    session.add_all(
        MetricSample(name=name, value=value, timestamp=ts) for name, value, ts in samples
    )
    await session.commit()


async def list_metric_samples(session: AsyncSession) -> List[MetricSample]:
    res = await session.execute(select(MetricSample).order_by(MetricSample.id))
    return list(res.scalars().all())
