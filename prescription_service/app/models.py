import uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, BigInteger, String, Text, DateTime, Float, JSON
from datetime import datetime, timezone
from typing import Any, Optional
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Request(Base):
    """
    A doctor-initiated request awaiting the patient's on-chain action.
    Fields:
    - kind: 'prescription' | 'access'
    - doctor_address / patient_address: lowercase 0x addresses, never mutated
    - payload: clinical document (prescription) or {reason} (access)
    - ipfs_hash / metadata_uri: pin result, prescription only
    - doctor_signature / nonce / valid_until: doctor's authorization, prescription only
    - status: 'pending' -> 'recorded' (prescription) | 'granted' (access)
    - prescription_id / transaction_hash: on-chain evidence from approval
    - created_at / updated_at / recorded_at: timestamps
    """

    __tablename__ = "requests"

    # surrogate key, gives list scans their insertion order
    seq: Mapped[int] = mapped_column(Integer, primary_key=True)
    id: Mapped[str] = mapped_column(
        String(36), unique=True, index=True, default=lambda: str(uuid.uuid4())
    )
    kind: Mapped[str] = mapped_column(String(20))  # 'prescription' | 'access'
    doctor_address: Mapped[str] = mapped_column(String(42), index=True)
    patient_address: Mapped[str] = mapped_column(String(42), index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    ipfs_hash: Mapped[Optional[str]] = mapped_column(String(128))
    metadata_uri: Mapped[Optional[str]] = mapped_column(Text)
    doctor_signature: Mapped[Optional[str]] = mapped_column(Text)
    nonce: Mapped[Optional[str]] = mapped_column(String(78))
    valid_until: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    prescription_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(66))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class MetricSample(Base):
    """One observation of a named numeric series (latency, gas usage)."""

    __tablename__ = "metric_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), index=True)
    value: Mapped[float] = mapped_column(Float)
    timestamp: Mapped[int] = mapped_column(BigInteger)  # unix millis
