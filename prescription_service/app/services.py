import logging
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .chain import ChainAuthority
from .errors import AuthorizationError, DependencyError, NotFoundError, ValidationError
from .metrics import MetricsRecorder
from .models import Request
from .pinning import ContentPinner
from .schemas import (
    AccessDraft,
    AccessEvidence,
    PrescriptionDraft,
    PrescriptionEvidence,
    describe_errors,
    normalize_address,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("recorded", "granted")


def _parse_evidence(model: Type[BaseModel], chain_evidence: Any, missing: str) -> Any:
    if not isinstance(chain_evidence, dict):
        raise ValidationError(missing)
    try:
        return model.model_validate(chain_evidence)
    except PydanticValidationError as exc:
        raise ValidationError(f"{missing}: {describe_errors(exc)}") from exc


class RequestLifecycle:
    """
    Drives requests from 'pending' to their terminal state.

    Holds no records between calls: every operation reads the current row
    through the repository. Pinning always completes before the row is
    written, so a failed pin leaves nothing behind.
    """

    def __init__(
        self,
        session: AsyncSession,
        pinner: ContentPinner,
        metrics: Optional[MetricsRecorder] = None,
        chain: Optional[ChainAuthority] = None,
        require_registered_doctor: bool = False,
    ):
        self._session = session
        self._pinner = pinner
        self._metrics = metrics
        self._chain = chain
        self._require_registered_doctor = require_registered_doctor

    async def _observe(self, name: str, started: float) -> None:
        if self._metrics is not None:
            await self._metrics.record(name, (time.perf_counter() - started) * 1000)

    async def _ensure_doctor(self, doctor: str) -> None:
        if not self._require_registered_doctor:
            return
        if self._chain is None:
            raise DependencyError("Chain authority is not configured")
        if not await self._chain.is_doctor(doctor):
            raise AuthorizationError("Sender is not a registered doctor")

    async def create_request(
        self, doctor_address: str, draft: Union[PrescriptionDraft, AccessDraft]
    ) -> Request:
        """
        Create a pending request for ``draft``.
        Prescriptions are pinned first; the pin result is stored with the row.
        """
        started = time.perf_counter()
        doctor = normalize_address(doctor_address, "doctorAddress")
        patient = normalize_address(draft.patient_address, "patientAddress")

        if isinstance(draft, PrescriptionDraft):
            if draft.valid_until < int(time.time()):
                raise ValidationError("Doctor authorization has expired (validUntil)")
            await self._ensure_doctor(doctor)

            payload = draft.payload.model_dump()
            envelope = {
                "doctor": doctor,
                "patient": patient,
                "payload": payload,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
            pin_started = time.perf_counter()
            pinned = await self._pinner.pin(
                envelope, name=f"prescription-{patient}-{int(time.time() * 1000)}"
            )
            await self._observe("pinata_upload_ms", pin_started)

            req = await repo.create_request(
                self._session,
                kind="prescription",
                doctor_address=doctor,
                patient_address=patient,
                payload=payload,
                ipfs_hash=pinned.ipfs_hash,
                metadata_uri=pinned.metadata_uri,
                doctor_signature=draft.doctor_signature,
                nonce=str(draft.nonce),
                valid_until=draft.valid_until,
            )
            await self._observe("draft_creation_ms", started)
        elif isinstance(draft, AccessDraft):
            req = await repo.create_request(
                self._session,
                kind="access",
                doctor_address=doctor,
                patient_address=patient,
                payload={"reason": draft.reason},
            )
        else:
            raise ValidationError("Request kind must be 'prescription' or 'access'")

        logger.info(
            "request created",
            extra={"request_id": req.id, "kind": req.kind, "doctor": doctor, "patient": patient},
        )
        return req

    async def list_requests(self, address: str, role: Optional[str] = None) -> List[Request]:
        """Requests where ``address`` is the doctor and/or the patient."""
        normalized = normalize_address(address)
        if role not in (None, "doctor", "patient"):
            raise ValidationError("role must be 'doctor' or 'patient'")
        return await repo.list_by_address(self._session, normalized, role)

    async def get_request(self, request_id: str) -> Request:
        req = await repo.get_request(self._session, request_id)
        if not req:
            raise NotFoundError("Request not found")
        return req

    async def complete_request(
        self, request_id: str, approver_address: str, chain_evidence: Any
    ) -> Request:
        """
        Move a pending request to its terminal state using the patient's
        on-chain transaction. Repeating the call on a terminal request returns
        it unchanged without looking at ``chain_evidence``.
        """
        approver = normalize_address(approver_address, "approver address")
        req = await self.get_request(request_id)
        if req.patient_address.lower() != approver:
            raise AuthorizationError("Only the target patient can approve this request")

        if req.status in TERMINAL_STATUSES:
            logger.info(
                "request already completed",
                extra={"request_id": req.id, "status": req.status},
            )
            return req

        if req.kind == "prescription":
            evidence = _parse_evidence(
                PrescriptionEvidence, chain_evidence, "Missing chain metadata for prescription"
            )
            fields = {
                "status": "recorded",
                "prescription_id": evidence.prescription_id,
                "transaction_hash": evidence.transaction_hash,
            }
        elif req.kind == "access":
            evidence = _parse_evidence(
                AccessEvidence, chain_evidence, "Missing transaction hash for access request"
            )
            fields = {"status": "granted", "transaction_hash": evidence.transaction_hash}
        else:
            raise ValidationError("Unsupported request kind")

        fields["recorded_at"] = datetime.now(timezone.utc)
        updated = await repo.update_request(
            self._session, request_id, fields, expected_status=req.status
        )
        if not updated:
            raise NotFoundError("Request not found")
        if (
            updated.status != fields["status"]
            or updated.transaction_hash != fields["transaction_hash"]
        ):
            # another approval completed the request first; its outcome stands
            logger.info(
                "request already completed",
                extra={"request_id": updated.id, "status": updated.status},
            )
            return updated
        logger.info(
            "request completed",
            extra={
                "request_id": updated.id,
                "status": updated.status,
                "transaction_hash": updated.transaction_hash,
            },
        )
        return updated
