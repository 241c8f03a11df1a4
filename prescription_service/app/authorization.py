import asyncio
import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .chain import Allowed, ChainAuthority, FetchResult
from .errors import DependencyError, ValidationError
from .models import Request
from .schemas import AuthorizedRecord, normalize_address

logger = logging.getLogger(__name__)


class AuthorizationResolver:
    """
    Decides what a viewer may see. Ownership (patient or issuing doctor) is
    checked locally; everything else is asked of the chain on every call.
    Without a chain client only the ownership checks can succeed; a decision
    that needs the chain raises DependencyError.
    """

    def __init__(self, session: AsyncSession, chain: Optional[ChainAuthority]):
        self._session = session
        self._chain = chain

    def _require_chain(self) -> ChainAuthority:
        if self._chain is None:
            raise DependencyError("Chain authority is not configured")
        return self._chain

    async def can_view_prescription(self, prescription_id: int, viewer_address: str) -> bool:
        viewer = normalize_address(viewer_address, "viewer address")
        return await self._require_chain().can_view(prescription_id, viewer)

    async def _is_authorized(self, record: Request, viewer: str) -> bool:
        if viewer in (record.patient_address.lower(), record.doctor_address.lower()):
            return True
        if record.prescription_id:
            return await self._require_chain().can_view(record.prescription_id, viewer)
        return False

    async def resolve_patient_records(
        self, patient_address: str, viewer_address: str
    ) -> List[AuthorizedRecord]:
        """
        Recorded prescriptions of ``patient_address`` that the viewer may see,
        in store order. Unauthorized records are left out. Checks run
        concurrently; each record costs at most one chain call.
        """
        patient = normalize_address(patient_address, "patient address")
        viewer = normalize_address(viewer_address, "viewer address")
        candidates = await repo.list_recorded_prescriptions(self._session, patient)

        decisions = await asyncio.gather(
            *(self._is_authorized(record, viewer) for record in candidates)
        )
        allowed = [
            AuthorizedRecord.model_validate(record.__dict__)
            for record, ok in zip(candidates, decisions)
            if ok
        ]
        logger.debug(
            "patient records resolved",
            extra={
                "patient": patient,
                "viewer": viewer,
                "candidates": len(candidates),
                "allowed": len(allowed),
            },
        )
        return allowed

    async def fetch_single_record(self, prescription_id: int, viewer_address: str) -> FetchResult:
        """
        Canonical record read from the chain as the viewer. A denial by the
        contract comes back as ``Denied``; other faults raise DependencyError.
        """
        if (
            isinstance(prescription_id, bool)
            or not isinstance(prescription_id, int)
            or prescription_id <= 0
        ):
            raise ValidationError("Invalid prescription id")
        viewer = normalize_address(viewer_address, "viewer address")
        result = await self._require_chain().get_prescription(prescription_id, viewer)
        logger.info(
            "single record fetched",
            extra={
                "prescription_id": prescription_id,
                "viewer": viewer,
                "allowed": isinstance(result, Allowed),
            },
        )
        return result
