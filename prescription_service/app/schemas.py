import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
)

from .errors import ValidationError

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

Address = Annotated[str, Field(pattern=ADDRESS_RE.pattern)]
TxHash = Annotated[str, Field(pattern=TX_HASH_RE.pattern)]
PositiveId = Annotated[StrictInt, Field(gt=0)]


def normalize_address(value: Any, field: str = "address") -> str:
    """Return the lowercase form of a 0x address or raise ValidationError."""
    if not isinstance(value, str) or not ADDRESS_RE.match(value):
        raise ValidationError(f"Invalid {field}")
    return value.lower()


def _int_from_digits(value: Any) -> Any:
    """Unix timestamps arrive as JSON numbers or as decimal strings."""
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return value


UnixTime = Annotated[StrictInt, BeforeValidator(_int_from_digits)]


def describe_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "body"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


# --- request drafts (input)


class Medication(BaseModel):
    name: str = Field(min_length=1)
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None


class PrescriptionPayload(BaseModel):
    """Clinical document pinned to IPFS. Only ``title`` is mandatory."""

    title: str
    summary: Optional[str] = None
    notes: Optional[str] = None
    medications: List[Medication] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Payload title is required")
        return v


class AccessPayload(BaseModel):
    reason: str


class PrescriptionDraft(BaseModel):
    """
    Prescription request as submitted by a doctor.
    doctor_signature / nonce / valid_until carry the doctor's signed
    authorization for the later on-chain finalize; they are format-checked
    and stored, not verified here. Keys are accepted in snake_case or in the
    camelCase the wallet client signs with.
    """

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["prescription"]
    patient_address: Address = Field(alias="patientAddress")
    payload: PrescriptionPayload
    doctor_signature: Annotated[str, Field(pattern=r"^0x[a-fA-F0-9]+$")] = Field(
        alias="doctorSignature"
    )
    nonce: Union[StrictInt, StrictStr]
    valid_until: UnixTime = Field(alias="validUntil")


class AccessDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["access"]
    patient_address: Address = Field(alias="patientAddress")
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason is required for access requests")
        return v


RequestDraft = Annotated[
    Union[PrescriptionDraft, AccessDraft], Field(discriminator="kind")
]

draft_adapter = TypeAdapter(RequestDraft)


def parse_draft(data: Any) -> Union[PrescriptionDraft, AccessDraft]:
    try:
        return draft_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc)) from exc


# --- on-chain evidence for approval


class PrescriptionEvidence(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prescription_id: PositiveId = Field(alias="prescriptionId")
    transaction_hash: TxHash = Field(alias="transactionHash")


class AccessEvidence(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_hash: TxHash = Field(alias="transactionHash")


# --- stored records (output)


class _RequestBase(BaseModel):
    id: str
    doctor_address: str
    patient_address: str
    status: str
    transaction_hash: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    recorded_at: Optional[datetime] = None


class PrescriptionRequestOut(_RequestBase):
    kind: Literal["prescription"]
    payload: PrescriptionPayload
    ipfs_hash: str
    metadata_uri: str
    doctor_signature: Optional[str] = None
    nonce: Optional[str] = None
    valid_until: Optional[int] = None
    prescription_id: Optional[int] = None


class AccessRequestOut(_RequestBase):
    kind: Literal["access"]
    payload: AccessPayload


RequestOutModel = Union[PrescriptionRequestOut, AccessRequestOut]

RequestOut = Annotated[
    Union[PrescriptionRequestOut, AccessRequestOut], Field(discriminator="kind")
]

request_adapter = TypeAdapter(RequestOut)


def to_request_out(req) -> Union[PrescriptionRequestOut, AccessRequestOut]:
    """Build the kind-specific view of an ORM Request."""
    return request_adapter.validate_python(req.__dict__)


class AuthorizedRecord(BaseModel):
    """A recorded prescription the viewer is allowed to see."""

    id: str
    prescription_id: Optional[int] = None
    metadata_uri: Optional[str] = None
    payload: Dict[str, Any]
    doctor_address: str
    patient_address: str
    recorded_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None


class OnChainPrescription(BaseModel):
    """Canonical record as returned by the registry's getPrescription."""

    prescription_id: int
    doctor: str
    patient: str
    metadata_uri: str
    created_at: int


# --- metrics


class MetricIn(BaseModel):
    type: str = Field(min_length=1)
    value: Union[StrictInt, Annotated[StrictFloat, Field(allow_inf_nan=False)]]


class MetricSampleOut(BaseModel):
    value: float
    timestamp: int


class MetricsSummary(BaseModel):
    draft_creation_ms: Optional[float] = None
    finalization_ms: Optional[float] = None
    api_latency_ms: Optional[float] = None
    gas_finalize: Optional[float] = None
    pinata_upload_ms: Optional[float] = None


class HealthOut(BaseModel):
    status: str
    chain_configured: bool
