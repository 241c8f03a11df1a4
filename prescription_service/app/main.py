import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import schemas
from .authorization import AuthorizationResolver
from .chain import Denied, build_chain_authority
from .db import async_session_factory, engine
from .deps import get_lifecycle, get_metrics, get_optional_chain, get_resolver
from .errors import DependencyError, ServiceError, ValidationError
from .logging_config import setup_logging
from .metrics import API_LATENCY_PREFIX, MetricsRecorder, summarize
from .pinning import PinataPinner
from .services import RequestLifecycle
from .settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    client = httpx.AsyncClient()
    app.state.pinner = PinataPinner(settings, client)
    app.state.chain = build_chain_authority(settings)
    app.state.metrics = MetricsRecorder(
        async_session_factory, flush_threshold=settings.metrics_flush_threshold
    )
    logger.info("service started", extra={"chain_configured": app.state.chain is not None})
    try:
        yield
    finally:
        await app.state.metrics.close()
        await client.aclose()
        await engine.dispose()


app = FastAPI(
    title="Prescription Service",
    version="1.0.0",
    description=(
        "Tracks doctor-initiated prescription and access requests until the "
        "patient records them on chain, pins prescription documents to IPFS "
        "and answers who may view which record by asking the registry contract."
    ),
    lifespan=lifespan,
)


@app.exception_handler(ServiceError)
async def service_error_handler(_: Request, exc: ServiceError):
    if isinstance(exc, DependencyError):
        logger.error("dependency failure", extra={"error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}")
    return JSONResponse(status_code=400, content={"detail": "; ".join(parts)})


@app.middleware("http")
async def latency_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    recorder: Optional[MetricsRecorder] = getattr(request.app.state, "metrics", None)
    if recorder is not None:
        await recorder.record(
            f"{API_LATENCY_PREFIX}{request.method} {request.url.path}",
            (time.perf_counter() - started) * 1000,
        )
    return response


def _require_address(value: Optional[str], header: str) -> str:
    if not value:
        raise ValidationError(f"Missing {header} header")
    return schemas.normalize_address(value, f"{header} address")


@app.get("/health", response_model=schemas.HealthOut, tags=["Service"], summary="Health check")
async def health(chain=Depends(get_optional_chain)):
    """Readiness plus whether chain reads are available."""
    return schemas.HealthOut(status="ok", chain_configured=chain is not None)


@app.post(
    "/requests",
    status_code=201,
    response_model=schemas.RequestOutModel,
    tags=["Requests"],
    summary="Create a request",
    description=(
        "Doctor (x-sender) creates a prescription or access request with status "
        "'pending'. Prescription documents are pinned to IPFS before the request is stored."
    ),
)
async def create_request(
    body: Any = Body(default=None),
    x_sender: Optional[str] = Header(default=None),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    doctor = _require_address(x_sender, "x-sender")
    draft = schemas.parse_draft(body)
    req = await lifecycle.create_request(doctor, draft)
    return schemas.to_request_out(req)


@app.get(
    "/requests",
    response_model=List[schemas.RequestOutModel],
    tags=["Requests"],
    summary="List requests for an address",
    description="Requests where the address is the doctor, the patient, or either (role omitted).",
)
async def list_requests(
    address: Optional[str] = None,
    role: Optional[str] = None,
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    items = await lifecycle.list_requests(address, role)
    return [schemas.to_request_out(i) for i in items]


@app.get(
    "/requests/{request_id}",
    response_model=schemas.RequestOutModel,
    tags=["Requests"],
    summary="Get a request",
)
async def get_request(
    request_id: str,
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Current state of a request by id."""
    req = await lifecycle.get_request(request_id)
    return schemas.to_request_out(req)


@app.post(
    "/requests/{request_id}/approve",
    response_model=schemas.RequestOutModel,
    tags=["Requests"],
    summary="Approve a request",
    description=(
        "Patient (x-sender) reports the on-chain transaction that finalized the "
        "prescription or granted access. Approving a completed request returns it unchanged."
    ),
)
async def approve_request(
    request_id: str,
    chain_data: Any = Body(default=None),
    x_sender: Optional[str] = Header(default=None),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    patient = _require_address(x_sender, "x-sender")
    req = await lifecycle.complete_request(request_id, patient, chain_data)
    return schemas.to_request_out(req)


@app.get(
    "/prescriptions/{prescription_id}",
    response_model=schemas.OnChainPrescription,
    tags=["Prescriptions"],
    summary="Canonical prescription from the chain",
    description="Reads the registry as the viewer (x-viewer); 403 when the contract denies the read.",
)
async def get_prescription(
    prescription_id: int,
    x_viewer: Optional[str] = Header(default=None),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    viewer = _require_address(x_viewer, "x-viewer")
    result = await resolver.fetch_single_record(prescription_id, viewer)
    if isinstance(result, Denied):
        return JSONResponse(status_code=403, content={"detail": "Viewer not authorized"})
    return result.record


@app.get(
    "/patients/{patient}/prescriptions",
    response_model=List[schemas.AuthorizedRecord],
    tags=["Prescriptions"],
    summary="Recorded prescriptions visible to the viewer",
)
async def patient_prescriptions(
    patient: str,
    x_viewer: Optional[str] = Header(default=None),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    """
    Recorded prescriptions of a patient, filtered to those the viewer
    (x-viewer) may see: the patient, the issuing doctor, or anyone the
    registry's canView allows.
    """
    viewer = _require_address(x_viewer, "x-viewer")
    return await resolver.resolve_patient_records(patient, viewer)


@app.post("/metrics", status_code=201, tags=["Metrics"], summary="Record an observation")
async def post_metric(
    body: schemas.MetricIn,
    metrics: Optional[MetricsRecorder] = Depends(get_metrics),
):
    if metrics is None:
        raise DependencyError("Metrics recorder is not running")
    await metrics.record(body.type, body.value)
    return {"status": "ok"}


@app.get(
    "/metrics",
    response_model=Dict[str, List[schemas.MetricSampleOut]],
    tags=["Metrics"],
    summary="All recorded series",
)
async def get_metrics_series(metrics: Optional[MetricsRecorder] = Depends(get_metrics)):
    if metrics is None:
        raise DependencyError("Metrics recorder is not running")
    return await metrics.read_all()


@app.get(
    "/metrics/summary",
    response_model=schemas.MetricsSummary,
    tags=["Metrics"],
    summary="Performance report",
)
async def get_metrics_summary(metrics: Optional[MetricsRecorder] = Depends(get_metrics)):
    """Averages for draft creation, finalization, API latency, finalize gas and pin latency."""
    if metrics is None:
        raise DependencyError("Metrics recorder is not running")
    return schemas.MetricsSummary(**summarize(await metrics.read_all()))
