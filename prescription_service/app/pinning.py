import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from .errors import DependencyError
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinResult:
    ipfs_hash: str
    metadata_uri: str


class ContentPinner(Protocol):
    async def pin(self, content: Any, name: Optional[str] = None) -> PinResult: ...


def build_gateway_url(gateway: str, cid: str) -> str:
    """
    Resolve a CID against the configured gateway.
    The result carries exactly one '/ipfs/' segment; an empty gateway
    falls back to the ipfs:// scheme.
    """
    base = (gateway or "").strip()
    if not base:
        return f"ipfs://{cid}"
    base = base.rstrip("/")
    lowered = base.lower()
    if lowered.endswith("/ipfs") or "/ipfs/" in lowered:
        return f"{base}/{cid}"
    return f"{base}/ipfs/{cid}"


class PinataPinner:
    """Pins JSON documents through Pinata's pinJSONToIPFS endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self._settings = settings
        self._client = client

    async def pin(self, content: Any, name: Optional[str] = None) -> PinResult:
        if not self._settings.pinata_jwt:
            raise DependencyError("Pinning service is not configured: missing PINATA_JWT")

        body = {
            "pinataContent": content,
            "pinataMetadata": {"name": name or "prescription"},
        }
        started = time.perf_counter()
        try:
            r = await self._client.post(
                self._settings.pinata_pin_url,
                json=body,
                headers={"Authorization": f"Bearer {self._settings.pinata_jwt}"},
                timeout=self._settings.pin_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.warning("pin timed out", extra={"pin_name": name})
            raise DependencyError("Pinata pinJSON timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("pin transport failure", extra={"pin_name": name, "error": str(exc)})
            raise DependencyError(f"Pinata pinJSON failed: {exc}") from exc

        if r.is_error:
            detail = r.text or "Unknown error"
            logger.warning(
                "pin rejected", extra={"pin_name": name, "status": r.status_code}
            )
            raise DependencyError(f"Pinata pinJSON failed ({r.status_code}): {detail}")

        try:
            cid = r.json()["IpfsHash"]
        except (ValueError, KeyError) as exc:
            raise DependencyError("Pinata pinJSON returned no IpfsHash") from exc

        logger.info(
            "content pinned",
            extra={"cid": cid, "elapsed_ms": (time.perf_counter() - started) * 1000},
        )
        return PinResult(
            ipfs_hash=cid,
            metadata_uri=build_gateway_url(self._settings.pinata_gateway, cid),
        )
