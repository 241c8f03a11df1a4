"""
Read-only client for the on-chain prescription registry.

The registry is the authority for viewer permissions and for finalized
prescriptions. Every call goes to the node; nothing is cached, since access
grants can change on chain at any time.

The client is built once per process by ``Web3ChainAuthority.from_settings``
and handed to the services that need it. Construction requires both
``RPC_URL`` and ``PRESCRIPTION_REGISTRY_ADDRESS``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, Protocol, Union

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .errors import ConfigurationError, DependencyError
from .schemas import OnChainPrescription
from .settings import Settings

logger = logging.getLogger(__name__)

UNAUTHORIZED_VIEWER = "UnauthorizedViewer"
UNAUTHORIZED_VIEWER_SELECTOR = "0x" + bytes(
    Web3.keccak(text=f"{UNAUTHORIZED_VIEWER}()")[:4]
).hex()

PRESCRIPTION_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "getPrescription",
        "stateMutability": "view",
        "inputs": [{"name": "prescriptionId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "doctor", "type": "address"},
                    {"name": "patient", "type": "address"},
                    {"name": "metadataURI", "type": "string"},
                    {"name": "createdAt", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "canView",
        "stateMutability": "view",
        "inputs": [
            {"name": "prescriptionId", "type": "uint256"},
            {"name": "viewer", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "isDoctor",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {"type": "error", "name": UNAUTHORIZED_VIEWER, "inputs": []},
]


@dataclass(frozen=True)
class Allowed:
    record: OnChainPrescription


@dataclass(frozen=True)
class Denied:
    reason: str = UNAUTHORIZED_VIEWER


FetchResult = Union[Allowed, Denied]


class ChainAuthority(Protocol):
    async def get_prescription(self, prescription_id: int, viewer: str) -> FetchResult: ...

    async def can_view(self, prescription_id: int, viewer: str) -> bool: ...

    async def is_doctor(self, address: str) -> bool: ...


def is_unauthorized_viewer(exc: BaseException) -> bool:
    """True when a contract revert carries the UnauthorizedViewer error."""
    if UNAUTHORIZED_VIEWER in str(exc):
        return True
    data = getattr(exc, "data", None)
    return isinstance(data, str) and data.lower().startswith(UNAUTHORIZED_VIEWER_SELECTOR)


class Web3ChainAuthority:
    def __init__(self, contract: Any, timeout: float = 10.0):
        self._contract = contract
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3ChainAuthority":
        missing = []
        if not settings.rpc_url:
            missing.append("RPC_URL")
        if not settings.prescription_registry_address:
            missing.append("PRESCRIPTION_REGISTRY_ADDRESS")
        if missing:
            raise ConfigurationError(f"Missing blockchain config: {', '.join(missing)}")

        w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                settings.rpc_url,
                request_kwargs={
                    "timeout": aiohttp.ClientTimeout(total=settings.chain_timeout_seconds)
                },
            )
        )
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.prescription_registry_address),
            abi=PRESCRIPTION_REGISTRY_ABI,
        )
        logger.info(
            "chain client ready",
            extra={"registry": settings.prescription_registry_address},
        )
        return cls(contract, timeout=settings.chain_timeout_seconds)

    async def _call(self, label: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("chain call timed out", extra={"call": label})
            raise DependencyError(f"Chain call {label} timed out") from exc
        except ContractLogicError:
            raise
        except (Web3Exception, aiohttp.ClientError, OSError, ValueError) as exc:
            logger.warning("chain call failed", extra={"call": label, "error": str(exc)})
            raise DependencyError(f"Chain call {label} failed: {exc}") from exc

    async def get_prescription(self, prescription_id: int, viewer: str) -> FetchResult:
        """
        Read the canonical record as ``viewer``. The contract enforces the
        permission itself and reverts with UnauthorizedViewer when denied.
        """
        fn = self._contract.functions.getPrescription(prescription_id)
        try:
            doctor, patient, metadata_uri, created_at = await self._call(
                "getPrescription",
                fn.call({"from": Web3.to_checksum_address(viewer)}),
            )
        except ContractLogicError as exc:
            if is_unauthorized_viewer(exc):
                return Denied()
            raise DependencyError(f"getPrescription reverted: {exc}") from exc
        return Allowed(
            OnChainPrescription(
                prescription_id=prescription_id,
                doctor=doctor,
                patient=patient,
                metadata_uri=metadata_uri,
                created_at=int(created_at),
            )
        )

    async def can_view(self, prescription_id: int, viewer: str) -> bool:
        fn = self._contract.functions.canView(
            prescription_id, Web3.to_checksum_address(viewer)
        )
        try:
            return bool(await self._call("canView", fn.call()))
        except ContractLogicError as exc:
            raise DependencyError(f"canView reverted: {exc}") from exc

    async def is_doctor(self, address: str) -> bool:
        fn = self._contract.functions.isDoctor(Web3.to_checksum_address(address))
        try:
            return bool(await self._call("isDoctor", fn.call()))
        except ContractLogicError as exc:
            raise DependencyError(f"isDoctor reverted: {exc}") from exc


def build_chain_authority(settings: Settings) -> Optional[Web3ChainAuthority]:
    """Return a client when the chain is configured, otherwise None."""
    try:
        return Web3ChainAuthority.from_settings(settings)
    except ConfigurationError as exc:
        logger.warning("chain features disabled", extra={"reason": str(exc)})
        return None
