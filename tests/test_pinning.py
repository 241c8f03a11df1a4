import json

import httpx
import pytest

from prescription_service.app.errors import DependencyError
from prescription_service.app.pinning import PinataPinner, build_gateway_url
from prescription_service.app.settings import Settings


@pytest.mark.parametrize(
    "gateway, expected",
    [
        ("https://gateway.pinata.cloud/ipfs/", "https://gateway.pinata.cloud/ipfs/Qm1"),
        ("https://gateway.pinata.cloud/ipfs", "https://gateway.pinata.cloud/ipfs/Qm1"),
        ("https://my.gateway.io", "https://my.gateway.io/ipfs/Qm1"),
        ("https://my.gateway.io/", "https://my.gateway.io/ipfs/Qm1"),
        ("   ", "ipfs://Qm1"),
        ("", "ipfs://Qm1"),
    ],
)
def test_build_gateway_url(gateway, expected):
    assert build_gateway_url(gateway, "Qm1") == expected


def _settings(**overrides):
    values = {"PINATA_JWT": "jwt-token", "PINATA_GATEWAY": "https://gw.example/ipfs/"}
    values.update(overrides)
    return Settings(**values)


@pytest.mark.asyncio
async def test_pin_posts_content_and_builds_uri():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"IpfsHash": "Qm123", "PinSize": 10})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        pinner = PinataPinner(_settings(), client)
        result = await pinner.pin({"title": "Rx1"}, name="prescription-x")

    assert result.ipfs_hash == "Qm123"
    assert result.metadata_uri == "https://gw.example/ipfs/Qm123"
    assert seen["auth"] == "Bearer jwt-token"
    assert seen["body"]["pinataContent"] == {"title": "Rx1"}
    assert seen["body"]["pinataMetadata"] == {"name": "prescription-x"}


@pytest.mark.asyncio
async def test_pin_upstream_error_carries_detail():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="invalid jwt")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        pinner = PinataPinner(_settings(), client)
        with pytest.raises(DependencyError, match=r"\(401\): invalid jwt"):
            await pinner.pin({"title": "Rx1"})


@pytest.mark.asyncio
async def test_pin_timeout_is_dependency_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        pinner = PinataPinner(_settings(), client)
        with pytest.raises(DependencyError, match="timed out"):
            await pinner.pin({"title": "Rx1"})


@pytest.mark.asyncio
async def test_pin_without_jwt_fails_before_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"IpfsHash": "Qm"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        pinner = PinataPinner(_settings(PINATA_JWT=""), client)
        with pytest.raises(DependencyError, match="PINATA_JWT"):
            await pinner.pin({"title": "Rx1"})
    assert calls == []
