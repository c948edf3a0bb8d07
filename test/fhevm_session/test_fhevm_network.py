import asyncio
import json

import httpx
import pytest

from fhevm_session.errors import RelayerMetadataError
from fhevm_session.network import (
    NetworkProfile,
    fetch_relayer_metadata,
    get_chain_id,
    resolve_network,
    try_resolve_mock_metadata,
)
from fhevm_session.rpc import HttpProvider, RpcError

from fhevm_stubs import ACL_ADDRESS, MOCK_METADATA, StubProvider


def _rpc_transport(results):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        seen.append(payload["method"])
        result = results[payload["method"]]
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    return httpx.MockTransport(handler), seen


def test_resolve_marks_default_local_chain_as_mock():
    profile = asyncio.run(resolve_network(StubProvider({"eth_chainId": "0x7a69"})))

    assert profile == NetworkProfile(is_mock=True, chain_id=31337, rpc_url="http://localhost:8545")


def test_resolve_honours_custom_mock_chains():
    provider = StubProvider({"eth_chainId": "0x2a"})

    profile = asyncio.run(resolve_network(provider, {42: "http://devnet:8545"}))

    assert profile.is_mock and profile.rpc_url == "http://devnet:8545"


def test_resolve_production_provider_has_no_rpc_url():
    profile = asyncio.run(resolve_network(StubProvider({"eth_chainId": "0xaa36a7"})))

    assert profile == NetworkProfile(is_mock=False, chain_id=11155111, rpc_url=None)


def test_resolve_bare_url_keeps_rpc_url(monkeypatch):
    transport, seen = _rpc_transport({"eth_chainId": "0xaa36a7"})
    original_init = HttpProvider.__init__

    def init_with_transport(self, url, **kwargs):
        kwargs["transport"] = transport
        original_init(self, url, **kwargs)

    monkeypatch.setattr(HttpProvider, "__init__", init_with_transport)

    profile = asyncio.run(resolve_network("https://sepolia.example/rpc"))

    assert profile == NetworkProfile(is_mock=False, chain_id=11155111, rpc_url="https://sepolia.example/rpc")
    assert seen == ["eth_chainId"]


def test_http_provider_raises_rpc_errors():
    transport, _ = _rpc_transport({"fhevm_relayer_metadata": {"error": {"code": -32601, "message": "Method not found"}}})
    provider = HttpProvider("http://node", transport=transport)

    with pytest.raises(RpcError) as excinfo:
        asyncio.run(provider.request("fhevm_relayer_metadata"))

    assert excinfo.value.code == -32601

    with pytest.raises(RelayerMetadataError):
        asyncio.run(fetch_relayer_metadata(provider, "http://node"))


def test_http_provider_reports_http_failures():
    provider = HttpProvider("http://node", transport=httpx.MockTransport(lambda request: httpx.Response(502)))

    with pytest.raises(RpcError) as excinfo:
        asyncio.run(get_chain_id(provider))

    assert excinfo.value.code == 502


@pytest.mark.parametrize(
    "responses",
    [
        {"web3_clientVersion": "Geth/v1.14.0", "fhevm_relayer_metadata": MOCK_METADATA},
        {"web3_clientVersion": RpcError("connection refused")},
        {"web3_clientVersion": "HardhatNetwork/2.22.0", "fhevm_relayer_metadata": ["unexpected"]},
        {"web3_clientVersion": "HardhatNetwork/2.22.0", "fhevm_relayer_metadata": dict(MOCK_METADATA, ACLAddress="0xnope")},
        {"web3_clientVersion": "HardhatNetwork/2.22.0", "fhevm_relayer_metadata": ValueError("boom")},
    ],
)
def test_mock_probe_never_raises(responses):
    provider = StubProvider(responses)

    assert asyncio.run(try_resolve_mock_metadata("http://node", provider_factory=lambda _url: provider)) is None


def test_mock_probe_returns_checksummed_metadata():
    provider = StubProvider({"web3_clientVersion": "HardhatNetwork/2.22.0", "fhevm_relayer_metadata": MOCK_METADATA})

    metadata = asyncio.run(try_resolve_mock_metadata("http://node", provider_factory=lambda _url: provider))

    assert metadata is not None
    assert metadata.acl_address == "0x687820221192C5B662b25367F70076A37bc79b6c"
    assert metadata.to_rpc()["ACLAddress"].lower() == ACL_ADDRESS
    assert provider.calls == ["web3_clientVersion", "fhevm_relayer_metadata"]
