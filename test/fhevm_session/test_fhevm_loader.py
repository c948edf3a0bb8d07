import asyncio

import httpx
import pytest

from fhevm_session.errors import EngineLoadError
from fhevm_session.loader import EngineLoader, EngineRuntime

SDK_SOURCE = """
INIT_CALLS = []


def init_sdk(**options):
    INIT_CALLS.append(options)
    return True


async def create_instance(config):
    return {"config": config}


ZamaEthereumConfig = {"aclContractAddress": "0x687820221192C5B662b25367F70076A37bc79b6c"}
"""


def _cdn(body: str = SDK_SOURCE, status: int = 200):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return httpx.Response(status, text=body)

    return httpx.MockTransport(handler), requests


def test_local_path_is_preferred(tmp_path):
    script = tmp_path / "relayer_sdk_local.py"
    script.write_text(SDK_SOURCE)
    transport, requests = _cdn()
    loader = EngineLoader(
        local_source=str(script),
        cache_dir=tmp_path / "cache",
        module_name="relayer_sdk_local_test",
        transport=transport,
    )
    runtime = EngineRuntime()

    asyncio.run(loader.load(runtime))

    assert runtime.loaded
    assert callable(runtime.module.create_instance)
    assert requests == []


def test_falls_back_to_cdn_and_caches_script(tmp_path):
    transport, requests = _cdn()
    loader = EngineLoader(
        local_source="fhevm_missing_relayer_sdk",
        cdn_url="https://cdn.example/relayer-sdk/relayer_sdk.py",
        cache_dir=tmp_path / "cache",
        module_name="relayer_sdk_cdn_test",
        transport=transport,
    )
    runtime = EngineRuntime()

    asyncio.run(loader.load(runtime))

    assert requests == ["https://cdn.example/relayer-sdk/relayer_sdk.py"]
    assert (tmp_path / "cache" / "relayer_sdk.py").read_text() == SDK_SOURCE
    assert runtime.module.ZamaEthereumConfig["aclContractAddress"].startswith("0x6878")


def test_load_is_a_no_op_once_loaded(tmp_path):
    transport, requests = _cdn()
    loader = EngineLoader(local_source=None, cdn_url="https://cdn.example/sdk.py", cache_dir=tmp_path, transport=transport)
    runtime = EngineRuntime(module=object())

    asyncio.run(loader.load(runtime))

    assert requests == []


def test_both_sources_failing_raises(tmp_path):
    transport, _ = _cdn(status=404)
    loader = EngineLoader(
        local_source=str(tmp_path / "absent.py"),
        cdn_url="https://cdn.example/sdk.py",
        cache_dir=tmp_path / "cache",
        transport=transport,
    )
    runtime = EngineRuntime()

    with pytest.raises(EngineLoadError) as excinfo:
        asyncio.run(loader.load(runtime))

    assert excinfo.value.code == "SDK_LOAD_FAILED"
    assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)
    assert not runtime.loaded


def test_module_without_sdk_entry_points_is_rejected(tmp_path):
    script = tmp_path / "not_the_sdk.py"
    script.write_text("VALUE = 1\n")
    loader = EngineLoader(local_source=str(script), cdn_url=None, cache_dir=tmp_path, module_name="not_the_sdk_test")

    with pytest.raises(EngineLoadError) as excinfo:
        asyncio.run(loader.load(EngineRuntime()))

    assert "missing init_sdk, create_instance" in str(excinfo.value.__cause__)


def test_runtime_initialises_once(tmp_path):
    script = tmp_path / "relayer_sdk_init.py"
    script.write_text(SDK_SOURCE)
    loader = EngineLoader(local_source=str(script), cache_dir=tmp_path, module_name="relayer_sdk_init_test")
    runtime = EngineRuntime()

    async def runner():
        await asyncio.gather(*[runtime.ensure_loaded(loader) for _ in range(3)])
        return await asyncio.gather(*[runtime.ensure_initialized({"thread": 1}) for _ in range(3)])

    results = asyncio.run(runner())

    assert sorted(results) == [False, False, True]
    assert runtime.initialized
    assert runtime.module.INIT_CALLS == [{"thread": 1}]


def test_initialise_without_module_fails():
    with pytest.raises(EngineLoadError) as excinfo:
        asyncio.run(EngineRuntime().ensure_initialized())

    assert excinfo.value.code == "SDK_INIT_FAILED"
