import asyncio

from fhevm_session.builder import BuildStatus
from fhevm_session.errors import FhevmAbortError, FhevmConfigurationError
from fhevm_session.session import FhevmSession, SessionStatus

from fhevm_stubs import StubInstance


class StubBuilder:
    """Completes each build when its gate is released."""

    def __init__(self):
        self.calls = []
        self.gates = {}
        self.errors = {}

    def gate(self, provider):
        return self.gates.setdefault(provider, asyncio.Event())

    async def build(self, provider, mock_chains=None, token=None, on_status=None):
        self.calls.append({"provider": provider, "mock_chains": mock_chains, "token": token})
        if on_status is not None:
            on_status.emit(BuildStatus.CREATING)
        await self.gate(provider).wait()
        if provider in self.errors:
            raise self.errors[provider]
        token.raise_if_cancelled()
        return StubInstance(chain_id=len(self.calls))


def test_session_becomes_ready():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder, mock_chains={31337: "http://localhost:8545"})
        task = session.update(provider="wallet-a", chain_id=31337)
        assert session.status is SessionStatus.LOADING
        builder.gate("wallet-a").set()
        await task
        return builder, session

    builder, session = asyncio.run(runner())

    assert session.status is SessionStatus.READY
    assert session.instance is not None
    assert session.error is None
    assert session.status_history == [SessionStatus.IDLE, SessionStatus.LOADING, SessionStatus.READY]
    assert session.build_statuses == [BuildStatus.CREATING]
    assert builder.calls[0]["mock_chains"] == {31337: "http://localhost:8545"}


def test_provider_change_discards_stale_build():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder)
        first = session.update(provider="wallet-a", chain_id=1)
        await asyncio.sleep(0)
        second = session.update(provider="wallet-b")
        assert builder.calls[0]["token"].cancelled
        builder.gate("wallet-b").set()
        await second
        ready = session.instance
        builder.gate("wallet-a").set()
        await first
        return builder, session, ready

    builder, session, ready = asyncio.run(runner())

    assert session.status is SessionStatus.READY
    assert session.instance is ready
    assert session.provider == "wallet-b"
    assert len(builder.calls) == 2
    assert b'fhevm_builds_total{outcome="cancelled"} 1.0' in session.metrics()


def test_unchanged_inputs_do_not_restart_build():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder)
        task = session.update(provider="wallet-a", chain_id=1)
        assert session.update(provider="wallet-a", chain_id=1) is task
        builder.gate("wallet-a").set()
        await task
        assert session.update(chain_id=1) is None
        return builder

    builder = asyncio.run(runner())

    assert len(builder.calls) == 1


def test_disabled_session_stays_idle():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder, enabled=False)
        assert session.update(provider="wallet-a", chain_id=1) is None
        return builder, session

    builder, session = asyncio.run(runner())

    assert session.status is SessionStatus.IDLE
    assert builder.calls == []


def test_disabling_cancels_in_flight_build():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder)
        task = session.update(provider="wallet-a")
        await asyncio.sleep(0)
        session.update(enabled=False)
        builder.gate("wallet-a").set()
        await task
        return session

    session = asyncio.run(runner())

    assert session.status is SessionStatus.IDLE
    assert session.instance is None


def test_build_failure_sets_error_status():
    async def runner():
        builder = StubBuilder()
        builder.errors["wallet-a"] = FhevmConfigurationError("no config", code="CONFIG_NOT_FOUND")
        session = FhevmSession(builder)
        seen = []
        session.subscribe(seen.append)
        task = session.update(provider="wallet-a")
        builder.gate("wallet-a").set()
        await task
        return session, seen

    session, seen = asyncio.run(runner())

    assert session.status is SessionStatus.ERROR
    assert session.error.code == "CONFIG_NOT_FOUND"
    assert seen == [SessionStatus.LOADING, SessionStatus.ERROR]
    assert b'fhevm_builds_total{outcome="error"} 1.0' in session.metrics()


def test_abort_is_not_reported_as_error():
    async def runner():
        builder = StubBuilder()
        builder.errors["wallet-a"] = FhevmAbortError("aborted")
        session = FhevmSession(builder)
        task = session.update(provider="wallet-a")
        builder.gate("wallet-a").set()
        await task
        return session

    session = asyncio.run(runner())

    assert session.error is None
    assert SessionStatus.ERROR not in session.status_history
    assert session.status is SessionStatus.IDLE
    assert not session.in_flight


def test_refresh_rebuilds_after_error():
    async def runner():
        builder = StubBuilder()
        builder.errors["wallet-a"] = RuntimeError("relayer down")
        session = FhevmSession(builder)
        builder.gate("wallet-a").set()
        await session.update(provider="wallet-a")
        assert session.status is SessionStatus.ERROR
        del builder.errors["wallet-a"]
        await session.refresh()
        return session

    session = asyncio.run(runner())

    assert session.status is SessionStatus.READY
    assert session.error is None


def test_close_returns_to_idle():
    async def runner():
        builder = StubBuilder()
        session = FhevmSession(builder)
        session.update(provider="wallet-a")
        await session.close()
        return session

    session = asyncio.run(runner())

    assert session.status is SessionStatus.IDLE
    assert not session.in_flight
