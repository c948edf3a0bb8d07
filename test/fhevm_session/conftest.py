from __future__ import annotations

import pytest

from fhevm_stubs import StubInstance, StubSigner


@pytest.fixture
def stub_instance() -> StubInstance:
    return StubInstance()


@pytest.fixture
def signer() -> StubSigner:
    return StubSigner()
