import asyncio

import pytest

from fhevm_session.errors import PersistenceError
from fhevm_session.public_params import PUBLIC_KEY_STORE, PublicParamsStore

from fhevm_stubs import ACL_ADDRESS, KMS_ADDRESS

PUBLIC_KEY = {"data": b"\x01\x02\x03", "id": "pk-1"}
PUBLIC_PARAMS = {2048: {"publicParams": b"\x04\x05", "publicParamsId": "pp-1"}}


def test_round_trip_restores_bytes_and_bit_keys(tmp_path):
    store = PublicParamsStore(tmp_path)

    asyncio.run(store.set(ACL_ADDRESS, PUBLIC_KEY, PUBLIC_PARAMS))
    entry = asyncio.run(PublicParamsStore(tmp_path).get(ACL_ADDRESS.upper().replace("0X", "0x")))

    assert entry.public_key == PUBLIC_KEY
    assert entry.public_params == PUBLIC_PARAMS
    assert (tmp_path / "publicKeyStore" / f"{ACL_ADDRESS}.json").exists()


def test_partial_write_keeps_existing_values(tmp_path):
    store = PublicParamsStore(tmp_path)
    store.set_sync(ACL_ADDRESS, PUBLIC_KEY, PUBLIC_PARAMS)

    store.set_sync(ACL_ADDRESS, None, {2048: {"publicParams": b"\x06", "publicParamsId": "pp-2"}})

    entry = store.get_sync(ACL_ADDRESS)
    assert entry.public_key == PUBLIC_KEY
    assert entry.public_params[2048]["publicParamsId"] == "pp-2"


def test_unknown_acl_is_empty(tmp_path):
    assert PublicParamsStore(tmp_path).get_sync(KMS_ADDRESS).empty


def test_degraded_mode_without_root():
    store = PublicParamsStore(None)

    store.set_sync(ACL_ADDRESS, PUBLIC_KEY, PUBLIC_PARAMS)

    assert not store.enabled
    assert store.get_sync(ACL_ADDRESS).empty
    assert store.clear_sync() == 0

    with pytest.raises(PersistenceError):
        store._read(PUBLIC_KEY_STORE, ACL_ADDRESS)


def test_unusable_root_degrades(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    assert not PublicParamsStore(blocker / "params").enabled


def test_corrupted_entry_reads_as_empty(tmp_path):
    store = PublicParamsStore(tmp_path)
    (tmp_path / "publicKeyStore" / f"{ACL_ADDRESS}.json").write_text("{broken")

    assert store.get_sync(ACL_ADDRESS).empty


def test_clear_by_acl_and_all(tmp_path):
    store = PublicParamsStore(tmp_path)
    store.set_sync(ACL_ADDRESS, PUBLIC_KEY, PUBLIC_PARAMS)
    store.set_sync(KMS_ADDRESS, PUBLIC_KEY, None)

    assert store.clear_sync(ACL_ADDRESS) == 2
    assert store.get_sync(ACL_ADDRESS).empty
    assert not store.get_sync(KMS_ADDRESS).empty
    assert store.clear_sync() == 1
