import base64
import hashlib

import base58
import pytest

from near_workload.keys import KeyPair, encode_key, public_key_bytes
from near_workload.transaction import (
    AddKey,
    CreateAccount,
    FunctionCall,
    Transaction,
    Transfer,
    new_create_subaccount_actions,
)
from tests.conftest import BLOCK_HASH


@pytest.fixture
def key():
    return KeyPair.generate()


def _tx(key, *actions, nonce=7):
    return Transaction(
        signer_id="alice.test.near",
        public_key=key.public_key,
        nonce=nonce,
        receiver_id="bob.test.near",
        block_hash=BLOCK_HASH,
        actions=actions or (Transfer(deposit=1),),
    )


def test_generated_key_strings(key):
    assert key.public_key.startswith("ed25519:")
    assert len(public_key_bytes(key.public_key)) == 32
    assert KeyPair.from_secret_key(key.secret_key) == key


def test_bare_base58_key_is_ed25519(key):
    bare = key.public_key.split(":", 1)[1]
    assert public_key_bytes(bare) == key.public_key_bytes


@pytest.mark.parametrize("bad", ["secp256k1:abc", encode_key(b"\x01" * 10)])
def test_rejects_bad_keys(bad):
    with pytest.raises(ValueError):
        public_key_bytes(bad)


def test_sign_and_verify(key):
    sig = key.sign(b"hello")
    assert len(sig) == 64
    assert key.verify(b"hello", sig)
    assert not key.verify(b"hellp", sig)
    assert not KeyPair.generate().verify(b"hello", sig)


def test_transfer_encoding():
    assert Transfer(deposit=1).encode() == b"\x03" + (1).to_bytes(16, "little")
    with pytest.raises(ValueError):
        Transfer(deposit=-1).encode()
    with pytest.raises(ValueError):
        Transfer(deposit=1 << 128).encode()


def test_function_call_encoding():
    enc = FunctionCall(method_name="go", args=b"{}", gas=5, deposit=0).encode()
    assert enc == (
        b"\x02"
        + (2).to_bytes(4, "little") + b"go"
        + (2).to_bytes(4, "little") + b"{}"
        + (5).to_bytes(8, "little")
        + bytes(16)
    )


def test_add_key_is_full_access(key):
    enc = AddKey(public_key=key.public_key).encode()
    assert enc[0] == 5
    assert enc[1] == 0  # ed25519
    assert enc[2:34] == key.public_key_bytes
    assert enc[34:42] == bytes(8)
    assert enc[-1] == 1


def test_transaction_layout(key):
    tx = _tx(key, CreateAccount(), Transfer(deposit=3))
    enc = tx.encode()
    signer = b"alice.test.near"
    assert enc[:4] == len(signer).to_bytes(4, "little")
    assert enc[4:4 + len(signer)] == signer
    off = 4 + len(signer)
    assert enc[off] == 0
    assert enc[off + 1:off + 33] == key.public_key_bytes
    assert enc[off + 33:off + 41] == (7).to_bytes(8, "little")
    off += 41 + 4 + len(b"bob.test.near")
    assert enc[off:off + 32] == bytes(range(32))
    assert enc.endswith((2).to_bytes(4, "little") + b"\x00" + Transfer(deposit=3).encode())


def test_bad_block_hash(key):
    tx = Transaction("a.near", key.public_key, 1, "b.near", base58.b58encode(b"short").decode(), ())
    with pytest.raises(ValueError):
        tx.encode()


def test_signed_transaction(key):
    tx = _tx(key)
    signed = tx.sign(key)
    assert key.verify(tx.hash(), signed.signature)
    assert signed.tx_hash == base58.b58encode(hashlib.sha256(tx.encode()).digest()).decode()

    wire = base64.b64decode(signed.to_base64())
    assert wire == tx.encode() + b"\x00" + signed.signature


def test_sign_with_wrong_key(key):
    with pytest.raises(ValueError):
        _tx(key).sign(KeyPair.generate())


def test_create_subaccount_actions(key):
    actions = new_create_subaccount_actions(key.public_key, 10)
    assert [a.tag for a in actions] == [0, 5, 3]
    assert actions[2].deposit == 10
