"""Transactions, actions and their borsh wire layout.

Only the subset of actions the workload sends is supported. Layout follows the
node's `TransactionV0` / `SignedTransaction` borsh schema.
"""
import base64
import hashlib
import struct
from dataclasses import dataclass, field
from typing import ClassVar

import base58

from near_workload.errors import ConfigError
from near_workload.keys import KeyPair, public_key_bytes


_KEY_TYPE_ED25519 = 0
U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1


def check_range(name: str, value: int, upper: int) -> int:
    """Reject amounts the wire format cannot carry, before anything is signed."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= upper:
        raise ConfigError(f"{name} must be an integer between 0 and {upper}, got {value!r}")
    return value


def _u8(v: int) -> bytes:
    return struct.pack("<B", v)


def _u32(v: int) -> bytes:
    return struct.pack("<I", v)


def _u64(v: int) -> bytes:
    if v < 0 or v > U64_MAX:
        raise ValueError(f"u64 out of range: {v}")
    return struct.pack("<Q", v)


def _u128(v: int) -> bytes:
    if v < 0 or v > U128_MAX:
        raise ValueError(f"u128 out of range: {v}")
    return v.to_bytes(16, "little")


def _bytes(b: bytes) -> bytes:
    return _u32(len(b)) + b


def _string(s: str) -> bytes:
    return _bytes(s.encode("utf-8"))


def _public_key(pk: str) -> bytes:
    return _u8(_KEY_TYPE_ED25519) + public_key_bytes(pk)


class Action:
    tag: ClassVar[int]

    def payload(self) -> bytes:
        return b""

    def encode(self) -> bytes:
        return _u8(self.tag) + self.payload()


@dataclass(frozen=True, slots=True)
class CreateAccount(Action):
    tag: ClassVar[int] = 0


@dataclass(frozen=True, slots=True)
class DeployContract(Action):
    code: bytes
    tag: ClassVar[int] = 1

    def payload(self) -> bytes:
        return _bytes(self.code)


@dataclass(frozen=True, slots=True)
class FunctionCall(Action):
    method_name: str
    args: bytes
    gas: int
    deposit: int = 0
    tag: ClassVar[int] = 2

    def payload(self) -> bytes:
        return _string(self.method_name) + _bytes(self.args) + _u64(self.gas) + _u128(self.deposit)


@dataclass(frozen=True, slots=True)
class Transfer(Action):
    deposit: int
    tag: ClassVar[int] = 3

    def payload(self) -> bytes:
        return _u128(self.deposit)


@dataclass(frozen=True, slots=True)
class AddKey(Action):
    """Adds a full access key. Function-call permissions are not used by the workload."""
    public_key: str
    nonce: int = 0
    tag: ClassVar[int] = 5
    _FULL_ACCESS: ClassVar[int] = 1

    def payload(self) -> bytes:
        return _public_key(self.public_key) + _u64(self.nonce) + _u8(self._FULL_ACCESS)


@dataclass(frozen=True, slots=True)
class Transaction:
    signer_id: str
    public_key: str
    nonce: int
    receiver_id: str
    block_hash: str  # base58
    actions: tuple[Action, ...] = field(default_factory=tuple)

    def encode(self) -> bytes:
        block_hash = base58.b58decode(self.block_hash)
        if len(block_hash) != 32:
            raise ValueError(f"block hash must be 32 bytes, got {len(block_hash)}")
        parts = [
            _string(self.signer_id),
            _public_key(self.public_key),
            _u64(self.nonce),
            _string(self.receiver_id),
            block_hash,
            _u32(len(self.actions)),
        ]
        parts.extend(a.encode() for a in self.actions)
        return b"".join(parts)

    def hash(self) -> bytes:
        return hashlib.sha256(self.encode()).digest()

    def sign(self, key: KeyPair) -> "SignedTransaction":
        if key.public_key != self.public_key:
            raise ValueError(f"key {key.public_key} does not match transaction key {self.public_key}")
        return SignedTransaction(transaction=self, signature=key.sign(self.hash()))


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    transaction: Transaction
    signature: bytes

    @property
    def tx_hash(self) -> str:
        return base58.b58encode(self.transaction.hash()).decode()

    def encode(self) -> bytes:
        return self.transaction.encode() + _u8(_KEY_TYPE_ED25519) + self.signature

    def to_base64(self) -> str:
        return base64.b64encode(self.encode()).decode()


def new_create_subaccount_actions(public_key: str, deposit: int) -> tuple[Action, ...]:
    return (
        CreateAccount(),
        AddKey(public_key=public_key),
        Transfer(deposit=deposit),
    )
