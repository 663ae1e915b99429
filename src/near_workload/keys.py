"""ed25519 key material in NEAR string form (`ed25519:<base58>`).

Key derivation and signing are delegated to xrpl-py's ed25519 keypairs; only the
string encoding lives here.
"""
from dataclasses import dataclass

import base58
from xrpl import CryptoAlgorithm
from xrpl.core.keypairs import derive_keypair, generate_seed, is_valid_message, sign

import near_workload.constants as C

_XRPL_ED_PREFIX = "ED"


def _split_key(key: str) -> bytes:
    key_type, _, data = key.partition(":")
    if not data:
        # bare base58 keys are ed25519
        key_type, data = C.KEY_TYPE_ED25519, key_type
    if key_type != C.KEY_TYPE_ED25519:
        raise ValueError(f"unsupported key type {key_type!r}")
    return base58.b58decode(data)


def encode_key(raw: bytes) -> str:
    return f"{C.KEY_TYPE_ED25519}:{base58.b58encode(raw).decode()}"


def public_key_bytes(public_key: str) -> bytes:
    raw = _split_key(public_key)
    if len(raw) != 32:
        raise ValueError(f"ed25519 public key must be 32 bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True, slots=True)
class KeyPair:
    public_key: str
    secret_key: str

    @classmethod
    def generate(cls) -> "KeyPair":
        seed = generate_seed(algorithm=CryptoAlgorithm.ED25519)
        public_hex, private_hex = derive_keypair(seed)
        pub = bytes.fromhex(public_hex[len(_XRPL_ED_PREFIX):])
        priv = bytes.fromhex(private_hex[len(_XRPL_ED_PREFIX):])
        return cls(public_key=encode_key(pub), secret_key=encode_key(priv + pub))

    @classmethod
    def from_secret_key(cls, secret_key: str) -> "KeyPair":
        raw = _split_key(secret_key)
        if len(raw) != 64:
            raise ValueError(f"ed25519 secret key must be 64 bytes, got {len(raw)}")
        return cls(public_key=encode_key(raw[32:]), secret_key=secret_key)

    @property
    def public_key_bytes(self) -> bytes:
        return public_key_bytes(self.public_key)

    @property
    def _xrpl_private(self) -> str:
        return _XRPL_ED_PREFIX + _split_key(self.secret_key)[:32].hex().upper()

    @property
    def _xrpl_public(self) -> str:
        return _XRPL_ED_PREFIX + self.public_key_bytes.hex().upper()

    def sign(self, message: bytes) -> bytes:
        return bytes.fromhex(sign(message, self._xrpl_private))

    def verify(self, message: bytes, signature: bytes) -> bool:
        return is_valid_message(message, signature, self._xrpl_public)
