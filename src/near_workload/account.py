"""Account ledger: signer identity, key material and the last consumed nonce per account.

Records live one JSON file per account, named after the account id.
"""
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from near_workload.errors import MalformedRecord, NotADirectory
from near_workload.keys import KeyPair

log = logging.getLogger("near_workload.account")

_TMP_PREFIX = ".tmp-"


class AccountRecord(BaseModel):
    """On-disk shape of an account. Key files written by a node use `private_key` instead of `secret_key`."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_id: str = Field(alias="id")
    public_key: str
    secret_key: str
    nonce: int = Field(default=0, ge=0)


class _KeyFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    public_key: str
    secret_key: str | None = None
    private_key: str | None = None


class Account:
    def __init__(self, account_id: str, key: KeyPair, nonce: int = 0):
        self.id = account_id
        self.key = key
        # New transactions must use a nonce bigger than this.
        self.nonce = nonce

    def __repr__(self) -> str:
        return f"Account({self.id!r}, nonce={self.nonce})"

    @property
    def public_key(self) -> str:
        return self.key.public_key

    @classmethod
    def new(cls, account_id: str) -> "Account":
        return cls(account_id, KeyPair.generate(), 0)

    @classmethod
    def from_record(cls, rec: AccountRecord) -> "Account":
        key = KeyPair.from_secret_key(rec.secret_key)
        if key.public_key != rec.public_key:
            raise ValueError(f"public key does not match secret key for {rec.account_id}")
        return cls(rec.account_id, key, rec.nonce)

    @classmethod
    def from_key_file(cls, path: str | Path) -> "Account":
        """Load a signer from a node key file (e.g. `validator_key.json`)."""
        path = Path(path)
        try:
            kf = _KeyFile.model_validate_json(path.read_text())
            secret = kf.secret_key or kf.private_key
            if secret is None:
                raise ValueError("key file has neither secret_key nor private_key")
            key = KeyPair.from_secret_key(secret)
        except (OSError, ValidationError, ValueError) as e:
            raise MalformedRecord(f"cannot read signer key file {path}: {e}") from e
        return cls(kf.account_id, key, 0)

    def to_record(self) -> AccountRecord:
        return AccountRecord(
            account_id=self.id,
            public_key=self.key.public_key,
            secret_key=self.key.secret_key,
            nonce=self.nonce,
        )

    def next_nonce(self) -> int:
        """Nonce the next transaction should carry. Does not reserve it."""
        return self.nonce + 1

    def commit_nonce(self, nonce: int) -> None:
        if nonce <= self.nonce:
            raise ValueError(f"nonce {nonce} for {self.id} must be greater than {self.nonce}")
        self.nonce = nonce

    def sync_nonce(self, nonce: int) -> None:
        """Overwrite the local nonce with the value the network reports."""
        if nonce != self.nonce:
            log.debug("Nonce of %s: %s -> %s (from rpc)", self.id, self.nonce, nonce)
        self.nonce = nonce

    def persist(self, directory: str | Path) -> Path:
        """Write the record via temp file + rename, so a crash never leaves it truncated."""
        directory = Path(directory)
        target = directory / self.id
        data = self.to_record().model_dump_json(by_alias=True)
        fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return target


def load(directory: str | Path) -> list[Account]:
    """Read every account record in `directory`, sorted by file name.

    One bad record fails the whole load.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise NotADirectory(f"{directory} is not a directory")

    accounts = []
    for path in sorted(directory.iterdir()):
        if path.name.startswith(".") or not path.is_file():
            continue
        try:
            rec = AccountRecord.model_validate_json(path.read_bytes())
            accounts.append(Account.from_record(rec))
        except (OSError, ValidationError, ValueError) as e:
            raise MalformedRecord(f"{path}: {e}") from e
    log.debug("Loaded %s accounts from %s", len(accounts), directory)
    return accounts
