import json
from pathlib import Path

import pytest

import near_workload.account as account_store
from near_workload.account import Account
from near_workload.errors import MalformedRecord, NotADirectory


def test_persist_and_load(tmp_path, make_accounts):
    accounts = make_accounts(3, nonce=4)
    for a in accounts:
        a.persist(tmp_path)

    loaded = account_store.load(tmp_path)
    assert [a.id for a in loaded] == sorted(a.id for a in accounts)
    assert all(a.nonce == 4 for a in loaded)
    assert loaded[0].key == accounts[0].key


def test_record_shape(tmp_path):
    a = Account.new("alice.test.near")
    path = a.persist(tmp_path)
    assert path.name == "alice.test.near"
    assert json.loads(path.read_text()) == {
        "id": "alice.test.near",
        "public_key": a.public_key,
        "secret_key": a.key.secret_key,
        "nonce": 0,
    }


def test_persist_overwrites_and_leaves_no_temp_files(tmp_path):
    a = Account.new("alice.test.near")
    a.persist(tmp_path)
    a.commit_nonce(9)
    a.persist(tmp_path)
    assert [p.name for p in tmp_path.iterdir()] == ["alice.test.near"]
    assert account_store.load(tmp_path)[0].nonce == 9


def test_load_skips_dotfiles(tmp_path):
    Account.new("a.near").persist(tmp_path)
    (tmp_path / ".tmp-partial").write_text("{")
    assert len(account_store.load(tmp_path)) == 1


def test_load_not_a_directory(tmp_path):
    with pytest.raises(NotADirectory):
        account_store.load(tmp_path / "missing")
    f = tmp_path / "file"
    f.write_text("")
    with pytest.raises(NotADirectory):
        account_store.load(f)


@pytest.mark.parametrize("mutate", [
    lambda rec: "not json",
    lambda rec: json.dumps({**rec, "nonce": -1}),
    lambda rec: json.dumps({k: v for k, v in rec.items() if k != "secret_key"}),
    lambda rec: json.dumps({**rec, "public_key": Account.new("x").public_key}),
])
def test_load_malformed(tmp_path, mutate):
    a = Account.new("a.near")
    path = a.persist(tmp_path)
    path.write_text(mutate(json.loads(path.read_text())))
    with pytest.raises(MalformedRecord):
        account_store.load(tmp_path)


def test_load_unreadable_record(tmp_path, monkeypatch):
    Account.new("a.near").persist(tmp_path)

    def denied(self):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "read_bytes", denied)
    with pytest.raises(MalformedRecord, match="Permission denied"):
        account_store.load(tmp_path)


def test_nonce_only_moves_forward():
    a = Account.new("a.near")
    assert a.next_nonce() == 1
    assert a.next_nonce() == 1  # not reserved
    a.commit_nonce(1)
    a.commit_nonce(5)
    with pytest.raises(ValueError):
        a.commit_nonce(5)
    with pytest.raises(ValueError):
        a.commit_nonce(3)
    assert a.nonce == 5


def test_sync_nonce_overwrites():
    a = Account.new("a.near")
    a.commit_nonce(50)
    a.sync_nonce(20)
    assert a.nonce == 20


def test_from_key_file(signer_key_file):
    signer = Account.from_key_file(signer_key_file)
    assert signer.id == "test.near"
    assert signer.nonce == 0
    assert signer.public_key == json.loads(signer_key_file.read_text())["public_key"]


def test_from_key_file_errors(tmp_path):
    with pytest.raises(MalformedRecord):
        Account.from_key_file(tmp_path / "nope.json")
    p = tmp_path / "key.json"
    p.write_text(json.dumps({"account_id": "a.near", "public_key": "ed25519:x"}))
    with pytest.raises(MalformedRecord):
        Account.from_key_file(p)
