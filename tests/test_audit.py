"""Tests for tamper-evident audit trail behavior."""

import json

import pytest
from eth_account import Account

from avatar.audit import AuditTrail, EventType
from avatar.client import WalletClient
from avatar.host import Host, HostConfig


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path, trail):
    trail.log(EventType.BATCH_SIGNED, wallet="0xabc", nonce=0, fee_amount=5)
    trail.log(EventType.BATCH_EXECUTED, wallet="0xabc", nonce=0, fee_amount=5)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["fee_amount"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_audit_detects_deleted_entry(tmp_path, trail):
    for nonce in range(3):
        trail.log(EventType.BATCH_EXECUTED, wallet="0xabc", nonce=nonce)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(tmp_path, trail):
    trail.log(EventType.WALLET_ACTIVATED, wallet="0xabc")
    reopened = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    reopened.log(EventType.MODULE_CHANGED, wallet="0xabc")
    assert [e.event_type for e in reopened.read_events()] == ["wallet_activated", "module_changed"]


def test_env_key_overrides_key_file(tmp_path, monkeypatch):
    monkeypatch.setenv("AVATAR_AUDIT_HMAC_KEY", "from-env")
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    trail.log(EventType.BATCH_SIGNED, wallet="0xabc")

    monkeypatch.setenv("AVATAR_AUDIT_HMAC_KEY", "other")
    with pytest.raises(RuntimeError, match="event hash mismatch"):
        AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key").read_events()


def test_filters_and_summary(trail):
    trail.log(EventType.BATCH_EXECUTED, wallet="0xAbC", nonce=0)
    trail.log(EventType.BATCH_FAILED, wallet="0xabc", nonce=1, success=False, reason="Unauthorized")
    trail.log(EventType.BATCH_EXECUTED, wallet="0xdef", nonce=0)

    assert len(trail.read_events(wallet="0xABC")) == 2
    assert len(trail.read_events(event_type=EventType.BATCH_EXECUTED)) == 2
    assert [e.nonce for e in trail.read_events(limit=1)] == [0]

    summary = trail.summary(wallet="0xabc")
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"batch_executed": 1, "batch_failed": 1}


def test_client_records_batch_lifecycle(trail):
    host = Host(HostConfig(timestamp=1_700_000_000))
    owner = Account.create()
    relayer = Account.create().address
    merchant = Account.create().address
    wallet = WalletClient.activate(host, owner.address, audit=trail)
    host.fund(wallet.account, 100)

    signed = wallet.sign(owner.key.hex(), [merchant], [10], [b""])
    wallet.submit(signed, relayer)
    wallet.submit(signed, relayer)

    events = trail.read_events(wallet=wallet.account)
    assert [e.event_type for e in events] == [
        "wallet_activated",
        "batch_signed",
        "batch_submitted",
        "batch_executed",
        "batch_submitted",
        "batch_failed",
    ]
    failed = events[-1]
    assert not failed.success
    assert failed.details["error"] == "Unauthorized"
    assert failed.digest == "0x" + signed.digest.hex()


def test_digest_filter_tracks_one_batch(trail):
    host = Host(HostConfig(timestamp=1_700_000_000))
    owner = Account.create()
    relayer = Account.create().address
    merchant = Account.create().address
    wallet = WalletClient.activate(host, owner.address, audit=trail)
    host.fund(wallet.account, 100)

    first = wallet.sign(owner.key.hex(), [merchant], [10], [b""])
    wallet.submit(first, relayer)
    second = wallet.sign(owner.key.hex(), [merchant], [10**6], [b""])
    wallet.submit(second, relayer)
    pending = wallet.sign(owner.key.hex(), [merchant], [1], [b""])

    digest = "0x" + first.digest.hex()
    assert [e.event_type for e in trail.read_events(digest=digest)] == [
        "batch_signed",
        "batch_submitted",
        "batch_executed",
    ]
    assert len(trail.read_events(digest=first.digest.hex().upper())) == 3

    assert trail.batch_status(digest) == "executed"
    assert trail.batch_status(second.digest.hex()) == "failed"
    assert trail.batch_status(pending.digest.hex()) == "signed"
    assert trail.batch_status("0x" + "00" * 32) is None


def test_replayed_batch_keeps_executed_status(trail):
    host = Host(HostConfig(timestamp=1_700_000_000))
    owner = Account.create()
    wallet = WalletClient.activate(host, owner.address, audit=trail)
    host.fund(wallet.account, 100)

    signed = wallet.sign(owner.key.hex(), [Account.create().address], [1], [b""])
    wallet.submit(signed, Account.create().address)
    wallet.submit(signed, Account.create().address)

    assert trail.batch_status(signed.digest.hex()) == "executed"
