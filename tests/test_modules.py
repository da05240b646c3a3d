"""Tests for the reference policy guards and the key recovery module."""

import pytest
from eth_account import Account

from avatar.abi import ZERO_ADDRESS, encode_call
from avatar.batch import EXECUTE_BATCH_SIGNATURE, BatchAuthorization, sign_batch
from avatar.host import Host, HostConfig
from avatar.modules import (
    IS_VALID_SIGNATURE,
    POST_CHECK,
    PRE_CHECK,
    REJECTED_SIGNATURE,
    BalanceFloorGuard,
    CompositeGuard,
    FeeCapGuard,
    Guard,
    KeyRecoveryModule,
    TargetAllowlistGuard,
    decodes_true,
)
from avatar.signatures import ERC1271_MAGIC_VALUE
from avatar.token import Token


@pytest.fixture
def host():
    return Host(HostConfig(timestamp=1_700_000_000))


@pytest.fixture
def caller():
    return Account.create().address


@pytest.fixture
def allowed():
    return Account.create().address


def payload(targets, fee_amount=0):
    return encode_call(
        EXECUTE_BATCH_SIGNATURE,
        targets,
        [0] * len(targets),
        [b""] * len(targets),
        ZERO_ADDRESS,
        fee_amount,
        1_700_000_060,
        b"\x00" * 65,
    )


def check(host, guard, stage, caller, data):
    signature = PRE_CHECK if stage == "pre" else POST_CHECK
    return host.view(guard, signature, caller, data, returns=["bool"])


class TestGuards:
    def test_base_guard_approves(self, host, caller):
        guard = host.deploy(Guard())
        assert check(host, guard, "pre", caller, b"")
        assert check(host, guard, "post", caller, b"")

    def test_allowlist(self, host, caller, allowed):
        guard = host.deploy(TargetAllowlistGuard([allowed]))
        assert check(host, guard, "pre", caller, payload([allowed, allowed]))
        assert not check(host, guard, "pre", caller, payload([allowed, Account.create().address]))
        assert check(host, guard, "post", caller, payload([Account.create().address]))

    def test_allowlist_rejects_undecodable_payload(self, host, caller, allowed):
        guard = host.deploy(TargetAllowlistGuard([allowed]))
        assert not check(host, guard, "pre", caller, b"\x01\x02\x03\x04")

    def test_fee_cap(self, host, caller, allowed):
        guard = host.deploy(FeeCapGuard(max_fee=100))
        assert check(host, guard, "pre", caller, payload([allowed], fee_amount=100))
        assert not check(host, guard, "pre", caller, payload([allowed], fee_amount=101))

    def test_balance_floor(self, host, caller):
        account = Account.create().address
        guard = host.deploy(BalanceFloorGuard(account, minimum=50))
        assert not check(host, guard, "post", caller, b"")
        host.fund(account, 50)
        assert check(host, guard, "post", caller, b"")
        assert check(host, guard, "pre", caller, b"")

    def test_composite_requires_every_child(self, host, caller, allowed):
        allowlist = host.deploy(TargetAllowlistGuard([allowed]))
        cap = host.deploy(FeeCapGuard(max_fee=10))
        composite = host.deploy(CompositeGuard([allowlist, cap]))

        assert check(host, composite, "pre", caller, payload([allowed], fee_amount=10))
        assert not check(host, composite, "pre", caller, payload([allowed], fee_amount=11))
        assert not check(host, composite, "pre", caller, payload([caller], fee_amount=0))

    def test_composite_treats_revert_as_rejection(self, host, caller, allowed):
        not_a_guard = host.deploy(Token("Test", "TST"))
        composite = host.deploy(CompositeGuard([host.deploy(Guard()), not_a_guard]))
        assert not check(host, composite, "pre", caller, payload([allowed]))

    def test_composite_treats_empty_return_as_rejection(self, host, caller, allowed):
        composite = host.deploy(CompositeGuard([Account.create().address]))
        assert not check(host, composite, "post", caller, payload([allowed]))


class TestKeyRecoveryModule:
    @pytest.fixture
    def backup(self):
        return Account.create()

    @pytest.fixture
    def signed(self, backup):
        owner = Account.create().address
        batch = BatchAuthorization([owner], [1], [b""], deadline=1_700_000_060)
        return sign_batch(backup.key.hex(), batch, owner=owner, chain_id=31337)

    def test_accepts_registered_key(self, host, backup, signed):
        module = host.deploy(KeyRecoveryModule([backup.address]))
        result = host.view(module, IS_VALID_SIGNATURE, signed.digest, signed.signature, returns=["bytes4"])
        assert result == ERC1271_MAGIC_VALUE

    def test_rejects_other_key(self, host, signed):
        module = host.deploy(KeyRecoveryModule([Account.create().address]))
        result = host.view(module, IS_VALID_SIGNATURE, signed.digest, signed.signature, returns=["bytes4"])
        assert result == REJECTED_SIGNATURE

    def test_rejects_malformed_signature(self, host, backup, signed):
        module = host.deploy(KeyRecoveryModule([backup.address]))
        result = host.view(module, IS_VALID_SIGNATURE, signed.digest, b"\x00" * 3, returns=["bytes4"])
        assert result == REJECTED_SIGNATURE


def test_decodes_true():
    assert decodes_true((1).to_bytes(32, "big"))
    assert not decodes_true((0).to_bytes(32, "big"))
    assert not decodes_true(b"")
    assert not decodes_true((2).to_bytes(32, "big"))
