"""Tests for batch typed data, digests, signing and signed-batch serialization."""

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from avatar.abi import ZERO_ADDRESS, encode_call
from avatar.batch import (
    BatchAuthorization,
    SignedBatch,
    decode_execute_batch,
    domain_separator,
    sign_batch,
    verify_signed_batch,
)
from avatar.errors import SignatureError
from avatar.signatures import SECP256K1_N, recover_signer, split_signature


NOW = 1_700_000_000


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def batch():
    return BatchAuthorization(
        targets=[Account.create().address, Account.create().address],
        values=[0, 10**15],
        calldatas=[encode_call("transfer(address,uint256)", Account.create().address, 42), b""],
        fee_token=Account.create().address,
        fee_amount=5_000_000,
        deadline=NOW + 30,
        nonce=3,
    )


@pytest.fixture
def signed(owner, batch):
    return sign_batch(owner.key.hex(), batch, owner=owner.address, chain_id=31337)


class TestTypedData:
    def test_digest_matches_eth_account_encoding(self, owner, batch):
        typed = batch.to_eip712_message(owner.address, 31337)
        signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])

        assert signable.header == domain_separator(owner.address, 31337)
        assert signable.body == batch.struct_hash()
        assert keccak(b"\x19" + signable.version + signable.header + signable.body) == batch.digest(owner.address, 31337)

    def test_empty_calldata_hashes(self, owner):
        b = BatchAuthorization(targets=[owner.address], values=[1], calldatas=[b""], deadline=NOW)
        typed = b.to_eip712_message(owner.address, 1)
        signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])
        assert signable.body == b.struct_hash()

    def test_domain_binds_owner_and_chain(self, owner, batch):
        other = Account.create()
        base = batch.digest(owner.address, 31337)
        assert batch.digest(other.address, 31337) != base
        assert batch.digest(owner.address, 1) != base

    def test_every_field_changes_digest(self, owner, batch):
        base = batch.digest(owner.address, 31337)
        for field, value in [
            ("values", [0, 10**15 + 1]),
            ("fee_amount", 5_000_001),
            ("deadline", NOW + 31),
            ("nonce", 4),
            ("fee_token", ZERO_ADDRESS),
        ]:
            changed = BatchAuthorization.from_dict({**batch.to_dict(), field: value})
            assert changed.digest(owner.address, 31337) != base, field

    def test_fee_token_defaults_to_native(self, owner):
        b = BatchAuthorization(targets=[owner.address], values=[0], calldatas=[b""])
        assert b.fee_token == ZERO_ADDRESS

    def test_is_expired_uses_wall_clock(self, owner):
        assert BatchAuthorization([owner.address], [0], [b""], deadline=NOW).is_expired
        assert not BatchAuthorization([owner.address], [0], [b""], deadline=2**40).is_expired


class TestSigning:
    def test_signer_is_owner(self, signed, owner):
        assert signed.signer == owner.address
        assert signed.wallet == owner.address
        assert signed.batch_id.startswith("batch-")

    def test_verify_valid(self, signed):
        valid, reason = verify_signed_batch(signed, now=NOW)
        assert valid, reason

    def test_verify_deadline_is_inclusive(self, signed):
        assert verify_signed_batch(signed, now=NOW + 30)[0]
        valid, reason = verify_signed_batch(signed, now=NOW + 31)
        assert not valid
        assert "expired" in reason

    def test_verify_rejects_other_signer(self, owner, batch):
        intruder = Account.create()
        signed = sign_batch(intruder.key.hex(), batch, owner=owner.address, chain_id=31337)
        valid, reason = verify_signed_batch(signed, now=NOW)
        assert not valid
        assert "Signer mismatch" in reason

    def test_verify_rejects_shape_mismatch(self, owner):
        b = BatchAuthorization(targets=[owner.address], values=[0, 1], calldatas=[b""], deadline=NOW)
        signed = sign_batch(owner.key.hex(), b, owner=owner.address, chain_id=31337)
        valid, reason = verify_signed_batch(signed, now=NOW)
        assert not valid
        assert "non-zero length" in reason

    def test_call_data_round_trips(self, signed):
        targets, values, calldatas, fee_token, fee_amount, deadline, signature = decode_execute_batch(
            signed.call_data()
        )
        b = signed.batch
        assert list(targets) == b.targets
        assert list(values) == b.values
        assert list(calldatas) == b.calldatas
        assert (fee_token, fee_amount, deadline) == (b.fee_token, b.fee_amount, b.deadline)
        assert signature == signed.signature

    def test_decode_rejects_other_selector(self):
        with pytest.raises(ValueError):
            decode_execute_batch(encode_call("transfer(address,uint256)", ZERO_ADDRESS, 1))


class TestSerialization:
    def test_from_dict_restores_batch(self, signed):
        restored = SignedBatch.from_dict(signed.to_dict())
        assert restored.digest == signed.digest
        assert restored.signature == signed.signature
        assert restored.batch == signed.batch

    def test_from_dict_detects_edited_contents(self, signed):
        d = signed.to_dict()
        d["batch"]["fee_amount"] = "999999999"
        with pytest.raises(SignatureError, match="does not match"):
            SignedBatch.from_dict(d)

    def test_from_dict_rejects_malformed(self, signed):
        d = signed.to_dict()
        d["signature"] = "not-hex"
        with pytest.raises(SignatureError, match="Malformed"):
            SignedBatch.from_dict(d)


class TestRecovery:
    def test_rejects_wrong_length(self, signed):
        assert recover_signer(signed.digest, signed.signature[:64]) is None
        assert recover_signer(signed.digest[:31], signed.signature) is None

    def test_rejects_bad_v(self, signed):
        tampered = signed.signature[:64] + bytes([29])
        assert recover_signer(signed.digest, tampered) is None

    def test_rejects_high_s(self, signed, owner):
        v, r, s = split_signature(signed.signature)
        flipped_v = 55 - v  # 27 <-> 28
        malleable = r.to_bytes(32, "big") + (SECP256K1_N - s).to_bytes(32, "big") + bytes([flipped_v])
        assert recover_signer(signed.digest, malleable) is None

    def test_rejects_zero_signature(self, signed):
        assert recover_signer(signed.digest, b"\x00" * 64 + bytes([27])) is None
