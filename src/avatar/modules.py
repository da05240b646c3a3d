"""
Collaborator module interfaces and reference implementations.

A wallet calls its policy guard with ``preCheck``/``postCheck`` and its
recovery module with ``isValidSignature``, always as static calls. The
classes here are examples for module authors; the wallet itself depends
only on the function signatures.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from .abi import Contract, encode_call, external
from .batch import decode_execute_batch
from .host import CallContext
from .signatures import ERC1271_MAGIC_VALUE, recover_signer


PRE_CHECK = "preCheck(address,bytes)"
POST_CHECK = "postCheck(address,bytes)"
IS_VALID_SIGNATURE = "isValidSignature(bytes32,bytes)"

REJECTED_SIGNATURE = b"\xff\xff\xff\xff"


def decodes_true(data: bytes) -> bool:
    """True only for return data that ABI-decodes to boolean true."""
    try:
        (value,) = decode(["bool"], bytes(data))
    except DecodingError:
        return False
    return value is True


class Guard(Contract):
    """Base policy guard. Subclasses override ``check``."""

    @external(PRE_CHECK, returns=["bool"])
    def pre_check(self, ctx: CallContext, caller: str, payload: bytes) -> bool:
        return self.check(ctx, "pre", caller, payload)

    @external(POST_CHECK, returns=["bool"])
    def post_check(self, ctx: CallContext, caller: str, payload: bytes) -> bool:
        return self.check(ctx, "post", caller, payload)

    def check(self, ctx: CallContext, stage: str, caller: str, payload: bytes) -> bool:
        return True


class CompositeGuard(Guard):
    """Approves only when every child guard approves.

    Children are consulted in order and evaluation stops at the first
    rejection; a child that reverts counts as a rejection.
    """

    def __init__(self, children: Sequence[str]):
        self.children = [to_checksum_address(c) for c in children]

    def check(self, ctx: CallContext, stage: str, caller: str, payload: bytes) -> bool:
        signature = PRE_CHECK if stage == "pre" else POST_CHECK
        data = encode_call(signature, caller, payload)
        for child in self.children:
            result = ctx.static_call(child, data)
            if not result.success or not decodes_true(result.return_data):
                return False
        return True


class TargetAllowlistGuard(Guard):
    """Pre-check: every sub-call target must be on the allowlist."""

    def __init__(self, allowed_targets: Iterable[str]):
        self.allowed_targets = {to_checksum_address(t) for t in allowed_targets}

    def check(self, ctx: CallContext, stage: str, caller: str, payload: bytes) -> bool:
        if stage != "pre":
            return True
        try:
            targets = decode_execute_batch(payload)[0]
        except (ValueError, DecodingError):
            return False
        return all(to_checksum_address(t) in self.allowed_targets for t in targets)


class FeeCapGuard(Guard):
    """Pre-check: relayer fee must not exceed ``max_fee`` base units."""

    def __init__(self, max_fee: int):
        self.max_fee = int(max_fee)

    def check(self, ctx: CallContext, stage: str, caller: str, payload: bytes) -> bool:
        if stage != "pre":
            return True
        try:
            fee_amount = decode_execute_batch(payload)[4]
        except (ValueError, DecodingError):
            return False
        return fee_amount <= self.max_fee


class BalanceFloorGuard(Guard):
    """Post-check: the account's native balance must stay at or above ``minimum``."""

    def __init__(self, account: str, minimum: int):
        self.account = to_checksum_address(account)
        self.minimum = int(minimum)

    def check(self, ctx: CallContext, stage: str, caller: str, payload: bytes) -> bool:
        if stage != "post":
            return True
        return ctx.host.balance_of(self.account) >= self.minimum


class KeyRecoveryModule(Contract):
    """Accepts digests signed by any of a fixed set of alternate keys."""

    def __init__(self, signers: Iterable[str]):
        self.signers = {to_checksum_address(s) for s in signers}

    @external(IS_VALID_SIGNATURE, returns=["bytes4"])
    def is_valid_signature(self, ctx: CallContext, digest: bytes, signature: bytes) -> bytes:
        signer = recover_signer(digest, signature)
        if signer is not None and signer in self.signers:
            return ERC1271_MAGIC_VALUE
        return REJECTED_SIGNATURE
