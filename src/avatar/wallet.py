"""
Delegate wallet code.

One immutable code object, constructed for a fixed owner and chain, that a
delegating account activates at its own address. Each batch runs as one
atomic pipeline:

1. Authorize: shape, deadline, owner signature or recovery module over the
   EIP-712 digest bound to the stored meta-nonce; consume the nonce
2. Policy pre-check
3. Execute sub-calls in order
4. Policy post-check
5. Pay the relayer fee to the transaction origin
6. Emit BatchExecuted

Any failure after step 1 rolls back every effect except the nonce
consumption.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import IntEnum
from typing import Iterator

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from .abi import ZERO_ADDRESS, Contract, encode_call, external
from .batch import EXECUTE_BATCH_SIGNATURE, domain_separator, hash_batch, typed_digest
from .errors import (
    Expired,
    FeeTransferFailed,
    InvalidBatchShape,
    InvalidChainId,
    NotOwner,
    PolicyRejected,
    Reentrant,
    SubCallFailed,
    Unauthorized,
)
from .host import CallContext
from .modules import IS_VALID_SIGNATURE, POST_CHECK, PRE_CHECK, decodes_true
from .signatures import ERC1271_MAGIC_VALUE, recover_signer

logger = logging.getLogger(__name__)


BATCH_EXECUTED = "BatchExecuted(bytes32)"
MODULE_CHANGED = "ModuleChanged(uint8,address,address)"
TRANSFER = "transfer(address,uint256)"

NONCE_SLOT = "metaNonce"
POLICY_SLOT = "policyModule"
RECOVERY_SLOT = "recoveryModule"


class ModuleKind(IntEnum):
    POLICY = 0
    RECOVERY = 1


_MODULE_SLOTS = {
    ModuleKind.POLICY: POLICY_SLOT,
    ModuleKind.RECOVERY: RECOVERY_SLOT,
}


class DelegateWallet(Contract):
    """Batch-executing wallet code for one owner on one chain."""

    def __init__(self, owner: str, chain_id: int):
        if int(chain_id) == 0:
            raise InvalidChainId("Chain id 0 cannot anchor a signing domain")
        self._owner = to_checksum_address(owner)
        self._chain_id = int(chain_id)
        self._domain_separator = domain_separator(self._owner, self._chain_id)
        # Accounts with an attempt in flight; transient, never journaled.
        self._entered: set[str] = set()

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def domain_separator(self) -> bytes:
        return self._domain_separator

    def receive(self, ctx: CallContext) -> None:
        return None

    # ── Views ─────────────────────────────────────────────────────

    @external("owner()", returns=["address"])
    def get_owner(self, ctx: CallContext) -> str:
        return self._owner

    @external("domainSeparator()", returns=["bytes32"])
    def get_domain_separator(self, ctx: CallContext) -> bytes:
        return self._domain_separator

    @external("metaNonce()", returns=["uint256"])
    def get_meta_nonce(self, ctx: CallContext) -> int:
        return ctx.sload(NONCE_SLOT, 0)

    @external("policyModule()", returns=["address"])
    def get_policy_module(self, ctx: CallContext) -> str:
        return ctx.sload(POLICY_SLOT, ZERO_ADDRESS)

    @external("recoveryModule()", returns=["address"])
    def get_recovery_module(self, ctx: CallContext) -> str:
        return ctx.sload(RECOVERY_SLOT, ZERO_ADDRESS)

    # ── Batch pipeline ────────────────────────────────────────────

    @external(EXECUTE_BATCH_SIGNATURE)
    def execute_batch(
        self,
        ctx: CallContext,
        targets: tuple,
        values: tuple,
        calldatas: tuple,
        fee_token: str,
        fee_amount: int,
        deadline: int,
        signature: bytes,
    ) -> None:
        with self._non_reentrant(ctx):
            digest, nonce = self._authorize(
                ctx, targets, values, calldatas, fee_token, fee_amount, deadline, signature
            )
            self._run_guard(ctx, "pre")
            self._execute(ctx, targets, values, calldatas)
            self._run_guard(ctx, "post")
            self._settle_fee(ctx, fee_token, fee_amount)
            ctx.emit(BATCH_EXECUTED, digest=digest)
        logger.info(
            "Batch 0x%s executed on %s (nonce %d, %d calls, relayer %s)",
            digest.hex(),
            ctx.address,
            nonce,
            len(targets),
            ctx.origin,
        )

    @contextmanager
    def _non_reentrant(self, ctx: CallContext) -> Iterator[None]:
        if ctx.address in self._entered:
            raise Reentrant(f"executeBatch re-entered on {ctx.address}")
        self._entered.add(ctx.address)
        try:
            yield
        finally:
            self._entered.discard(ctx.address)

    def _authorize(
        self,
        ctx: CallContext,
        targets: tuple,
        values: tuple,
        calldatas: tuple,
        fee_token: str,
        fee_amount: int,
        deadline: int,
        signature: bytes,
    ) -> tuple[bytes, int]:
        if not targets or not (len(targets) == len(values) == len(calldatas)):
            raise InvalidBatchShape(len(targets), len(values), len(calldatas))
        if ctx.timestamp > deadline:
            raise Expired(deadline, ctx.timestamp)

        nonce = ctx.sload(NONCE_SLOT, 0)
        digest = typed_digest(
            self._domain_separator,
            hash_batch(list(targets), list(values), list(calldatas), fee_token, fee_amount, deadline, nonce),
        )
        if not self._is_authorized(ctx, digest, signature):
            raise Unauthorized(f"Signature does not authorize digest 0x{digest.hex()}")

        # Durable: the consumed nonce outlives a failure of any later stage.
        ctx.sstore(NONCE_SLOT, nonce + 1, durable=True)
        return digest, nonce

    def _is_authorized(self, ctx: CallContext, digest: bytes, signature: bytes) -> bool:
        if recover_signer(digest, signature) == self._owner:
            return True

        module = ctx.sload(RECOVERY_SLOT, ZERO_ADDRESS)
        if module == ZERO_ADDRESS:
            return False
        result = ctx.static_call(module, encode_call(IS_VALID_SIGNATURE, digest, signature))
        if not result.success:
            logger.debug("Recovery module %s reverted: %s", module, result.reason)
            return False
        try:
            (magic,) = decode(["bytes4"], result.return_data)
        except DecodingError:
            return False
        return magic == ERC1271_MAGIC_VALUE

    def _run_guard(self, ctx: CallContext, stage: str) -> None:
        module = ctx.sload(POLICY_SLOT, ZERO_ADDRESS)
        if module == ZERO_ADDRESS:
            return
        signature = PRE_CHECK if stage == "pre" else POST_CHECK
        result = ctx.static_call(module, encode_call(signature, ctx.sender, ctx.data))
        if not result.success:
            raise PolicyRejected(stage, result.reason or type(result.error).__name__)
        if not decodes_true(result.return_data):
            raise PolicyRejected(stage)

    def _execute(self, ctx: CallContext, targets: tuple, values: tuple, calldatas: tuple) -> None:
        for index, (target, value, data) in enumerate(zip(targets, values, calldatas)):
            result = ctx.call(target, value, data)
            if not result.success:
                raise SubCallFailed(index, target, result.reason, cause=result.error)

    def _settle_fee(self, ctx: CallContext, fee_token: str, fee_amount: int) -> None:
        if fee_amount == 0:
            return
        if fee_token == ZERO_ADDRESS:
            result = ctx.call(ctx.origin, fee_amount)
            if not result.success:
                raise FeeTransferFailed("native", result.reason)
            return

        result = ctx.call(fee_token, 0, encode_call(TRANSFER, ctx.origin, fee_amount))
        if not result.success:
            raise FeeTransferFailed(fee_token, result.reason)
        if result.return_data:
            if not decodes_true(result.return_data):
                raise FeeTransferFailed(fee_token, "transfer returned false")
        elif not ctx.host.has_code(fee_token):
            raise FeeTransferFailed(fee_token, "fee token has no code")

    # ── Module configuration ──────────────────────────────────────

    @external("setPolicyModule(address)")
    def set_policy_module(self, ctx: CallContext, module: str) -> None:
        self._set_module(ctx, ModuleKind.POLICY, module)

    @external("setRecoveryModule(address)")
    def set_recovery_module(self, ctx: CallContext, module: str) -> None:
        self._set_module(ctx, ModuleKind.RECOVERY, module)

    def _set_module(self, ctx: CallContext, kind: ModuleKind, module: str) -> None:
        if ctx.sender != self._owner:
            raise NotOwner(ctx.sender)
        module = to_checksum_address(module)
        slot = _MODULE_SLOTS[kind]
        previous = ctx.sload(slot, ZERO_ADDRESS)
        ctx.sstore(slot, module)
        ctx.emit(MODULE_CHANGED, kind=int(kind), oldModule=previous, newModule=module)
        logger.info("%s module on %s changed %s -> %s", kind.name.title(), ctx.address, previous, module)
