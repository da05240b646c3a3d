"""
Owner- and relayer-side access to an activated wallet.

Flow:
1. Owner activates DelegateWallet code at their account
2. Owner signs a batch against the current meta-nonce
3. Any relayer submits it; the receipt reports success or the revert
4. Every step is recorded in the audit trail when one is attached
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from eth_account import Account
from eth_utils import to_checksum_address

from .abi import ZERO_ADDRESS, encode_call
from .audit import AuditTrail, EventType
from .batch import BatchAuthorization, SignedBatch, sign_batch
from .host import Host, Receipt
from .wallet import DelegateWallet, ModuleKind

logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS = 300


class WalletClient:
    """Python handle on one delegated account."""

    def __init__(self, host: Host, account: str, audit: Optional[AuditTrail] = None):
        self.host = host
        self.account = to_checksum_address(account)
        self.audit = audit

    @classmethod
    def activate(
        cls,
        host: Host,
        owner: str,
        account: Optional[str] = None,
        audit: Optional[AuditTrail] = None,
    ) -> "WalletClient":
        """Construct wallet code for ``owner`` and activate it at ``account`` (default: owner)."""
        code = DelegateWallet(owner, host.chain_id)
        account = to_checksum_address(account or owner)
        host.activate(account, code)
        client = cls(host, account, audit=audit)
        client._audit(
            EventType.WALLET_ACTIVATED,
            actor=code.owner,
            details={"chain_id": host.chain_id, "domain_separator": "0x" + code.domain_separator.hex()},
        )
        return client

    # ── Views ─────────────────────────────────────────────────────

    def owner(self) -> str:
        return self.host.view(self.account, "owner()", returns=["address"])

    def domain_separator(self) -> bytes:
        return self.host.view(self.account, "domainSeparator()", returns=["bytes32"])

    def meta_nonce(self) -> int:
        return self.host.view(self.account, "metaNonce()", returns=["uint256"])

    def policy_module(self) -> Optional[str]:
        module = self.host.view(self.account, "policyModule()", returns=["address"])
        return None if module == ZERO_ADDRESS else module

    def recovery_module(self) -> Optional[str]:
        module = self.host.view(self.account, "recoveryModule()", returns=["address"])
        return None if module == ZERO_ADDRESS else module

    # ── Batches ───────────────────────────────────────────────────

    def sign(
        self,
        private_key: str,
        targets: Sequence[str],
        values: Sequence[int],
        calldatas: Sequence[bytes],
        fee_token: str = ZERO_ADDRESS,
        fee_amount: int = 0,
        deadline: Optional[int] = None,
        nonce: Optional[int] = None,
    ) -> SignedBatch:
        """Sign a batch against the wallet's current (or an explicit) meta-nonce."""
        batch = BatchAuthorization(
            targets=list(targets),
            values=list(values),
            calldatas=list(calldatas),
            fee_token=fee_token,
            fee_amount=fee_amount,
            deadline=deadline if deadline is not None else self.host.timestamp + DEFAULT_TTL_SECONDS,
            nonce=nonce if nonce is not None else self.meta_nonce(),
        )
        signed = sign_batch(private_key, batch, owner=self.owner(), chain_id=self.host.chain_id, wallet=self.account)
        self._audit(
            EventType.BATCH_SIGNED,
            digest="0x" + signed.digest.hex(),
            actor=Account.from_key(private_key).address,
            nonce=batch.nonce,
            fee_amount=batch.fee_amount,
            details={"calls": len(batch.targets), "deadline": batch.deadline},
        )
        return signed

    def submit(self, signed: SignedBatch, relayer: str) -> Receipt:
        """Submit ``signed`` as ``relayer``; the relayer collects the fee on success."""
        if signed.wallet != self.account:
            raise ValueError(f"Batch was signed for {signed.wallet}, not {self.account}")
        digest = "0x" + signed.digest.hex()
        self._audit(
            EventType.BATCH_SUBMITTED,
            digest=digest,
            actor=relayer,
            nonce=signed.batch.nonce,
            fee_amount=signed.batch.fee_amount,
        )
        receipt = self.host.transact(relayer, self.account, signed.call_data())
        if receipt.status:
            self._audit(
                EventType.BATCH_EXECUTED,
                digest=digest,
                actor=receipt.sender,
                nonce=signed.batch.nonce,
                fee_amount=signed.batch.fee_amount,
                details={"tx_hash": receipt.tx_hash},
            )
        else:
            logger.warning("Batch %s on %s rejected: %s", digest, self.account, receipt.reason)
            self._audit(
                EventType.BATCH_FAILED,
                digest=digest,
                actor=receipt.sender,
                nonce=signed.batch.nonce,
                success=False,
                reason=receipt.reason,
                details={"tx_hash": receipt.tx_hash, "error": type(receipt.error).__name__},
            )
        return receipt

    # ── Module configuration ──────────────────────────────────────

    def set_policy_module(self, module: Optional[str], sender: Optional[str] = None) -> Receipt:
        return self._set_module(ModuleKind.POLICY, "setPolicyModule(address)", module, sender)

    def set_recovery_module(self, module: Optional[str], sender: Optional[str] = None) -> Receipt:
        return self._set_module(ModuleKind.RECOVERY, "setRecoveryModule(address)", module, sender)

    def _set_module(
        self,
        kind: ModuleKind,
        signature: str,
        module: Optional[str],
        sender: Optional[str],
    ) -> Receipt:
        sender = sender or self.owner()
        receipt = self.host.transact(sender, self.account, encode_call(signature, module or ZERO_ADDRESS))
        self._audit(
            EventType.MODULE_CHANGED,
            actor=receipt.sender,
            success=receipt.status,
            reason=receipt.reason,
            details={"kind": kind.name.lower(), "module": module or ZERO_ADDRESS, "tx_hash": receipt.tx_hash},
        )
        return receipt

    def _audit(self, event_type: EventType, **fields) -> None:
        if self.audit is not None:
            self.audit.log(event_type, wallet=self.account, **fields)
