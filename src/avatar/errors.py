"""
Avatar error types.

Reverts are raised where a call frame terminates abnormally; the host
catches them at the frame boundary and rolls back that frame's effects.
Other exceptions raised by contract code are wrapped as ``CodeFault``.
Host misuse and off-chain failures propagate to the caller.
"""

from __future__ import annotations

from typing import Optional


class AvatarError(Exception):
    """Base error for all Avatar operations."""
    pass


# Host-level reverts
class Revert(AvatarError):
    """Abnormal termination of a call frame."""

    def __init__(self, reason: str = "", data: bytes = b""):
        self.reason = reason
        self.data = data
        super().__init__(reason or type(self).__name__)


class InsufficientBalance(Revert):
    """Account balance is below the value being moved."""
    def __init__(self, account: str, balance: int, amount: int):
        self.account = account
        self.balance = balance
        self.amount = amount
        super().__init__(f"{account} holds {balance}, needs {amount}")


class StaticCallViolation(Revert):
    """State mutation attempted inside a read-only call."""
    pass


class CallDepthExceeded(Revert):
    """Nested call depth limit reached."""
    pass


class UnknownSelector(Revert):
    """Call data does not match any external function of the callee."""
    pass


class CodeFault(Revert):
    """Contract code raised something other than a revert; the frame is reverted."""
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


# Wallet pipeline reverts
class InvalidBatchShape(Revert):
    """Targets, values and calldatas differ in length or are empty."""
    def __init__(self, targets: int, values: int, calldatas: int):
        self.lengths = (targets, values, calldatas)
        super().__init__(
            f"Batch arrays must share a non-zero length "
            f"(targets={targets}, values={values}, calldatas={calldatas})"
        )


class Expired(Revert):
    """Batch deadline is in the past."""
    def __init__(self, deadline: int, now: int):
        self.deadline = deadline
        self.now = now
        super().__init__(f"Batch expired at {deadline} (now {now})")


class Unauthorized(Revert):
    """Neither the owner key nor the recovery module authorized the digest."""
    pass


class PolicyRejected(Revert):
    """A policy guard vetoed the batch."""
    def __init__(self, stage: str, reason: str = ""):
        self.stage = stage
        super().__init__(f"Policy {stage}-check rejected batch" + (f": {reason}" if reason else ""))


class SubCallFailed(Revert):
    """A batch sub-call terminated abnormally."""
    def __init__(self, index: int, target: str, reason: str = "", cause: Optional[Revert] = None):
        self.index = index
        self.target = target
        self.cause = cause
        super().__init__(f"Sub-call {index} to {target} failed" + (f": {reason}" if reason else ""))


class FeeTransferFailed(Revert):
    """Relayer fee could not be paid."""
    def __init__(self, token: str, reason: str = ""):
        self.token = token
        super().__init__(f"Fee transfer in {token} failed" + (f": {reason}" if reason else ""))


class Reentrant(Revert):
    """executeBatch was re-entered while an attempt was in flight."""
    pass


class NotOwner(Revert):
    """Administrative call from an address other than the owner."""
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Caller {caller} is not the wallet owner")


# Host misuse
class HostBusy(AvatarError, RuntimeError):
    """Host setup or a new transaction was requested from inside an executing call."""
    pass


# Construction errors
class InvalidChainId(AvatarError):
    """Wallet code cannot be bound to chain id zero."""
    pass


# Off-chain errors
class SignatureError(AvatarError):
    """Batch signing or signed-batch decoding failed."""
    pass
