"""
Avatar — Signed batch execution for delegated accounts.

An account activates immutable wallet code once:
Owner signs a batch → Any relayer submits it → Policy guards check it →
Sub-calls run atomically → Relayer is paid.
"""

__version__ = "0.1.0"

from .errors import (
    AvatarError,
    CodeFault,
    Expired,
    FeeTransferFailed,
    InvalidBatchShape,
    InvalidChainId,
    NotOwner,
    PolicyRejected,
    Reentrant,
    Revert,
    SignatureError,
    SubCallFailed,
    Unauthorized,
)
from .host import Host, HostConfig, Receipt
from .batch import BatchAuthorization, SignedBatch, sign_batch, verify_signed_batch
from .wallet import DelegateWallet, ModuleKind
from .modules import (
    BalanceFloorGuard,
    CompositeGuard,
    FeeCapGuard,
    Guard,
    KeyRecoveryModule,
    TargetAllowlistGuard,
)
from .token import Token
from .client import WalletClient
from .audit import AuditTrail, EventType

__all__ = [
    "AvatarError", "Revert", "CodeFault", "InvalidBatchShape", "Expired", "Unauthorized",
    "PolicyRejected", "SubCallFailed", "FeeTransferFailed", "Reentrant", "NotOwner",
    "InvalidChainId", "SignatureError",
    "Host", "HostConfig", "Receipt",
    "BatchAuthorization", "SignedBatch", "sign_batch", "verify_signed_batch",
    "DelegateWallet", "ModuleKind",
    "Guard", "CompositeGuard", "TargetAllowlistGuard", "FeeCapGuard", "BalanceFloorGuard",
    "KeyRecoveryModule", "Token", "WalletClient",
    "AuditTrail", "EventType",
]
