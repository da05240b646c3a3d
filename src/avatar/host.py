"""
In-process host environment for delegated account code.

Accounts hold a native balance, optional code and key/value storage.
Transactions are serialized under one lock. Every message call runs in its
own journal frame, so a revert rolls back exactly the effects of that frame
and its children. Durable storage writes survive those rollbacks.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Hashable, Optional, Sequence

from eth_utils import keccak, to_checksum_address

from .abi import ZERO_ADDRESS, Contract, decode_result, encode_call, event_topic
from .errors import (
    CallDepthExceeded,
    CodeFault,
    HostBusy,
    InsufficientBalance,
    Revert,
    StaticCallViolation,
)
from .journal import Journal

logger = logging.getLogger(__name__)


DEFAULT_CHAIN_ID = 31337


@dataclass
class HostConfig:
    """Configuration for a host environment."""

    chain_id: int = DEFAULT_CHAIN_ID
    max_call_depth: int = 1024
    timestamp: Optional[int] = None  # None = wall clock at creation


@dataclass
class Log:
    """An event emitted by contract code."""

    address: str
    event: str
    args: dict[str, Any]
    topic: bytes

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "event": self.event,
            "topic": "0x" + self.topic.hex(),
            "args": {k: ("0x" + v.hex() if isinstance(v, bytes) else v) for k, v in self.args.items()},
        }


@dataclass
class CallResult:
    success: bool
    return_data: bytes = b""
    error: Optional[Revert] = None

    @property
    def reason(self) -> str:
        return self.error.reason if self.error is not None else ""


@dataclass
class Receipt:
    """Outcome of a top-level transaction."""

    tx_hash: str
    sender: str
    to: str
    status: bool
    timestamp: int
    return_data: bytes = b""
    logs: list[Log] = field(default_factory=list)
    error: Optional[Revert] = None

    @property
    def reason(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def raise_for_status(self) -> "Receipt":
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "sender": self.sender,
            "to": self.to,
            "status": self.status,
            "timestamp": self.timestamp,
            "logs": [log.to_dict() for log in self.logs],
            "error": type(self.error).__name__ if self.error is not None else None,
            "reason": self.reason,
        }


@dataclass
class CallContext:
    """What contract code sees while it runs: msg.*, tx.origin and its own storage."""

    host: "Host"
    address: str
    sender: str
    value: int
    origin: str
    data: bytes
    static: bool = False

    @property
    def timestamp(self) -> int:
        return self.host.timestamp

    @property
    def chain_id(self) -> int:
        return self.host.chain_id

    def sload(self, slot: Hashable, default: Any = None) -> Any:
        return self.host.sload(self.address, slot, default)

    def sstore(self, slot: Hashable, value: Any, durable: bool = False) -> None:
        self.host.sstore(self.address, slot, value, durable=durable)

    def emit(self, signature: str, **args: Any) -> None:
        self.host.emit(self.address, signature, args)

    def call(self, to: str, value: int = 0, data: bytes = b"") -> CallResult:
        return self.host.call(self.address, to, value, data, origin=self.origin)

    def static_call(self, to: str, data: bytes) -> CallResult:
        return self.host.call(self.address, to, 0, data, origin=self.origin, static=True)


class Host:
    """Serialized, journaled account state plus message-call execution."""

    def __init__(self, config: Optional[HostConfig] = None):
        self.config = config or HostConfig()
        self.timestamp = (
            int(self.config.timestamp) if self.config.timestamp is not None else int(time.time())
        )
        self._balances: dict[str, int] = {}
        self._code: dict[str, Contract] = {}
        self._storage: dict[tuple[str, Hashable], Any] = {}
        self._logs: list[Log] = []
        self._journal = Journal()
        self._lock = threading.RLock()
        self._depth = 0
        self._static_depth = 0
        self._tx_count = 0
        self._deploy_count = 0

    @property
    def chain_id(self) -> int:
        return self.config.chain_id

    # ── Setup ─────────────────────────────────────────────────────

    def fund(self, account: str, amount: int) -> None:
        """Credit native balance outside any transaction (genesis allocation)."""
        if amount < 0:
            raise ValueError("amount must be >= 0")
        with self._lock:
            self._require_idle("fund")
            account = to_checksum_address(account)
            self._balances[account] = self._balances.get(account, 0) + amount

    def activate(self, account: str, code: Contract) -> None:
        """Associate code with an existing account (delegation activation)."""
        with self._lock:
            self._require_idle("activate")
            account = to_checksum_address(account)
            self._code[account] = code
        logger.info("Activated %s code at %s", type(code).__name__, account)

    def deploy(self, code: Contract) -> str:
        """Attach code to a fresh address and return it."""
        with self._lock:
            self._require_idle("deploy")
            self._deploy_count += 1
            seed = f"{self.chain_id}:{self._deploy_count}:{type(code).__name__}".encode()
            address = to_checksum_address(keccak(seed)[-20:])
            self._code[address] = code
        logger.debug("Deployed %s at %s", type(code).__name__, address)
        return address

    def warp(self, timestamp: int) -> None:
        self.timestamp = int(timestamp)

    def advance(self, seconds: int) -> int:
        self.timestamp += int(seconds)
        return self.timestamp

    # ── State access ──────────────────────────────────────────────

    def balance_of(self, account: str) -> int:
        return self._balances.get(to_checksum_address(account), 0)

    def code_at(self, account: str) -> Optional[Contract]:
        return self._code.get(to_checksum_address(account))

    def has_code(self, account: str) -> bool:
        return self.code_at(account) is not None

    def sload(self, account: str, slot: Hashable, default: Any = None) -> Any:
        return self._storage.get((to_checksum_address(account), slot), default)

    def sstore(self, account: str, slot: Hashable, value: Any, durable: bool = False) -> None:
        self._require_mutable("storage write")
        self._journal.write(self._storage, (to_checksum_address(account), slot), value, durable=durable)

    def emit(self, account: str, signature: str, args: dict[str, Any]) -> None:
        self._require_mutable("log emission")
        log = Log(
            address=to_checksum_address(account),
            event=signature.partition("(")[0],
            args=dict(args),
            topic=event_topic(signature),
        )
        self._journal.append(self._logs, log)

    def get_logs(self, address: Optional[str] = None, event: Optional[str] = None) -> list[Log]:
        with self._lock:
            logs = list(self._logs)
        if address is not None:
            address = to_checksum_address(address)
            logs = [log for log in logs if log.address == address]
        if event is not None:
            logs = [log for log in logs if log.event == event]
        return logs

    # ── Execution ─────────────────────────────────────────────────

    def call(
        self,
        sender: str,
        to: str,
        value: int,
        data: bytes,
        *,
        origin: str,
        static: bool = False,
    ) -> CallResult:
        """Run one message call frame.

        A revert, or any other exception escaping contract code, undoes the
        frame and is returned as a failed result instead of raised.
        """
        sender = to_checksum_address(sender)
        to = to_checksum_address(to)
        if self._depth >= self.config.max_call_depth:
            return CallResult(
                False,
                error=CallDepthExceeded(f"Call depth {self.config.max_call_depth} exceeded"),
            )

        savepoint = self._journal.savepoint()
        self._depth += 1
        if static:
            self._static_depth += 1
        try:
            if value:
                self._move(sender, to, value)
            code = self._code.get(to)
            if code is None:
                return CallResult(True)
            ctx = CallContext(
                host=self,
                address=to,
                sender=sender,
                value=value,
                origin=to_checksum_address(origin),
                data=bytes(data),
                static=self._static_depth > 0,
            )
            return CallResult(True, code.dispatch(ctx, bytes(data)))
        except HostBusy:
            raise
        except Exception as exc:
            if isinstance(exc, Revert):
                error = exc
            else:
                logger.warning("Code at %s raised %r; reverting the frame", to, exc)
                error = CodeFault(exc)
                error.__cause__ = exc
            undone = self._journal.rollback(savepoint)
            logger.debug(
                "Call %s -> %s reverted (%s), %d effects undone",
                sender,
                to,
                type(error).__name__,
                undone,
            )
            return CallResult(False, error.data, error)
        finally:
            self._depth -= 1
            if static:
                self._static_depth -= 1

    def transact(self, sender: str, to: str, data: bytes = b"", value: int = 0) -> Receipt:
        """Execute a top-level transaction; reverts are reported in the receipt."""
        with self._lock:
            self._require_idle("transact")
            sender = to_checksum_address(sender)
            to = to_checksum_address(to)
            self._tx_count += 1
            tx_hash = "0x" + keccak(
                f"{self.chain_id}:{self._tx_count}:{sender}:{to}".encode() + bytes(data)
            ).hex()
            log_start = len(self._logs)
            try:
                result = self.call(sender, to, value, data, origin=sender)
            except Exception:
                self._journal.rollback(0)
                raise
            finally:
                self._journal.clear()

            receipt = Receipt(
                tx_hash=tx_hash,
                sender=sender,
                to=to,
                status=result.success,
                timestamp=self.timestamp,
                return_data=result.return_data,
                logs=list(self._logs[log_start:]),
                error=result.error,
            )

        if receipt.status:
            logger.info("Transaction %s from %s to %s succeeded (%d logs)", tx_hash, sender, to, len(receipt.logs))
        else:
            logger.warning("Transaction %s from %s to %s reverted: %s", tx_hash, sender, to, receipt.reason)
        return receipt

    def view(
        self,
        to: str,
        signature: str,
        *args: Any,
        returns: Sequence[str] = (),
        sender: str = ZERO_ADDRESS,
    ) -> Any:
        """Static-call ``signature`` on ``to`` and decode the result.

        Returns the single decoded value when ``returns`` has one type, the
        tuple otherwise. A revert is raised.
        """
        with self._lock:
            result = self.call(sender, to, 0, encode_call(signature, *args), origin=sender, static=True)
        if not result.success:
            assert result.error is not None
            raise result.error
        decoded = decode_result(returns, result.return_data) if returns else ()
        return decoded[0] if len(decoded) == 1 else decoded

    # ── Internals ─────────────────────────────────────────────────

    def _move(self, sender: str, to: str, value: int) -> None:
        self._require_mutable("value transfer")
        if value < 0:
            raise Revert("Negative value")
        balance = self._balances.get(sender, 0)
        if balance < value:
            raise InsufficientBalance(sender, balance, value)
        self._journal.write(self._balances, sender, balance - value)
        self._journal.write(self._balances, to, self._balances.get(to, 0) + value)

    def _require_mutable(self, what: str) -> None:
        if self._static_depth > 0:
            raise StaticCallViolation(f"{what} inside a static call")

    def _require_idle(self, what: str) -> None:
        if self._depth > 0:
            raise HostBusy(f"{what}() cannot run inside an executing call")
