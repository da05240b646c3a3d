"""
Batch authorization messages: EIP-712 typed data, digest, signing and
serialization.

A batch is an ordered list of sub-calls plus a relayer fee and a deadline.
The owner signs it off-line against the wallet's domain and the wallet's
current meta-nonce; any relayer may then submit it.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from eth_abi import encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from .abi import ZERO_ADDRESS, decode_result, encode_call, selector
from .errors import SignatureError
from .signatures import recover_signer


DOMAIN_NAME = "AvatarDelegate"
DOMAIN_VERSION = "1"

DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
BATCH_TYPE = (
    "Batch(address[] targets,uint256[] values,bytes[] calldatas,"
    "address feeToken,uint256 feeAmount,uint256 deadline,uint256 nonce)"
)
DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
BATCH_TYPEHASH = keccak(text=BATCH_TYPE)

EXECUTE_BATCH_SIGNATURE = "executeBatch(address[],uint256[],bytes[],address,uint256,uint256,bytes)"
_EXECUTE_BATCH_INPUTS = ["address[]", "uint256[]", "bytes[]", "address", "uint256", "uint256", "bytes"]

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]*$")


def domain_separator(owner: str, chain_id: int) -> bytes:
    """hashStruct of the wallet's EIP-712 domain."""
    return keccak(
        encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                DOMAIN_TYPEHASH,
                keccak(text=DOMAIN_NAME),
                keccak(text=DOMAIN_VERSION),
                int(chain_id),
                to_checksum_address(owner),
            ],
        )
    )


def hash_batch(
    targets: list[str],
    values: list[int],
    calldatas: list[bytes],
    fee_token: str,
    fee_amount: int,
    deadline: int,
    nonce: int,
) -> bytes:
    """hashStruct(Batch) per EIP-712: arrays hash their concatenated element encodings."""
    targets_hash = keccak(b"".join(encode(["address"], [t]) for t in targets))
    values_hash = keccak(b"".join(encode(["uint256"], [v]) for v in values))
    calldatas_hash = keccak(b"".join(keccak(bytes(d)) for d in calldatas))
    return keccak(
        encode(
            ["bytes32", "bytes32", "bytes32", "bytes32", "address", "uint256", "uint256", "uint256"],
            [
                BATCH_TYPEHASH,
                targets_hash,
                values_hash,
                calldatas_hash,
                fee_token,
                fee_amount,
                deadline,
                nonce,
            ],
        )
    )


def typed_digest(separator: bytes, struct_hash: bytes) -> bytes:
    return keccak(b"\x19\x01" + separator + struct_hash)


@dataclass
class BatchAuthorization:
    """The message an owner signs to authorize one batch."""

    targets: list[str]
    values: list[int]
    calldatas: list[bytes]
    fee_token: str = ZERO_ADDRESS
    fee_amount: int = 0
    deadline: int = 0
    nonce: int = 0

    def __post_init__(self) -> None:
        self.targets = [to_checksum_address(t) for t in self.targets]
        self.values = [int(v) for v in self.values]
        self.calldatas = [bytes(d) for d in self.calldatas]
        self.fee_token = to_checksum_address(self.fee_token)

    @property
    def is_expired(self) -> bool:
        return time.time() > self.deadline

    def struct_hash(self) -> bytes:
        return hash_batch(
            self.targets,
            self.values,
            self.calldatas,
            self.fee_token,
            self.fee_amount,
            self.deadline,
            self.nonce,
        )

    def digest(self, owner: str, chain_id: int) -> bytes:
        return typed_digest(domain_separator(owner, chain_id), self.struct_hash())

    def to_eip712_message(self, owner: str, chain_id: int) -> dict:
        """Convert the batch to EIP-712 typed data for signing."""
        return {
            "types": {
                "Batch": [
                    {"name": "targets", "type": "address[]"},
                    {"name": "values", "type": "uint256[]"},
                    {"name": "calldatas", "type": "bytes[]"},
                    {"name": "feeToken", "type": "address"},
                    {"name": "feeAmount", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                    {"name": "nonce", "type": "uint256"},
                ],
            },
            "primaryType": "Batch",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": int(chain_id),
                "verifyingContract": to_checksum_address(owner),
            },
            "message": {
                "targets": list(self.targets),
                "values": list(self.values),
                "calldatas": list(self.calldatas),
                "feeToken": self.fee_token,
                "feeAmount": self.fee_amount,
                "deadline": self.deadline,
                "nonce": self.nonce,
            },
        }

    def to_dict(self) -> dict:
        return {
            "targets": list(self.targets),
            "values": [str(v) for v in self.values],
            "calldatas": ["0x" + d.hex() for d in self.calldatas],
            "fee_token": self.fee_token,
            "fee_amount": str(self.fee_amount),
            "deadline": self.deadline,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "BatchAuthorization":
        return cls(
            targets=list(d["targets"]),
            values=[int(v) for v in d["values"]],
            calldatas=[_parse_hex(c, "calldata") for c in d["calldatas"]],
            fee_token=str(d.get("fee_token", ZERO_ADDRESS)),
            fee_amount=int(d.get("fee_amount", 0)),
            deadline=int(d["deadline"]),
            nonce=int(d["nonce"]),
        )


@dataclass
class SignedBatch:
    """A batch plus its signature and the wallet context it was signed for."""

    batch: BatchAuthorization
    signature: bytes
    wallet: str
    owner: str
    chain_id: int
    signed_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def digest(self) -> bytes:
        return self.batch.digest(self.owner, self.chain_id)

    @property
    def batch_id(self) -> str:
        return "batch-" + self.digest.hex()[:16]

    @property
    def signer(self) -> Optional[str]:
        return recover_signer(self.digest, self.signature)

    def call_data(self) -> bytes:
        """executeBatch call data for a relayer to submit to ``wallet``."""
        b = self.batch
        return encode_call(
            EXECUTE_BATCH_SIGNATURE,
            b.targets,
            b.values,
            b.calldatas,
            b.fee_token,
            b.fee_amount,
            b.deadline,
            self.signature,
        )

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "wallet": self.wallet,
            "owner": self.owner,
            "chain_id": self.chain_id,
            "digest": "0x" + self.digest.hex(),
            "signature": "0x" + self.signature.hex(),
            "signed_at": self.signed_at,
            "batch": self.batch.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SignedBatch":
        try:
            signed = cls(
                batch=BatchAuthorization.from_dict(d["batch"]),
                signature=_parse_hex(d["signature"], "signature"),
                wallet=to_checksum_address(d["wallet"]),
                owner=to_checksum_address(d["owner"]),
                chain_id=int(d["chain_id"]),
                signed_at=int(d.get("signed_at", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SignatureError(f"Malformed signed batch: {e}") from e
        recorded = d.get("digest")
        if recorded is not None and _parse_hex(recorded, "digest") != signed.digest:
            raise SignatureError("Signed batch digest does not match its contents")
        return signed


def sign_batch(
    private_key: str,
    batch: BatchAuthorization,
    owner: str,
    chain_id: int,
    wallet: Optional[str] = None,
) -> SignedBatch:
    """Sign ``batch`` for the wallet whose domain is (``owner``, ``chain_id``).

    The signing key need not be the owner's: a key accepted by the wallet's
    recovery module signs the same digest.
    """
    account = Account.from_key(private_key)
    typed_data = batch.to_eip712_message(owner, chain_id)
    try:
        signed = Account.sign_typed_data(
            account.key,
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
    except Exception as e:
        raise SignatureError(f"Failed to sign batch: {e}") from e
    return SignedBatch(
        batch=batch,
        signature=bytes(signed.signature),
        wallet=to_checksum_address(wallet or owner),
        owner=to_checksum_address(owner),
        chain_id=int(chain_id),
    )


def verify_signed_batch(signed: SignedBatch, now: Optional[int] = None) -> tuple[bool, str]:
    """Check a signed batch off-line: shape, deadline and owner signature.

    Does not consult the wallet's nonce or recovery module.
    """
    b = signed.batch
    if not b.targets or not (len(b.targets) == len(b.values) == len(b.calldatas)):
        return False, "Batch arrays must share a non-zero length"
    current = int(time.time()) if now is None else int(now)
    if current > b.deadline:
        return False, f"Batch expired at {b.deadline}"
    recovered = signed.signer
    if recovered is None:
        return False, "Signature is malformed or unrecoverable"
    if recovered != signed.owner:
        return False, f"Signer mismatch: expected {signed.owner}, got {recovered}"
    return True, "Valid batch signature"


def decode_execute_batch(data: bytes) -> tuple:
    """Decode executeBatch call data into its seven arguments."""
    data = bytes(data)
    if data[:4] != selector(EXECUTE_BATCH_SIGNATURE):
        raise ValueError("Not executeBatch call data")
    return decode_result(_EXECUTE_BATCH_INPUTS, data[4:])


def _parse_hex(value: Any, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str) or not _HEX_RE.match(value.strip()):
        raise ValueError(f"{field_name} must be a hex string")
    candidate = value.strip()
    if candidate.lower().startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) % 2:
        raise ValueError(f"{field_name} has an odd number of hex digits")
    return bytes.fromhex(candidate)
