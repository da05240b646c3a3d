"""secp256k1 signer recovery with ecrecover semantics."""

from __future__ import annotations

from typing import Optional

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError


SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# ERC-1271 isValidSignature(bytes32,bytes) acceptance value
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")


def split_signature(signature: bytes) -> tuple[int, int, int]:
    """Split a 65-byte r‖s‖v signature into (v, r, s)."""
    if len(signature) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(signature)}")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    return signature[64], r, s


def recover_signer(digest: bytes, signature: bytes) -> Optional[str]:
    """Recover the checksummed signer of ``digest``, or None.

    Malformed, malleable (high-s) or unrecoverable signatures yield None
    instead of raising.
    """
    if len(digest) != 32 or len(signature) != 65:
        return None
    v, r, s = split_signature(bytes(signature))
    if v not in (27, 28):
        return None
    if not (0 < r < SECP256K1_N) or not (0 < s <= SECP256K1_N // 2):
        return None
    try:
        public_key = keys.Signature(vrs=(v - 27, r, s)).recover_public_key_from_msg_hash(bytes(digest))
    except (BadSignature, ValidationError, ValueError):
        return None
    return public_key.to_checksum_address()
