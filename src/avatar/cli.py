"""
Avatar CLI — Signed batch management for delegated accounts.

Commands:
    avatar digest    Show a signed batch's digest and recovered signer
    avatar sign      Sign a batch for an owner's wallet
    avatar verify    Verify a signed batch off-line
    avatar audit     View audit trail
    avatar demo      Run a full in-memory demo flow
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account
from eth_utils import is_address, to_checksum_address

from . import __version__
from .abi import ZERO_ADDRESS, encode_call
from .audit import AuditTrail, EventType
from .batch import (
    BatchAuthorization,
    SignedBatch,
    _parse_hex,
    domain_separator,
    sign_batch,
    verify_signed_batch,
)
from .host import DEFAULT_CHAIN_ID, Host, HostConfig
from .storage import avatar_dir, child_path, read_json, write_json
from .units import format_units, to_base_units


CHAIN_ID_ENV = "AVATAR_CHAIN_ID"


# ── Storage ───────────────────────────────────────────────────────

def _batches_dir() -> Path:
    return avatar_dir() / "batches"


def _save_batch(signed: SignedBatch, out: Optional[str] = None) -> Path:
    path = Path(out) if out else child_path(_batches_dir(), signed.batch_id, ".json")
    write_json(path, signed.to_dict())
    return path


def _load_batch(ref: str) -> SignedBatch:
    path = Path(ref)
    if not path.exists():
        directory = _batches_dir()
        matches = sorted(directory.glob(f"*{ref}*.json")) if directory.exists() else []
        if len(matches) != 1:
            detail = "no match" if not matches else f"{len(matches)} matches"
            raise FileNotFoundError(f"Signed batch not found: {ref} ({detail})")
        path = matches[0]
    return SignedBatch.from_dict(read_json(path))


def _default_chain_id() -> int:
    return int(os.getenv(CHAIN_ID_ENV, DEFAULT_CHAIN_ID))


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _parse_call(raw: str) -> tuple[str, int, bytes]:
    """Parse ``TARGET[:VALUE[:0xDATA]]``."""
    parts = raw.split(":")
    if not 1 <= len(parts) <= 3 or not is_address(parts[0]):
        raise ValueError(f"Invalid call '{raw}' (expected TARGET[:VALUE[:0xDATA]])")
    value = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    data = _parse_hex(parts[2], "call data") if len(parts) > 2 else b""
    return to_checksum_address(parts[0]), value, data


def _refuse_key_from_argv(param: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        flag = "--" + param.replace("_", "-")
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """Avatar — Signed batch execution for delegated accounts."""
    pass


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Signing private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--owner", default=None,
              help="Wallet owner address (default: the signing key's address)")
@click.option("--wallet", default=None, help="Account the wallet code is active at (default: owner)")
@click.option("--chain-id", type=int, default=_default_chain_id,
              show_default=f"env {CHAIN_ID_ENV} or {DEFAULT_CHAIN_ID}", help="Chain id of the signing domain")
@click.option("--nonce", type=int, required=True, help="Wallet meta-nonce the batch is bound to")
@click.option("--call", "calls", multiple=True, required=True,
              help="Sub-call as TARGET[:VALUE[:0xDATA]]; repeat for each call")
@click.option("--fee-token", default=ZERO_ADDRESS, help="Fee token address (zero address = native)")
@click.option("--fee", default="0", help="Relayer fee in whole token units")
@click.option("--fee-decimals", type=int, default=18, help="Fee token decimals")
@click.option("--ttl", type=int, default=300, help="Seconds until the batch expires")
@click.option("--deadline", type=int, default=None, help="Absolute deadline (overrides --ttl)")
@click.option("--out", default=None, help="Write the signed batch here instead of ~/.avatar/batches")
def sign(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    owner: Optional[str],
    wallet: Optional[str],
    chain_id: int,
    nonce: int,
    calls: tuple[str, ...],
    fee_token: str,
    fee: str,
    fee_decimals: int,
    ttl: int,
    deadline: Optional[int],
    out: Optional[str],
):
    """Sign a batch for an owner's wallet."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)

    try:
        private_key = _resolve_private_key(owner_key)
        signer = Account.from_key(private_key)
        parsed = [_parse_call(c) for c in calls]
        batch = BatchAuthorization(
            targets=[c[0] for c in parsed],
            values=[c[1] for c in parsed],
            calldatas=[c[2] for c in parsed],
            fee_token=fee_token,
            fee_amount=to_base_units(fee, fee_decimals),
            deadline=deadline if deadline is not None else int(time.time()) + ttl,
            nonce=nonce,
        )
        signed = sign_batch(private_key, batch, owner=owner or signer.address, chain_id=chain_id, wallet=wallet)
    except Exception as e:
        click.echo(f"❌ Failed to sign batch: {e}", err=True)
        sys.exit(1)

    path = _save_batch(signed, out)
    AuditTrail().log(
        EventType.BATCH_SIGNED,
        wallet=signed.wallet,
        digest="0x" + signed.digest.hex(),
        actor=signer.address,
        nonce=batch.nonce,
        fee_amount=batch.fee_amount,
        details={"calls": len(batch.targets), "deadline": batch.deadline, "chain_id": chain_id},
    )

    click.echo(f"✅ Batch signed: {signed.batch_id}")
    click.echo(f"   Wallet:   {signed.wallet}")
    click.echo(f"   Signer:   {signer.address}")
    click.echo(f"   Calls:    {len(batch.targets)}")
    click.echo(f"   Fee:      {format_units(batch.fee_amount, fee_decimals)} ({batch.fee_token})")
    click.echo(f"   Nonce:    {batch.nonce}")
    click.echo(f"   Expires:  {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(batch.deadline))}")
    click.echo(f"   Digest:   0x{signed.digest.hex()}")
    click.echo(f"   Saved to: {path}")


@main.command()
@click.argument("batch_ref")
def digest(batch_ref: str):
    """Show a signed batch's EIP-712 digest and recovered signer."""
    try:
        signed = _load_batch(batch_ref)
    except Exception as e:
        click.echo(f"❌ Failed to read batch: {e}", err=True)
        sys.exit(1)

    click.echo(f"Batch:            {signed.batch_id}")
    click.echo(f"Domain separator: 0x{domain_separator(signed.owner, signed.chain_id).hex()}")
    click.echo(f"Digest:           0x{signed.digest.hex()}")
    click.echo(f"Signer:           {signed.signer or 'unrecoverable'}")


@main.command()
@click.argument("batch_ref")
@click.option("--now", type=int, default=None, help="Evaluate the deadline at this unix time")
def verify(batch_ref: str, now: Optional[int]):
    """Verify a signed batch's shape, deadline and owner signature."""
    try:
        signed = _load_batch(batch_ref)
    except Exception as e:
        click.echo(f"❌ Failed to read batch: {e}", err=True)
        sys.exit(1)

    valid, reason = verify_signed_batch(signed, now=now)

    if valid:
        click.echo(f"✅ Batch is valid: {reason}")
        click.echo(f"   ID:      {signed.batch_id}")
        click.echo(f"   Owner:   {signed.owner}")
        click.echo(f"   Nonce:   {signed.batch.nonce}")
        click.echo(f"   Expires: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(signed.batch.deadline))}")
    else:
        click.echo(f"❌ Batch is invalid: {reason}")
        sys.exit(1)


@main.command()
@click.option("--wallet", default=None, help="Filter by wallet address")
@click.option("--digest", default=None, help="Only events for this batch digest")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(wallet: Optional[str], digest: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    try:
        events = trail.read_events(wallet=wallet, digest=digest, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        click.echo(f"  {_format_event(event)}")


@main.command()
@click.option("--webhook-url", default=None, help="POST the demo's events to this URL")
def demo(webhook_url: Optional[str]):
    """Run a full demo of the signed batch flow on an in-memory host."""
    from .client import WalletClient
    from .modules import KeyRecoveryModule
    from .token import Token

    click.echo("🎬 Avatar Demo — Signed Batch Flow")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Generating test accounts...")
    owner = Account.create()
    relayer = Account.create()
    merchant = Account.create()
    backup = Account.create()
    click.echo(f"   Owner:    {owner.address}")
    click.echo(f"   Relayer:  {relayer.address}")
    click.echo(f"   Merchant: {merchant.address}")

    host = Host(HostConfig(chain_id=_default_chain_id()))
    audit_trail = AuditTrail()

    click.echo("\n2️⃣  Activating wallet code at the owner's account...")
    wallet = WalletClient.activate(host, owner.address, audit=audit_trail)
    token = Token("Demo Dollar", "DUSD", decimals=6, issuer=owner.address)
    token_address = host.deploy(token)
    host.transact(owner.address, token_address, encode_call("mint(address,uint256)", owner.address, 100_000_000)).raise_for_status()
    host.fund(owner.address, 10**18)
    click.echo(f"   ✅ Wallet active, nonce {wallet.meta_nonce()}")

    click.echo("\n3️⃣  Owner signs: pay merchant 25 DUSD, relayer fee 0.5 DUSD...")
    pay = encode_call("transfer(address,uint256)", merchant.address, 25_000_000)
    signed = wallet.sign(
        owner.key.hex(),
        targets=[token_address],
        values=[0],
        calldatas=[pay],
        fee_token=token_address,
        fee_amount=500_000,
    )
    click.echo(f"   ✅ {signed.batch_id} (nonce {signed.batch.nonce})")

    click.echo("\n4️⃣  Relayer submits...")
    steps = [("submit", wallet.submit(signed, relayer.address))]
    click.echo("   Replaying the same signed batch...")
    steps.append(("replay", wallet.submit(signed, relayer.address)))

    click.echo("\n5️⃣  Installing a recovery key and signing with it...")
    module = host.deploy(KeyRecoveryModule([backup.address]))
    steps.append(("set_recovery", wallet.set_recovery_module(module)))
    recovered = wallet.sign(
        backup.key.hex(),
        targets=[merchant.address],
        values=[10**15],
        calldatas=[b""],
    )
    steps.append(("recovery_submit", wallet.submit(recovered, relayer.address)))

    for label, receipt in steps:
        status = "✅" if receipt.status else "❌"
        detail = f" ({receipt.reason})" if not receipt.status else ""
        click.echo(f"   {status} {label}: {receipt.tx_hash[:18]}…{detail}")

    balance_of = "balanceOf(address)"
    click.echo("\n6️⃣  Balances...")
    click.echo(f"   Merchant: {format_units(host.view(token_address, balance_of, merchant.address, returns=['uint256']), 6, 'DUSD')}")
    click.echo(f"   Relayer:  {format_units(host.view(token_address, balance_of, relayer.address, returns=['uint256']), 6, 'DUSD')}")
    click.echo(f"   Merchant: {format_units(host.balance_of(merchant.address), 18, 'ETH')}")
    click.echo(f"   Nonce:    {wallet.meta_nonce()}")

    click.echo("\n7️⃣  Audit trail (last 10 events)...")
    events = audit_trail.read_events(wallet=wallet.account, limit=10)
    for event in events:
        click.echo(f"   {_format_event(event)}")

    if webhook_url:
        try:
            import httpx

            body = {
                "event": "avatar_demo",
                "wallet": wallet.account,
                "chain_id": host.chain_id,
                "receipts": [dict(r.to_dict(), step=label) for label, r in steps],
            }
            response = httpx.post(webhook_url, json=body, timeout=5.0)
            response.raise_for_status()
            click.echo(f"\nWebhook delivered: {webhook_url}")
        except Exception as exc:
            click.echo(f"❌ Failed to deliver webhook: {exc}", err=True)
            sys.exit(1)

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Activate → Sign → Relay → Replay rejected → Recover")
    click.echo("   The relayer never held a key that could move the owner's funds.")


def _format_event(event) -> str:
    ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
    status = "✅" if event.success else "❌"
    nonce = f" #{event.nonce}" if event.nonce is not None else ""
    digest_hex = f" {event.digest[:12]}…" if event.digest else ""
    reason = f" ({event.reason})" if event.reason and not event.success else ""
    return f"{ts} {status} {event.event_type}{nonce}{digest_hex}{reason}"


if __name__ == "__main__":
    main()
