"""Minimal fungible asset for fee settlement and batch sub-calls."""

from __future__ import annotations

from typing import Optional

from eth_utils import to_checksum_address

from .abi import ZERO_ADDRESS, Contract, external
from .errors import InsufficientBalance, Revert
from .host import CallContext


TRANSFER_EVENT = "Transfer(address,address,uint256)"


class Token(Contract):
    """ERC-20 style balances kept in host storage; ``transfer`` returns true or reverts."""

    def __init__(self, name: str, symbol: str, decimals: int = 18, issuer: Optional[str] = None):
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.issuer = to_checksum_address(issuer) if issuer else None

    @external("name()", returns=["string"])
    def get_name(self, ctx: CallContext) -> str:
        return self.name

    @external("symbol()", returns=["string"])
    def get_symbol(self, ctx: CallContext) -> str:
        return self.symbol

    @external("decimals()", returns=["uint8"])
    def get_decimals(self, ctx: CallContext) -> int:
        return self.decimals

    @external("totalSupply()", returns=["uint256"])
    def total_supply(self, ctx: CallContext) -> int:
        return ctx.sload("totalSupply", 0)

    @external("balanceOf(address)", returns=["uint256"])
    def balance_of(self, ctx: CallContext, account: str) -> int:
        return ctx.sload(("balance", account), 0)

    @external("transfer(address,uint256)", returns=["bool"])
    def transfer(self, ctx: CallContext, to: str, amount: int) -> bool:
        if to == ZERO_ADDRESS:
            raise Revert("Transfer to the zero address")
        balance = ctx.sload(("balance", ctx.sender), 0)
        if amount > balance:
            raise InsufficientBalance(ctx.sender, balance, amount)
        ctx.sstore(("balance", ctx.sender), balance - amount)
        ctx.sstore(("balance", to), ctx.sload(("balance", to), 0) + amount)
        ctx.emit(TRANSFER_EVENT, **{"from": ctx.sender, "to": to, "value": amount})
        return True

    @external("mint(address,uint256)")
    def mint(self, ctx: CallContext, to: str, amount: int) -> None:
        if self.issuer is None or ctx.sender != self.issuer:
            raise Revert(f"{ctx.sender} may not mint {self.symbol}")
        ctx.sstore("totalSupply", ctx.sload("totalSupply", 0) + amount)
        ctx.sstore(("balance", to), ctx.sload(("balance", to), 0) + amount)
        ctx.emit(TRANSFER_EVENT, **{"from": ZERO_ADDRESS, "to": to, "value": amount})
