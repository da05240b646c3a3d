"""ABI call encoding and selector dispatch for contract code run by the host."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from .errors import Revert, UnknownSelector

if TYPE_CHECKING:
    from .host import CallContext


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class ExternalFunction:
    signature: str
    selector: bytes
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """Split ``name(type,type)`` into the name and its argument types."""
    name, sep, rest = signature.partition("(")
    if not sep or not rest.endswith(")") or not name:
        raise ValueError(f"Invalid function signature: {signature}")
    inner = rest[:-1].strip()
    if not inner:
        return name, []
    return name, [t.strip() for t in inner.split(",")]


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def encode_call(signature: str, *args: Any) -> bytes:
    """Build call data (selector + ABI-encoded arguments)."""
    _, types = parse_signature(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} takes {len(types)} arguments, got {len(args)}")
    return selector(signature) + encode(types, list(args))


def decode_result(types: Sequence[str], data: bytes) -> tuple:
    """ABI-decode ``data``; addresses come back checksummed."""
    values = decode(list(types), bytes(data))
    return tuple(_checksummed(t, v) for t, v in zip(types, values))


def _checksummed(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type.startswith("address["):
        element = abi_type[: abi_type.rindex("[")]
        return tuple(_checksummed(element, v) for v in value)
    return value


def event_topic(signature: str) -> bytes:
    return keccak(text=signature)


def external(signature: str, returns: Sequence[str] = ()) -> Callable:
    """Expose a method to host message calls under ``signature``.

    The method is invoked as ``method(ctx, *decoded_args)``; its return value
    is ABI-encoded with ``returns``.
    """
    _, inputs = parse_signature(signature)
    fn_abi = ExternalFunction(
        signature=signature,
        selector=selector(signature),
        inputs=tuple(inputs),
        outputs=tuple(returns),
    )

    def decorate(fn: Callable) -> Callable:
        fn.__external__ = fn_abi  # type: ignore[attr-defined]
        return fn

    return decorate


class Contract:
    """Code that can be attached to a host account.

    Subclasses declare their entry points with ``@external``; ``dispatch``
    routes call data by selector.
    """

    _dispatch_table: dict[bytes, tuple[str, ExternalFunction]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        table: dict[bytes, tuple[str, ExternalFunction]] = {}
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                fn_abi = getattr(attr, "__external__", None)
                if fn_abi is not None:
                    table[fn_abi.selector] = (name, fn_abi)
        cls._dispatch_table = table

    def receive(self, ctx: "CallContext") -> None:
        raise UnknownSelector(f"{type(self).__name__} does not accept plain value transfers")

    def dispatch(self, ctx: "CallContext", data: bytes) -> bytes:
        if not data:
            self.receive(ctx)
            return b""
        entry = self._dispatch_table.get(bytes(data[:4]))
        if entry is None:
            raise UnknownSelector(f"Unknown selector 0x{bytes(data[:4]).hex()}")
        name, fn_abi = entry
        try:
            args = decode_result(fn_abi.inputs, data[4:])
        except DecodingError as exc:
            raise Revert(f"Malformed call data for {fn_abi.signature}: {exc}") from exc
        result = getattr(self, name)(ctx, *args)
        if not fn_abi.outputs:
            return b""
        if len(fn_abi.outputs) == 1:
            result = (result,)
        return encode(list(fn_abi.outputs), list(result))
