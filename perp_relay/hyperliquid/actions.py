"""Hyperliquid exchange actions and signed envelopes.

Typed Python counterparts of the JSON payloads the exchange ``/exchange``
endpoint accepts. Each type converts to and from the wire form.

The wire form of an order action is hashed with msgpack before signing,
so :py:meth:`OrderIntent.to_wire` must emit the keys in the exact order
the exchange uses: ``a, b, p, s, r, t[, c]``.

- `Exchange endpoint <https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/exchange-endpoint>`__
"""

import enum
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from eth_typing import HexAddress
from eth_utils import is_address

from perp_relay.errors import ValidationError
from perp_relay.hyperliquid.constants import (
    MAX_AGENT_NAME_LENGTH,
    MAX_UINT64,
    MAX_WIRE_DECIMALS,
    WIRE_SIGNATURE_PREFIX,
    ActionKind,
    HyperliquidChain,
    get_signature_chain_id,
)
from perp_relay.hyperliquid.signature import SignaturePayload

#: Unsigned decimal number as a string, e.g. ``"0.001"`` or ``"65000"``
_DECIMAL_STRING = re.compile(r"^\d+(\.\d+)?$")

#: Client order id, 16 bytes as 0x-hex
_CLOID = re.compile(r"^0x[0-9a-fA-F]{32}$")


def decimal_to_wire(value: Decimal | int | str) -> str:
    """Format a price or size for the wire.

    - Never goes through binary floats, ``float`` input is rejected

    - Trailing zeros are stripped, no rounding is done.
      Rounding to the tick size is the caller's job,
      see :py:meth:`perp_relay.hyperliquid.exchange.AssetInfo.round_price`.

    :raise ValidationError:
        Float input, negative value or more than 8 decimals
    """
    if isinstance(value, (float, bool)):
        raise ValidationError(f"Use Decimal or str for prices and sizes, got {type(value).__name__}: {value}")

    try:
        d = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValidationError(f"Not a decimal number: {value!r}") from e

    if not d.is_finite() or d < 0:
        raise ValidationError(f"Price or size must be a non-negative finite number: {value}")

    if d == 0:
        return "0"

    normalised = d.normalize()
    if -normalised.as_tuple().exponent > MAX_WIRE_DECIMALS:
        raise ValidationError(f"More than {MAX_WIRE_DECIMALS} decimals: {value}")

    return format(normalised, "f")


def _require_decimal_string(value, name: str) -> str:
    """Validate a client decimal string and return its canonical wire form.

    Clients format with fixed decimals, e.g. ``"65000.00000"``.
    The exchange hashes ``"65000"``, so the padded form would sign
    a different action.
    """
    if not isinstance(value, str) or not _DECIMAL_STRING.match(value):
        raise ValidationError(f"{name} must be a decimal string, got {value!r}")
    return decimal_to_wire(value)


def _require_bool(value, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean, got {value!r}")
    return value


def require_uint64(value, name: str) -> int:
    """Nonces, timestamps and asset indexes are encoded as 8-byte unsigned integers.

    :raise ValidationError:
        Not an integer or out of the uint64 range
    """
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_UINT64:
        raise ValidationError(f"{name} must be an integer between 0 and 2**64 - 1, got {value!r}")
    return value


def _require_address(value, name: str) -> HexAddress:
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"{name} must be an address, got {value!r}")
    return HexAddress(value)


class TimeInForce(enum.Enum):
    """Limit order time in force."""

    #: Good til cancelled
    gtc = "Gtc"

    #: Immediate or cancel
    ioc = "Ioc"

    #: Add liquidity only (post only)
    alo = "Alo"


class TpSl(enum.Enum):
    take_profit = "tp"
    stop_loss = "sl"


class Grouping(enum.Enum):
    """How the orders of one action relate to each other."""

    na = "na"
    normal_tpsl = "normalTpsl"
    position_tpsl = "positionTpsl"


@dataclass(slots=True, frozen=True)
class LimitOrderType:
    tif: TimeInForce = TimeInForce.gtc

    def to_wire(self) -> dict:
        return {"limit": {"tif": self.tif.value}}


@dataclass(slots=True, frozen=True)
class TriggerOrderType:
    """Take profit or stop loss order."""

    trigger_price: str
    is_market: bool
    tpsl: TpSl

    def to_wire(self) -> dict:
        return {
            "trigger": {
                "isMarket": self.is_market,
                "triggerPx": self.trigger_price,
                "tpsl": self.tpsl.value,
            }
        }


OrderType = LimitOrderType | TriggerOrderType


def parse_order_type(data) -> OrderType:
    """Parse ``{"limit": ...}`` or ``{"trigger": ...}``."""
    if not isinstance(data, dict) or len(data) != 1:
        raise ValidationError(f"Order type must have exactly one of limit or trigger: {data!r}")

    if "limit" in data:
        limit = data["limit"]
        try:
            return LimitOrderType(tif=TimeInForce(limit["tif"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Bad limit order type: {limit!r}") from e

    if "trigger" in data:
        trigger = data["trigger"]
        if not isinstance(trigger, dict):
            raise ValidationError(f"Bad trigger order type: {trigger!r}")
        try:
            tpsl = TpSl(trigger.get("tpsl"))
        except ValueError as e:
            raise ValidationError(f"Bad tpsl: {trigger.get('tpsl')!r}") from e
        return TriggerOrderType(
            trigger_price=_require_decimal_string(trigger.get("triggerPx"), "triggerPx"),
            is_market=_require_bool(trigger.get("isMarket"), "isMarket"),
            tpsl=tpsl,
        )

    raise ValidationError(f"Unknown order type: {data!r}")


@dataclass(slots=True, frozen=True)
class OrderIntent:
    """One order of an order action.

    Prices and sizes are decimal strings in their canonical form,
    without trailing zeros, see :py:func:`decimal_to_wire`.
    """

    #: Index of the perp in the exchange ``meta`` universe
    asset_index: int

    is_buy: bool

    #: Decimal string, in base asset units
    size: str

    #: Decimal string, limit price
    price: str

    reduce_only: bool = False

    order_type: OrderType = field(default_factory=LimitOrderType)

    #: Optional client order id, 16 bytes as 0x-hex
    cloid: str | None = None

    def to_wire(self) -> dict:
        wire = {
            "a": self.asset_index,
            "b": self.is_buy,
            "p": self.price,
            "s": self.size,
            "r": self.reduce_only,
            "t": self.order_type.to_wire(),
        }
        if self.cloid is not None:
            wire["c"] = self.cloid
        return wire

    @classmethod
    def create(
        cls,
        asset_index: int,
        is_buy: bool,
        size: Decimal | str,
        price: Decimal | str,
        reduce_only: bool = False,
        order_type: OrderType | None = None,
        cloid: str | None = None,
    ) -> "OrderIntent":
        """Build an order from Python values, formatting decimals for the wire."""
        if cloid is not None and not _CLOID.match(cloid):
            raise ValidationError(f"cloid must be 16 bytes as 0x-hex, got {cloid!r}")

        return cls(
            asset_index=require_uint64(asset_index, "asset_index"),
            is_buy=_require_bool(is_buy, "is_buy"),
            size=decimal_to_wire(size),
            price=decimal_to_wire(price),
            reduce_only=_require_bool(reduce_only, "reduce_only"),
            order_type=order_type or LimitOrderType(),
            cloid=cloid,
        )

    @classmethod
    def from_wire(cls, data) -> "OrderIntent":
        if not isinstance(data, dict):
            raise ValidationError(f"Order must be an object, got {data!r}")

        missing = {"a", "b", "p", "s", "r", "t"} - data.keys()
        if missing:
            raise ValidationError(f"Order is missing fields: {', '.join(sorted(missing))}")

        cloid = data.get("c")
        if cloid is not None and (not isinstance(cloid, str) or not _CLOID.match(cloid)):
            raise ValidationError(f"cloid must be 16 bytes as 0x-hex, got {cloid!r}")

        return cls(
            asset_index=require_uint64(data["a"], "a"),
            is_buy=_require_bool(data["b"], "b"),
            price=_require_decimal_string(data["p"], "p"),
            size=_require_decimal_string(data["s"], "s"),
            reduce_only=_require_bool(data["r"], "r"),
            order_type=parse_order_type(data["t"]),
            cloid=cloid,
        )


@dataclass(slots=True, frozen=True)
class OrderAction:
    """Place one or more orders. Signed as an L1 action."""

    orders: tuple[OrderIntent, ...]
    grouping: Grouping = Grouping.na

    kind = ActionKind.order

    def __post_init__(self):
        if not self.orders:
            raise ValidationError("Order action needs at least one order")

    def to_wire(self) -> dict:
        return {
            "type": ActionKind.order.value,
            "orders": [o.to_wire() for o in self.orders],
            "grouping": self.grouping.value,
        }

    @classmethod
    def from_wire(cls, data: dict) -> "OrderAction":
        orders = data.get("orders")
        if not isinstance(orders, list):
            raise ValidationError("Order action needs an orders list")
        try:
            grouping = Grouping(data.get("grouping", Grouping.na.value))
        except ValueError as e:
            raise ValidationError(f"Unknown grouping: {data.get('grouping')!r}") from e
        return cls(
            orders=tuple(OrderIntent.from_wire(o) for o in orders),
            grouping=grouping,
        )


@dataclass(slots=True, frozen=True)
class AgentApprovalAction:
    """Authorise an API wallet (agent) to trade for the signer.

    Signed by the owner as a user-signed action, see
    :py:func:`perp_relay.hyperliquid.encoding.build_approve_agent_typed_data`.
    """

    hyperliquid_chain: HyperliquidChain

    #: Chain id the signature is made against, e.g. 42161
    signature_chain_id: int

    agent_address: HexAddress

    agent_name: str

    nonce: int

    kind = ActionKind.approve_agent

    def __post_init__(self):
        _require_address(self.agent_address, "agentAddress")
        require_uint64(self.nonce, "nonce")
        if not isinstance(self.agent_name, str) or not (1 <= len(self.agent_name) <= MAX_AGENT_NAME_LENGTH):
            raise ValidationError(f"Agent name must be 1-{MAX_AGENT_NAME_LENGTH} characters, got {self.agent_name!r}")

    @property
    def is_mainnet(self) -> bool:
        return self.hyperliquid_chain == HyperliquidChain.mainnet

    @classmethod
    def create(cls, agent_address: HexAddress, agent_name: str, nonce: int, is_mainnet: bool) -> "AgentApprovalAction":
        return cls(
            hyperliquid_chain=HyperliquidChain.mainnet if is_mainnet else HyperliquidChain.testnet,
            signature_chain_id=get_signature_chain_id(is_mainnet),
            agent_address=agent_address,
            agent_name=agent_name,
            nonce=nonce,
        )

    def to_wire(self) -> dict:
        return {
            "type": ActionKind.approve_agent.value,
            "hyperliquidChain": self.hyperliquid_chain.value,
            "signatureChainId": hex(self.signature_chain_id),
            "agentAddress": self.agent_address,
            "agentName": self.agent_name,
            "nonce": self.nonce,
        }

    @classmethod
    def from_wire(cls, data: dict) -> "AgentApprovalAction":
        try:
            chain = HyperliquidChain(data.get("hyperliquidChain"))
        except ValueError as e:
            raise ValidationError(f"Unknown hyperliquidChain: {data.get('hyperliquidChain')!r}") from e

        signature_chain_id = data.get("signatureChainId")
        if not isinstance(signature_chain_id, str):
            raise ValidationError(f"signatureChainId must be a hex string, got {signature_chain_id!r}")
        try:
            chain_id = int(signature_chain_id, 16)
        except ValueError as e:
            raise ValidationError(f"signatureChainId is not hex: {signature_chain_id}") from e

        return cls(
            hyperliquid_chain=chain,
            signature_chain_id=chain_id,
            agent_address=_require_address(data.get("agentAddress"), "agentAddress"),
            agent_name=data.get("agentName"),
            nonce=require_uint64(data.get("nonce"), "nonce"),
        )


Action = OrderAction | AgentApprovalAction


def parse_action(data) -> Action:
    """Parse any supported action from its wire form.

    :raise ValidationError:
        Unknown type or malformed fields
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Action must be an object, got {type(data).__name__}")

    action_type = data.get("type")
    if action_type == ActionKind.order.value:
        return OrderAction.from_wire(data)
    elif action_type == ActionKind.approve_agent.value:
        return AgentApprovalAction.from_wire(data)
    raise ValidationError(f"Unsupported action type: {action_type!r}")


@dataclass(slots=True, frozen=True)
class SignedEnvelope:
    """Signed action, as POSTed to the exchange ``/exchange`` endpoint."""

    action: Action

    #: Millisecond timestamp, unique per signer
    nonce: int

    signature: SignaturePayload

    #: Trade on behalf of this vault or subaccount
    vault_address: HexAddress | None = None

    #: Millisecond timestamp after which the exchange drops the action
    expires_after: int | None = None

    @property
    def kind(self) -> ActionKind:
        return self.action.kind

    def to_wire(self) -> dict:
        return {
            "action": self.action.to_wire(),
            "nonce": self.nonce,
            "signature": self.signature.to_wire(prefixed=WIRE_SIGNATURE_PREFIX[self.kind]),
            "vaultAddress": self.vault_address,
            "expiresAfter": self.expires_after,
        }

    @classmethod
    def from_wire(cls, data) -> "SignedEnvelope":
        if not isinstance(data, dict):
            raise ValidationError(f"Signed action must be an object, got {type(data).__name__}")

        vault_address = data.get("vaultAddress")
        if vault_address is not None:
            vault_address = _require_address(vault_address, "vaultAddress")

        expires_after = data.get("expiresAfter")
        if expires_after is not None:
            expires_after = require_uint64(expires_after, "expiresAfter")

        return cls(
            action=parse_action(data.get("action")),
            nonce=require_uint64(data.get("nonce"), "nonce"),
            signature=SignaturePayload.from_wire(data.get("signature")),
            vault_address=vault_address,
            expires_after=expires_after,
        )
