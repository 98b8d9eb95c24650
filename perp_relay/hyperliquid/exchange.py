"""Hyperliquid exchange gateway.

The only place that talks to the exchange HTTP API.

- :py:meth:`HyperliquidExchangeClient.submit` forwards a signed envelope to ``/exchange``
  and turns error payloads to :py:class:`~perp_relay.errors.ExchangeRejected`.
  Submissions are never retried, as exchange actions are not idempotent.

- :py:meth:`HyperliquidExchangeClient.fetch_market_info` reads market metadata from ``/info``.
  :py:class:`AssetDirectory` built from it checks orders against the asset precision.

Responses of ``/exchange`` are::

    {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": 77738308}}]}}}
    {"status": "err", "response": "Insufficient margin to place order."}

The client does not round prices or sizes. Callers must send prices
on the tick size of the asset, see :py:meth:`AssetInfo.round_price`
and :py:meth:`AssetDirectory.check_order`.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any

from requests import Session
from requests.exceptions import JSONDecodeError

from perp_relay.errors import ExchangeRejected, ValidationError
from perp_relay.hyperliquid.actions import OrderIntent, SignedEnvelope, TriggerOrderType
from perp_relay.hyperliquid.constants import (
    HYPERLIQUID_API_URL,
    MAX_PERP_DECIMALS,
    MAX_PRICE_SIGNIFICANT_FIGURES,
)
from perp_relay.hyperliquid.session import create_exchange_session, create_hyperliquid_session

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OrderStatus:
    """Status of one order in an order action response."""

    #: ``resting``, ``filled``, ``error`` or whatever the exchange returns
    kind: str

    #: Exchange order id, if the order was accepted
    order_id: int | None = None

    #: Error text, for ``error`` statuses
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.kind == "error"

    @classmethod
    def parse(cls, raw) -> "OrderStatus":
        # Statuses are either "success" strings or single-key objects
        if isinstance(raw, str):
            return cls(kind=raw)

        if isinstance(raw, dict) and len(raw) == 1:
            kind, value = next(iter(raw.items()))
            if kind == "error":
                return cls(kind=kind, error=str(value))
            order_id = value.get("oid") if isinstance(value, dict) else None
            return cls(kind=kind, order_id=order_id)

        return cls(kind="unknown", error=repr(raw))


@dataclass(slots=True, frozen=True)
class ExchangeOk:
    """Exchange accepted the action.

    Individual orders of the action may still have failed,
    see :py:attr:`order_statuses`.
    """

    #: The ``response`` field as is
    payload: Any

    @property
    def order_statuses(self) -> list[OrderStatus]:
        if not isinstance(self.payload, dict):
            return []
        data = self.payload.get("data")
        if not isinstance(data, dict):
            return []
        return [OrderStatus.parse(s) for s in data.get("statuses", [])]

    def to_wire(self) -> dict:
        return {"status": "ok", "response": self.payload}


@dataclass(slots=True, frozen=True)
class ExchangeErr:
    """Exchange rejected the action."""

    #: The exchange's own message text
    reason: str


ExchangeResponse = ExchangeOk | ExchangeErr


def parse_exchange_response(data: Any) -> ExchangeResponse:
    """Parse the ``/exchange`` response body to a typed result."""
    if not isinstance(data, dict) or "status" not in data:
        return ExchangeErr(reason=f"Unexpected exchange response: {data!r}")

    response = data.get("response")
    if data["status"] == "ok":
        return ExchangeOk(payload=response)

    if isinstance(response, str):
        return ExchangeErr(reason=response)
    return ExchangeErr(reason=repr(response))


@dataclass(slots=True, frozen=True)
class AssetInfo:
    """Perp market metadata from the ``meta`` universe."""

    #: Asset index used in order actions
    index: int

    #: Coin symbol, e.g. ``BTC``
    name: str

    #: Size decimals
    sz_decimals: int

    max_leverage: int | None = None

    def round_size(self, size: Decimal) -> Decimal:
        """Round size down to the size decimals of the asset."""
        return size.quantize(Decimal(1).scaleb(-self.sz_decimals), rounding=ROUND_DOWN)

    def round_price(self, price: Decimal) -> Decimal:
        """Round a perp price to what the exchange accepts.

        - Integer prices are always accepted
        - Otherwise at most 5 significant figures
        - and at most ``6 - szDecimals`` decimals
        """
        if price == price.to_integral_value():
            return price.quantize(Decimal(1))

        adjusted = price.adjusted()
        significant_exponent = adjusted - MAX_PRICE_SIGNIFICANT_FIGURES + 1
        decimals_exponent = -(MAX_PERP_DECIMALS - self.sz_decimals)
        exponent = max(significant_exponent, decimals_exponent)
        return price.quantize(Decimal(1).scaleb(exponent), rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class AssetDirectory:
    """Asset index lookup built from the exchange metadata.

    Replaces static index-to-symbol tables, which go stale every time
    the exchange lists a new perp.
    """

    assets: dict[int, AssetInfo] = field(default_factory=dict)

    def __len__(self):
        return len(self.assets)

    @classmethod
    def from_meta(cls, meta: dict) -> "AssetDirectory":
        """Parse ``{"universe": [{"name": "BTC", "szDecimals": 5, "maxLeverage": 40}, ...]}``."""
        assets = {}
        for index, entry in enumerate(meta.get("universe", [])):
            assets[index] = AssetInfo(
                index=index,
                name=entry["name"],
                sz_decimals=int(entry["szDecimals"]),
                max_leverage=entry.get("maxLeverage"),
            )
        return cls(assets=assets)

    def get(self, index: int) -> AssetInfo:
        """:raise ValidationError: Unknown asset index"""
        try:
            return self.assets[index]
        except KeyError as e:
            raise ValidationError(f"Unknown asset index {index}") from e

    def check_order(self, order: OrderIntent) -> AssetInfo:
        """Check an order against the precision of its asset.

        The exchange rejects prices off the tick and sizes with too many decimals.

        :raise ValidationError:
            Unknown asset index, or price, trigger price or size the exchange would reject
        """
        asset = self.get(order.asset_index)

        prices = [("Price", order.price)]
        if isinstance(order.order_type, TriggerOrderType):
            prices.append(("Trigger price", order.order_type.trigger_price))

        for label, value in prices:
            price = Decimal(value)
            accepted = asset.round_price(price)
            if accepted != price:
                raise ValidationError(f"{label} {value} is not on the {asset.name} tick, nearest accepted price is {accepted}")

        size = Decimal(order.size)
        if asset.round_size(size) != size:
            raise ValidationError(f"Size {order.size} has more than {asset.sz_decimals} decimals for {asset.name}")

        logger.info("Order: %s %s %s @ %s", "buy" if order.is_buy else "sell", order.size, asset.name, order.price)
        return asset


class HyperliquidExchangeClient:
    """Stateless gateway to the Hyperliquid HTTP API.

    Holds no signing material. Signed envelopes come in,
    exchange responses go out.

    :param api_url:
        Base URL, e.g. :py:data:`~perp_relay.hyperliquid.constants.HYPERLIQUID_API_URL`

    :param session:
        Session for ``/exchange``. Must not retry POST.
        See :py:func:`~perp_relay.hyperliquid.session.create_exchange_session`.

    :param info_session:
        Session for ``/info``.
    """

    def __init__(
        self,
        api_url: str = HYPERLIQUID_API_URL,
        session: Session | None = None,
        info_session: Session | None = None,
        timeout: float = 10.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.session = session or create_exchange_session()
        self.info_session = info_session or create_hyperliquid_session()
        self.timeout = timeout

    def __repr__(self):
        return f"<HyperliquidExchangeClient {self.api_url}>"

    def submit(self, envelope: SignedEnvelope) -> ExchangeOk:
        """Forward a signed action.

        :raise ExchangeRejected:
            The exchange returned an error payload or an HTTP error.
            The reason is the exchange's text as is.
        """
        payload = envelope.to_wire()
        url = f"{self.api_url}/exchange"

        logger.info("Submitting %s action, nonce %d, vault %s", envelope.kind.value, envelope.nonce, envelope.vault_address)

        response = self.session.post(url, json=payload, timeout=self.timeout)

        if not response.ok:
            logger.error("Exchange HTTP %d: %s", response.status_code, response.text[:500])
            raise ExchangeRejected(response.text or response.reason, status_code=response.status_code)

        try:
            data = response.json()
        except JSONDecodeError as e:
            raise ExchangeRejected(f"Exchange returned non-JSON response: {response.text[:200]}", status_code=response.status_code) from e

        result = parse_exchange_response(data)
        if isinstance(result, ExchangeErr):
            logger.error("Exchange rejected %s action nonce %d: %s", envelope.kind.value, envelope.nonce, result.reason)
            raise ExchangeRejected(result.reason, status_code=response.status_code)

        for status in result.order_statuses:
            if status.is_error:
                logger.warning("Order error in accepted action nonce %d: %s", envelope.nonce, status.error)

        logger.info("Exchange accepted %s action nonce %d", envelope.kind.value, envelope.nonce)
        return result

    def _post_info(self, body: dict) -> Any:
        response = self.info_session.post(f"{self.api_url}/info", json=body, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def fetch_market_info(self) -> Any:
        """Meta and asset contexts of all perps, as returned by the exchange.

        ``[{"universe": [...]}, [{"funding": ..., "markPx": ...}, ...]]``
        """
        return self._post_info({"type": "metaAndAssetCtxs"})
