"""Alpaca brokerage client wrapper for reading orders, positions and account.

Wraps the synchronous alpaca-py TradingClient. Every call runs in the default
thread executor under an explicit timeout so one unresponsive account cannot
stall a reconciliation tick. This client never places or modifies orders.
"""

import asyncio
import logging
from functools import partial
from typing import Any

from alpaca.common.exceptions import APIError
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import QueryOrderStatus
from alpaca.trading.requests import GetOrdersRequest
from requests.exceptions import RequestException

from tradeledger.config import settings
from tradeledger.exceptions import BrokerAPIError
from tradeledger.schemas.broker import BrokerAccount, BrokerOrder, BrokerPosition

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> dict:
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return dict(vars(obj))


def _order_from_sdk(raw: Any) -> BrokerOrder:
    data = _as_dict(raw)
    # alpaca-py exposes the order type as both `type` and `order_type`
    if data.get("type") is None:
        data["type"] = data.get("order_type") or "market"
    return BrokerOrder.model_validate(data)


class AlpacaClient:
    """Read-only wrapper around alpaca-py for one user's brokerage account."""

    def __init__(
        self,
        api_key_id: str,
        api_secret: str,
        paper: bool = True,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key_id = api_key_id
        self.api_secret = api_secret
        self.paper = paper
        self.base_url = base_url or (settings.alpaca_paper_url if paper else settings.alpaca_live_url)
        self.timeout = timeout if timeout is not None else settings.broker_timeout_seconds
        self._client: TradingClient | None = None

    def _ensure_client(self) -> TradingClient:
        """Lazily initialize the alpaca-py trading client."""
        if self._client is None:
            self._client = TradingClient(
                api_key=self.api_key_id,
                secret_key=self.api_secret,
                paper=self.paper,
                url_override=self.base_url,
            )
        return self._client

    async def _call(self, description: str, fn, *args, **kwargs):
        """Run a blocking SDK call in the executor with a timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, partial(fn, *args, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise BrokerAPIError(f"Alpaca {description} timed out after {self.timeout:.0f}s") from e
        except APIError as e:
            raise BrokerAPIError(f"Alpaca {description} failed: {e}") from e
        except RequestException as e:
            raise BrokerAPIError(f"Alpaca {description} network error: {e}") from e

    async def get_orders(self, status: str = "closed", limit: int = 10) -> list[BrokerOrder]:
        """Most recent orders with the given status, newest first."""
        client = self._ensure_client()
        request = GetOrdersRequest(status=QueryOrderStatus(status), limit=limit)
        raw_orders = await self._call("get_orders", client.get_orders, filter=request)

        orders = []
        for raw in raw_orders:
            try:
                orders.append(_order_from_sdk(raw))
            except ValueError as e:
                logger.warning(f"Skipping unparseable order from Alpaca: {e}")
        return orders

    async def get_account(self) -> BrokerAccount:
        client = self._ensure_client()
        raw = await self._call("get_account", client.get_account)
        return BrokerAccount.model_validate(_as_dict(raw))

    async def get_positions(self) -> list[BrokerPosition]:
        client = self._ensure_client()
        raw_positions = await self._call("get_all_positions", client.get_all_positions)
        return [BrokerPosition.model_validate(_as_dict(p)) for p in raw_positions]
