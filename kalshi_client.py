"""
Kalshi API client with RSA-PSS request signing.

Exposes only what the signal engine needs: market lists per series, orderbook
best asks, limit orders, two-legged positions, balance, fills and resting orders.
"""

import base64
import time
from typing import Any, Dict, List, Optional

import httpx
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from loguru import logger

from config import KalshiConfig

API_PREFIX = "/trade-api/v2"


def parse_orderbook(data: Dict[str, Any]) -> Dict[str, Optional[int]]:
    """
    Derive asks from the bid-only orderbook.

    Kalshi books hold YES bids and NO bids; buying YES lifts the best NO bid,
    so yes_ask = 100 - best_no_bid and no_ask = 100 - best_yes_bid.
    """
    book = data.get("orderbook") or {}
    yes_levels = book.get("yes") or []
    no_levels = book.get("no") or []

    best_yes_bid = max((lvl[0] for lvl in yes_levels), default=None)
    best_no_bid = max((lvl[0] for lvl in no_levels), default=None)
    yes_bid_depth = sum(lvl[1] for lvl in yes_levels)
    no_bid_depth = sum(lvl[1] for lvl in no_levels)

    return {
        "yes_bid": best_yes_bid,
        "no_bid": best_no_bid,
        "yes_ask": 100 - best_no_bid if best_no_bid is not None else None,
        "no_ask": 100 - best_yes_bid if best_yes_bid is not None else None,
        "yes_bid_depth": yes_bid_depth,
        "no_bid_depth": no_bid_depth,
    }


def parse_positions(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Normalize market positions into independent YES and NO contract counts.

    A `no_position` field, when present, is authoritative for the NO leg;
    otherwise a negative `position` is read as NO contracts. The two legs
    are never netted against each other.
    """
    positions = []
    for raw in data.get("market_positions", []) or []:
        position = raw.get("position", 0) or 0
        if "no_position" in raw:
            yes_contracts = max(position, 0)
            no_contracts = max(raw.get("no_position") or 0, 0)
        else:
            yes_contracts = max(position, 0)
            no_contracts = max(-position, 0)
        if yes_contracts == 0 and no_contracts == 0:
            continue
        positions.append({
            "ticker": raw.get("ticker", ""),
            "yes_contracts": yes_contracts,
            "no_contracts": no_contracts,
            "total_traded": raw.get("total_traded", 0),
            "market_exposure": raw.get("market_exposure", 0),
        })
    return positions


class KalshiClient:
    """Kalshi API client for the signal engine."""

    def __init__(
        self,
        config: KalshiConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.base_url = config.base_url
        self.api_key = config.api_key
        self.private_key = config.private_key
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None
        self._loaded_key = None
        self._transport = transport

    async def login(self):
        """Open the HTTP session."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
            logger.info(f"Connected to Kalshi API at {self.base_url}")

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self.client is None:
            await self.login()
        full_path = f"{API_PREFIX}{path}"
        headers = await self._get_headers(method, full_path)
        response = await self.client.request(
            method, full_path, headers=headers, params=params, json=json
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def get_markets(
        self, series_ticker: str, status: str = "open", limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Get markets in a series, following the pagination cursor."""
        markets: List[Dict[str, Any]] = []
        cursor = None
        try:
            while True:
                params: Dict[str, Any] = {
                    "series_ticker": series_ticker,
                    "status": status,
                    "limit": min(limit, 1000),
                }
                if cursor:
                    params["cursor"] = cursor
                data = await self._request("GET", "/markets", params=params)
                page = data.get("markets", []) or []
                markets.extend(page)
                cursor = data.get("cursor")
                if not page or not cursor or len(markets) >= limit:
                    break
            logger.debug(f"Retrieved {len(markets)} {series_ticker} markets")
            return markets[:limit]
        except Exception as e:
            logger.error(f"Error getting markets for {series_ticker}: {e}")
            return []

    async def get_orderbook(self, ticker: str) -> Optional[Dict[str, Optional[int]]]:
        """Best asks and bid depth for a market, or None when unavailable."""
        try:
            data = await self._request("GET", f"/markets/{ticker}/orderbook")
            return parse_orderbook(data)
        except Exception as e:
            logger.warning(f"Error getting orderbook for {ticker}: {e}")
            return None

    async def place_order(
        self,
        ticker: str,
        side: str,
        action: str,
        count: int,
        price: int,
        client_order_id: str,
    ) -> Dict[str, Any]:
        """Submit a limit order. Never retried here."""
        order_data = {
            "ticker": ticker,
            "side": side,
            "action": action,
            "type": "limit",
            "count": count,
            "client_order_id": client_order_id,
            f"{side}_price": price,
        }

        logger.info(f"Placing order: {action.upper()} {count} {side.upper()} {ticker} @ {price}c")
        try:
            result = await self._request("POST", "/portfolio/orders", json=order_data)
            order = result.get("order", {}) or {}
            return {
                "success": True,
                "order_id": order.get("order_id", ""),
                "status": order.get("status", ""),
                "client_order_id": client_order_id,
            }
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:300] if e.response is not None else ""
            logger.error(f"Order rejected for {ticker}: {e.response.status_code} {detail}")
            return {"success": False, "error": f"HTTP {e.response.status_code}: {detail}"}
        except Exception as e:
            logger.error(f"Error placing order: {e}")
            return {"success": False, "error": str(e)}

    async def get_positions(self) -> List[Dict[str, Any]]:
        """Live positions with YES and NO legs reported separately."""
        try:
            data = await self._request("GET", "/portfolio/positions", params={"limit": 200})
            positions = parse_positions(data)
            logger.debug(f"Retrieved {len(positions)} market positions")
            return positions
        except Exception as e:
            logger.error(f"Error getting positions: {e}")
            return []

    async def get_balance(self) -> Optional[Dict[str, float]]:
        """Cash and positions value in dollars."""
        try:
            data = await self._request("GET", "/portfolio/balance")
            return {
                "cash": (data.get("balance", 0) or 0) / 100,
                "positions_value": (data.get("portfolio_value", 0) or 0) / 100,
            }
        except Exception as e:
            logger.error(f"Error getting balance: {e}")
            return None

    async def get_fills(self, ticker: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            params: Dict[str, Any] = {"limit": limit}
            if ticker:
                params["ticker"] = ticker
            data = await self._request("GET", "/portfolio/fills", params=params)
            return data.get("fills", []) or []
        except Exception as e:
            logger.error(f"Error getting fills: {e}")
            return []

    async def get_resting_orders(self) -> Optional[List[Dict[str, Any]]]:
        """Resting orders, or None when the query failed (callers must not assume none)."""
        try:
            data = await self._request("GET", "/portfolio/orders", params={"status": "resting"})
            return data.get("orders", []) or []
        except Exception as e:
            logger.error(f"Error getting resting orders: {e}")
            return None

    async def _get_headers(self, method: str, path: str) -> Dict[str, str]:
        """Generate headers with RSA signature."""
        timestamp = str(int(time.time() * 1000))
        message = f"{timestamp}{method}{path}"
        signature = self._sign_message(message)

        return {
            "KALSHI-ACCESS-KEY": self.api_key,
            "KALSHI-ACCESS-TIMESTAMP": timestamp,
            "KALSHI-ACCESS-SIGNATURE": signature,
            "Content-Type": "application/json",
        }

    def _sign_message(self, message: str) -> str:
        """Sign a message using RSA-PSS with SHA256."""
        try:
            if self._loaded_key is None:
                self._loaded_key = serialization.load_pem_private_key(
                    self.private_key.encode(),
                    password=None,
                    backend=default_backend(),
                )

            signature = self._loaded_key.sign(
                message.encode(),
                padding.PSS(
                    mgf=padding.MGF1(hashes.SHA256()),
                    salt_length=padding.PSS.DIGEST_LENGTH,
                ),
                hashes.SHA256(),
            )
            return base64.b64encode(signature).decode()

        except Exception as e:
            logger.error(f"Error signing message: {e}")
            raise

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None
