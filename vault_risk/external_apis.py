import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog

from .error_handling import DecodeError, ExternalAPIError, ResilientCaller
from .models import EmergencyAlert, PriceQuote
from .risk_engine import YieldInputs, estimate_staking_apy

logger = structlog.get_logger()


class BaseAPIClient:
    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
                transport=self.transport,
            )

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Single HTTP round trip; retries are the caller's concern."""
        if not self.client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        try:
            response = await self.client.request(method, endpoint, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("HTTP error from external API", method=method, endpoint=endpoint,
                         status_code=e.response.status_code)
            raise ExternalAPIError(f"API request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Request error from external API", method=method, endpoint=endpoint, error=str(e))
            raise ExternalAPIError(f"Network error: {str(e)}") from e

        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Invalid JSON from {endpoint}") from e


# ---------------------------------------------------------------------- price providers

class CoinGeckoClient(BaseAPIClient):
    name = "coingecko"

    def __init__(self, base_url: str, api_key: str = "", **kwargs):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        super().__init__(base_url, headers, **kwargs)

    async def get_quotes(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        params = {
            "ids": ",".join(asset_ids),
            "vs_currencies": "usd",
            "include_last_updated_at": "true",
        }
        data = await self._make_request("GET", "/simple/price", params=params)

        quotes = {}
        for asset_id in asset_ids:
            entry = data.get(asset_id) or {}
            price = entry.get("usd")
            if price is None:
                continue
            quotes[asset_id] = PriceQuote(
                symbol=asset_id,
                price_usd=float(price),
                source=self.name,
                last_updated=int(entry.get("last_updated_at") or time.time()),
            )
        return quotes


class DefiLlamaClient(BaseAPIClient):
    name = "defillama"

    def __init__(self, base_url: str, **kwargs):
        super().__init__(base_url, **kwargs)

    async def get_quotes(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        coins = ",".join(f"coingecko:{asset_id}" for asset_id in asset_ids)
        data = await self._make_request("GET", f"/prices/current/{coins}")

        quotes = {}
        for asset_id in asset_ids:
            entry = data.get("coins", {}).get(f"coingecko:{asset_id}")
            if not entry or entry.get("price") is None:
                continue
            quotes[asset_id] = PriceQuote(
                symbol=asset_id,
                price_usd=float(entry["price"]),
                source=self.name,
                last_updated=int(entry.get("timestamp") or time.time()),
            )
        return quotes


class PriceSourceAdapter:
    """Ordered-fallback price lookup with last-known-good degradation.

    Providers are tried in order per asset; failed, non-positive and stale
    quotes are skipped. An asset no provider could price falls back to its last
    good quote marked ``stale``, or None if it was never priced.
    """

    def __init__(
        self,
        providers: Sequence,
        caller: ResilientCaller,
        staleness_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.providers = list(providers)
        self.caller = caller
        self.staleness_seconds = staleness_seconds
        self.clock = clock
        self.last_good: Dict[str, PriceQuote] = {}
        self.latest: Dict[str, Optional[PriceQuote]] = {}
        self.last_refresh_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, quote: PriceQuote, now: float) -> bool:
        return quote.price_usd > 0 and now - quote.last_updated <= self.staleness_seconds

    async def refresh(self, asset_ids: Sequence[str]) -> Dict[str, Optional[PriceQuote]]:
        now = self.clock()
        remaining = list(dict.fromkeys(asset_ids))
        results: Dict[str, Optional[PriceQuote]] = {}

        for provider in self.providers:
            if not remaining:
                break
            wanted = list(remaining)
            outcome = await self.caller.call(
                f"price:{provider.name}", lambda: provider.get_quotes(wanted), fallback={}
            )
            for asset_id in wanted:
                quote = (outcome.value or {}).get(asset_id)
                if quote is None:
                    continue
                if not self._is_fresh(quote, now):
                    logger.warning("Skipping stale quote", asset=asset_id, source=quote.source,
                                   last_updated=quote.last_updated)
                    continue
                results[asset_id] = quote
                self.last_good[asset_id] = quote
                remaining.remove(asset_id)

        for asset_id in remaining:
            previous = self.last_good.get(asset_id)
            results[asset_id] = previous.model_copy(update={"stale": True}) if previous else None
            logger.warning("No fresh price available", asset=asset_id,
                           fallback=previous.source if previous else None)

        self.latest.update(results)
        self.last_refresh_at = now
        return results

    async def current(self, asset_ids: Sequence[str], max_age: float = 0) -> Dict[str, Optional[PriceQuote]]:
        """Latest completed prices, refreshing when older than ``max_age``.

        Concurrent callers wait on the in-flight refresh instead of starting another.
        """
        async with self._lock:
            now = self.clock()
            fresh_enough = (
                self.last_refresh_at is not None
                and now - self.last_refresh_at <= max_age
                and all(asset_id in self.latest for asset_id in asset_ids)
            )
            if not fresh_enough:
                await self.refresh(asset_ids)
            return {asset_id: self.latest.get(asset_id) for asset_id in asset_ids}


class YieldRateEstimator:
    """Staking APY from derivative/staking price-ratio growth, borrow APR from an optional feed."""

    def __init__(self, settings, caller: ResilientCaller, borrow_apr_client: Optional[BaseAPIClient] = None):
        self.settings = settings
        self.caller = caller
        self.borrow_apr_client = borrow_apr_client
        self.ratio_history: Deque[Tuple[int, float]] = deque(maxlen=10000)

    def record_prices(self, staking: Optional[PriceQuote], derivative: Optional[PriceQuote], timestamp: int):
        if not staking or not derivative or staking.stale or derivative.stale or staking.price_usd <= 0:
            return
        self.ratio_history.append((timestamp, derivative.price_usd / staking.price_usd))

    async def _fetch_borrow_apr(self) -> float:
        data = await self.borrow_apr_client._make_request("GET", "")
        value = data
        for part in self.settings.BORROW_APR_FIELD.split("."):
            if not isinstance(value, dict) or part not in value:
                raise DecodeError(f"Borrow APR field {self.settings.BORROW_APR_FIELD} missing")
            value = value[part]
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Borrow APR is not numeric: {value!r}") from e

    async def current_yields(self) -> YieldInputs:
        staking_apy = estimate_staking_apy(list(self.ratio_history), self.settings.APY_ESTIMATION_MIN_SECONDS)
        staking_fallback = staking_apy is None
        if staking_fallback:
            staking_apy = self.settings.FALLBACK_STAKING_APY

        borrow_apr = None
        if self.borrow_apr_client is not None:
            outcome = await self.caller.call("borrow_apr", self._fetch_borrow_apr)
            borrow_apr = outcome.value if outcome.ok else None
        borrow_fallback = borrow_apr is None
        if borrow_fallback:
            borrow_apr = self.settings.FALLBACK_BORROW_APR

        return YieldInputs(
            staking_apy=staking_apy,
            borrow_apr=borrow_apr,
            staking_apy_fallback=staking_fallback,
            borrow_apr_fallback=borrow_fallback,
        )


# ---------------------------------------------------------------------- chain RPC

class RpcClient(BaseAPIClient):
    """Raw JSON-RPC over HTTP."""

    def __init__(self, rpc_url: str, **kwargs):
        super().__init__(rpc_url, {"Content-Type": "application/json"}, **kwargs)
        self._request_id = 0

    async def _rpc(self, method: str, params: List) -> str:
        self._request_id += 1
        payload = {
            "id": self._request_id,
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
        }
        response = await self._make_request("POST", "", json=payload)
        if response.get("error"):
            raise ExternalAPIError(f"RPC error for {method}: {response['error']}")
        if "result" not in response:
            raise DecodeError(f"RPC response for {method} has no result")
        return response["result"]

    async def eth_call(self, to: str, data: str, block: str = "latest") -> bytes:
        result = await self._rpc("eth_call", [{"to": to, "data": data}, block])
        if not isinstance(result, str):
            raise DecodeError("eth_call result is not a hex string")
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError as e:
            raise DecodeError("eth_call result is not valid hex") from e

    async def block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def block_timestamp(self, block_number: int) -> int:
        """Header timestamp of ``block_number``, in seconds."""
        block = await self._rpc("eth_getBlockByNumber", [hex(block_number), False])
        if not isinstance(block, dict) or "timestamp" not in block:
            raise DecodeError(f"Block {block_number} not available")
        try:
            return int(block["timestamp"], 16)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Block {block_number} has an invalid timestamp") from e


# ---------------------------------------------------------------------- notifications

class WebhookNotifier:
    """Posts alert text to a webhook. Best effort: failures are logged only."""

    def __init__(self, webhook_url: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def start(self):
        if self.enabled and self.client is None:
            self.client = httpx.AsyncClient(timeout=10.0, transport=self.transport)

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def notify(self, alert: EmergencyAlert, content: str) -> bool:
        if not self.enabled:
            return False
        await self.start()

        try:
            response = await self.client.post(
                self.webhook_url,
                json={"content": content, "severity": alert.severity, "alert_id": alert.id},
                headers={"Content-Type": "application/json"},
            )
            if response.status_code >= 400:
                logger.warning("Webhook rejected alert", status_code=response.status_code, alert_id=alert.id)
                return False
            return True
        except httpx.HTTPError as e:
            # Notification failure never affects the stored alert
            logger.warning("Error sending alert webhook", alert_id=alert.id, error=str(e))
            return False
