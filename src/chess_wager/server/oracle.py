import logging
import threading
import time
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

class PriceOracle:
    """
    USD price of the wager token from a DexScreener-style endpoint.
    Never raises: on failure the last cached price, or the floor price, is used
    so that room creation does not block on the market-data service.
    """

    def __init__(self, url_template: str, mint: str, cache_seconds: float = 30.0,
                 fallback_price: float = 0.0001, timeout: float = 5.0,
                 http_client: Optional[httpx.Client] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.url = url_template.format(mint=mint)
        self.cache_seconds = cache_seconds
        self.fallback_price = fallback_price
        self.client = http_client or httpx.Client(timeout=timeout)
        self.clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[float] = None
        self._fetched_at = 0.0

    def close(self) -> None:
        self.client.close()

    def get_price(self) -> float:
        with self._lock:
            if self._cached and self.clock() - self._fetched_at < self.cache_seconds:
                return self._cached

        try:
            resp = self.client.get(self.url)
            resp.raise_for_status()
            pairs = resp.json().get("pairs") or []
            if pairs:
                # Deepest pool wins
                best = max(pairs, key=lambda p: (p.get("liquidity") or {}).get("usd") or 0)
                price = float(best.get("priceUsd") or 0) or self.fallback_price
                with self._lock:
                    self._cached = price
                    self._fetched_at = self.clock()
                logger.info(f"Token price: ${price}")
                return price
            logger.warning(f"No trading pairs returned by {self.url}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Price fetch error: {e}")

        with self._lock:
            return self._cached or self.fallback_price
