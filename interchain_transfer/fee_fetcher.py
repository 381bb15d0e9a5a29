"""
Network Fee Fetcher

Fetches the current transaction fee from each chain's node, with an
in-memory TTL cache and a configured fallback when the node cannot be
reached.
"""

import time
from typing import Dict, Optional, Tuple

from loguru import logger

from .client import ChainClient
from .errors import TransportError


class FeeFetcher:
    """
    Per-chain transaction fee lookup

    Features:
    - Node query via getTxFee
    - TTL cache per chain
    - Fallback fee from configuration
    """

    DEFAULT_FALLBACK_FEE = 1_000_000  # 0.001 AVAX

    def __init__(
        self,
        client: ChainClient,
        fallback_fees: Optional[Dict[str, int]] = None,
        default_fallback_fee: int = DEFAULT_FALLBACK_FEE,
        cache_ttl_seconds: float = 600.0,
    ):
        """
        Initialize fee fetcher

        Args:
            client: Chain client used for getTxFee
            fallback_fees: Per-chain fallback fees {chain_alias: fee}
            default_fallback_fee: Fallback for chains missing from fallback_fees
            cache_ttl_seconds: How long a fetched fee stays valid
        """
        self.client = client
        self.fallback_fees = dict(fallback_fees or {})
        self.default_fallback_fee = default_fallback_fee
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Dict[str, Tuple[int, float]] = {}

    def _get_cached_fee(self, chain: str) -> Optional[int]:
        entry = self._cache.get(chain)
        if entry is None:
            return None
        fee, fetched_at = entry
        if time.monotonic() - fetched_at > self.cache_ttl_seconds:
            del self._cache[chain]
            return None
        return fee

    def _get_fallback_fee(self, chain: str) -> int:
        return self.fallback_fees.get(chain, self.default_fallback_fee)

    async def fetch_fee(self, chain: str) -> Tuple[int, bool]:
        """
        Get the transaction fee for a chain

        Args:
            chain: Chain alias

        Returns:
            Tuple of (fee, from_cache)
        """
        cached_fee = self._get_cached_fee(chain)
        if cached_fee is not None:
            return cached_fee, True

        try:
            fees = await self.client.get_tx_fee(chain)
        except TransportError as e:
            fee = self._get_fallback_fee(chain)
            logger.warning(f"⚠ Could not fetch fee for {chain} ({e}), using fallback {fee}")
            return fee, False

        self._cache[chain] = (fees.tx_fee, time.monotonic())
        logger.debug(f"Fee for {chain}: {fees.tx_fee} (node)")
        return fees.tx_fee, False

    def clear_cache(self):
        self._cache.clear()
