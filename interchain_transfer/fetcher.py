"""
UTXO Set Fetcher

Pages through a node's getUTXOs until the cursor is exhausted. Transport
failures are retried per page; once retries run out a FetchError is raised
so callers can tell "fetch failed" apart from "nothing there yet" (an empty
UTXOSet).
"""

from typing import List, Optional, Sequence

from loguru import logger

from .backoff import RetryPolicy, retry_transport
from .client import ChainClient
from .errors import FetchError, TransportError
from .models import Address, ChainID, UTXO, UTXOSet

DEFAULT_PAGE_LIMIT = 1024
MAX_PAGES = 1000


class UTXOFetcher:

    def __init__(
        self,
        client: ChainClient,
        retry_policy: Optional[RetryPolicy] = None,
        page_limit: int = DEFAULT_PAGE_LIMIT,
    ):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_limit = page_limit

    async def fetch(
        self,
        chain: str,
        addresses: Sequence[Address],
        source_chain: Optional[ChainID] = None,
    ) -> UTXOSet:
        """
        Fetch every UTXO owned by `addresses` on `chain`

        Args:
            chain: Chain alias or ID to query
            addresses: Owner addresses (must belong to `chain`)
            source_chain: Only atomic UTXOs exported from this chain

        Raises:
            FetchError: node unreachable after retries
        """
        if not addresses:
            return UTXOSet()

        collected: List[UTXO] = []
        cursor: Optional[str] = None
        scope = f" (from {source_chain})" if source_chain else ""

        for _ in range(MAX_PAGES):
            page_cursor = cursor

            async def fetch_page():
                return await self.client.get_utxos(
                    chain, list(addresses), source_chain=source_chain,
                    limit=self.page_limit, start_index=page_cursor,
                )

            try:
                page = await retry_transport(fetch_page, self.retry_policy,
                                             f"getUTXOs on {chain}{scope}")
            except TransportError as e:
                raise FetchError(f"Failed to fetch UTXOs on {chain}{scope}: {e}") from e

            collected.extend(page.utxos)
            # A short page or a missing/unchanged cursor means we are done
            if page.num_fetched < self.page_limit or not page.end_index or page.end_index == cursor:
                break
            cursor = page.end_index

        utxo_set = UTXOSet(collected)
        logger.debug(f"Fetched {len(utxo_set)} UTXOs on {chain}{scope} for {len(addresses)} addresses")
        return utxo_set
