"""
Asset and chain resolution

Symbol -> asset ID and alias -> blockchain ID lookups. Both registrations
are append-only on the ledger, so results are cached for the lifetime of
the resolver.
"""

from typing import Dict, Tuple

from loguru import logger

from .client import ChainClient
from .models import AssetDescription, AssetID, ChainID


class ChainResolver:
    """Maps chain aliases ("X", "P", "C") to real blockchain IDs"""

    def __init__(self, client: ChainClient):
        self.client = client
        self._cache: Dict[str, ChainID] = {}

    async def resolve(self, alias: str) -> ChainID:
        """
        Raises:
            ChainAliasError: alias is not registered
        """
        if alias not in self._cache:
            chain_id = await self.client.get_blockchain_id(alias)
            self._cache[alias] = chain_id
            logger.debug(f"Resolved chain alias {alias} -> {chain_id}")
        return self._cache[alias]


class AssetResolver:
    """Maps human-readable asset symbols to canonical asset IDs, per chain"""

    def __init__(self, client: ChainClient):
        self.client = client
        self._cache: Dict[Tuple[str, str], AssetDescription] = {}

    async def describe(self, chain: str, symbol: str) -> AssetDescription:
        key = (chain, symbol)
        if key not in self._cache:
            description = await self.client.get_asset_description(chain, symbol)
            self._cache[key] = description
            logger.debug(f"Resolved asset {symbol} on {chain} -> {description.asset_id}")
        return self._cache[key]

    async def resolve(self, chain: str, symbol: str) -> AssetID:
        """
        Raises:
            AssetNotFoundError: symbol is not registered on `chain`
        """
        return (await self.describe(chain, symbol)).asset_id
