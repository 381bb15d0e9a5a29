"""Chain client protocol consumed by the transfer core."""

from typing import List, Optional, Protocol

from .models import (
    Address,
    AssetDescription,
    AssetID,
    ChainID,
    SignedTransaction,
    TransactionStatus,
    TxFees,
    TxID,
    UTXOPage,
)


class ChainClient(Protocol):
    """
    Interface for node access (JSON-RPC node, in-process devnet, ...).

    `chain` is a chain alias ("X", "C") or a blockchain ID. Implementations
    raise TransportError for network/node failures, SubmissionError when a
    transaction is refused, and ResolutionError subclasses for unknown
    assets or aliases.
    """

    async def get_blockchain_id(self, alias: str) -> ChainID:
        ...

    async def get_asset_description(self, chain: str, symbol: str) -> AssetDescription:
        ...

    async def get_utxos(
        self,
        chain: str,
        addresses: List[Address],
        source_chain: Optional[ChainID] = None,
        limit: int = 1024,
        start_index: Optional[str] = None,
    ) -> UTXOPage:
        ...

    async def get_balance(self, chain: str, address: Address, asset_id: AssetID) -> int:
        ...

    async def get_tx_fee(self, chain: str) -> TxFees:
        ...

    async def issue_tx(self, chain: str, signed_tx: SignedTransaction) -> TxID:
        ...

    async def get_tx_status(self, chain: str, tx_id: TxID) -> TransactionStatus:
        ...
