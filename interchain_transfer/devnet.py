"""
In-process ledger network

LocalNetwork implements the ChainClient protocol against an in-memory set of
UTXO chains that share atomic memory for export/import. It checks
signatures, value conservation and double spends, and simulates finality
and cross-chain propagation latency in poll counts rather than wall time.
Used for `--devnet` dry runs and by the test suite.

Latency model:
- a submitted tx reports Processing for `processing_polls` status polls,
  then reaches its terminal status;
- an accepted export's UTXOs become visible on the destination chain after
  `propagation_polls` further atomic getUTXOs queries there.
"""

import asyncio
import hashlib
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from .encoding import cb58_encode
from .errors import AssetNotFoundError, ChainAliasError, SubmissionError
from .keychain import derive_address, verify_signature
from .models import (
    Address,
    AssetDescription,
    AssetID,
    ChainID,
    OutputOwners,
    SignedTransaction,
    TransactionStatus,
    TxFees,
    TxID,
    TxKind,
    UTXO,
    UTXOPage,
)

DEFAULT_TX_FEE = 1_000_000


def _make_id(*parts: str) -> str:
    return cb58_encode(hashlib.sha256("/".join(parts).encode("utf-8")).digest())


@dataclass
class _TxRecord:
    alias: str
    signed: SignedTransaction
    status: TransactionStatus
    polls_remaining: int
    reject: bool = False


@dataclass
class _AtomicEntry:
    utxo: UTXO
    visible_after: int  # atomic queries remaining before the UTXO shows up
    export_tx_id: TxID


@dataclass
class LocalChain:
    alias: str
    chain_id: ChainID
    tx_fee: int
    utxos: Dict[str, UTXO] = field(default_factory=dict)
    reserved: Dict[str, UTXO] = field(default_factory=dict)
    atomic: Dict[str, _AtomicEntry] = field(default_factory=dict)


class LocalNetwork:
    """
    In-memory multi-chain ledger

    Args:
        aliases: Chain aliases to create
        tx_fee: Fee charged on every chain
        processing_polls: Status polls a tx stays Processing
        propagation_polls: Atomic queries before exported UTXOs appear
        network_name: Seed for deterministic chain/asset IDs
    """

    def __init__(
        self,
        aliases: Tuple[str, ...] = ("X", "P", "C"),
        tx_fee: int = DEFAULT_TX_FEE,
        processing_polls: int = 1,
        propagation_polls: int = 1,
        network_name: str = "local",
    ):
        self.network_name = network_name
        self.processing_polls = processing_polls
        self.propagation_polls = propagation_polls
        self.chains: Dict[str, LocalChain] = {
            alias: LocalChain(alias, _make_id(network_name, "chain", alias), tx_fee)
            for alias in aliases
        }
        self._by_id: Dict[ChainID, LocalChain] = {c.chain_id: c for c in self.chains.values()}
        self.assets: Dict[str, AssetDescription] = {}
        self.avax_asset_id = self.register_asset("AVAX", "Avalanche")

        self.transactions: Dict[TxID, _TxRecord] = {}
        self.issued: List[Tuple[str, TxKind, TxID]] = []
        self.calls: Counter = Counter()
        self._faults: Dict[str, List[Exception]] = defaultdict(list)
        self._reject_next: Set[str] = set()
        self._genesis_counter = 0

    # ------------------------------------------------------------------
    # Setup and fault injection
    # ------------------------------------------------------------------

    def register_asset(self, symbol: str, name: str, denomination: int = 9) -> AssetID:
        asset_id = _make_id(self.network_name, "asset", symbol)
        self.assets[symbol] = AssetDescription(asset_id, name, symbol, denomination)
        return asset_id

    def fund(self, alias: str, address: Address, amount: int,
             asset_id: Optional[AssetID] = None) -> UTXO:
        """Create a genesis UTXO owned by `address`."""
        chain = self.chains[alias]
        self._genesis_counter += 1
        utxo = UTXO(
            tx_id=_make_id(self.network_name, "genesis", str(self._genesis_counter)),
            output_index=0,
            asset_id=asset_id or self.avax_asset_id,
            amount=amount,
            owners=OutputOwners((address,)),
        )
        chain.utxos[utxo.utxo_id] = utxo
        return utxo

    def inject_fault(self, method: str, error: Exception, times: int = 1):
        """Make the next `times` calls of `method` raise `error`."""
        self._faults[method].extend([error] * times)

    def reject_next(self, alias: str):
        """The next tx issued on `alias` will end Rejected after processing."""
        self._reject_next.add(alias)

    def exports_issued(self, alias: Optional[str] = None) -> int:
        return sum(1 for a, kind, _ in self.issued
                   if kind == TxKind.EXPORT and (alias is None or a == alias))

    def settle(self):
        """Finalize every processing tx and make all atomic UTXOs visible."""
        for record in list(self.transactions.values()):
            if record.status == TransactionStatus.PROCESSING:
                record.polls_remaining = 0
                self._advance(record)
        for chain in self.chains.values():
            for entry in chain.atomic.values():
                entry.visible_after = 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enter(self, method: str):
        self.calls[method] += 1
        await asyncio.sleep(0)
        if self._faults[method]:
            raise self._faults[method].pop(0)

    def _chain(self, chain: str) -> LocalChain:
        found = self.chains.get(chain) or self._by_id.get(chain)
        if found is None:
            raise ChainAliasError(chain)
        return found

    def _advance(self, record: _TxRecord):
        if record.status != TransactionStatus.PROCESSING:
            return
        if record.polls_remaining > 0:
            record.polls_remaining -= 1
            return
        if record.reject:
            self._reject(record)
        else:
            self._accept(record)

    def _reject(self, record: _TxRecord):
        chain = self.chains[record.alias]
        unsigned = record.signed.unsigned
        for tx_input in unsigned.inputs:
            utxo = chain.reserved.pop(tx_input.utxo_id, None)
            if utxo is None:
                continue
            if unsigned.kind == TxKind.IMPORT:
                chain.atomic[utxo.utxo_id] = _AtomicEntry(utxo, 0, utxo.tx_id)
            else:
                chain.utxos[utxo.utxo_id] = utxo
        record.status = TransactionStatus.REJECTED
        logger.debug(f"[devnet] {record.alias} rejected {record.signed.tx_id}")

    def _accept(self, record: _TxRecord):
        chain = self.chains[record.alias]
        unsigned = record.signed.unsigned
        tx_id = record.signed.tx_id
        for tx_input in unsigned.inputs:
            chain.reserved.pop(tx_input.utxo_id, None)

        for index, output in enumerate(unsigned.outputs):
            utxo = UTXO(tx_id, index, output.asset_id, output.amount, output.owners)
            chain.utxos[utxo.utxo_id] = utxo

        if unsigned.kind == TxKind.EXPORT:
            destination = self._by_id[unsigned.destination_chain]
            offset = len(unsigned.outputs)
            for index, output in enumerate(unsigned.exported_outputs, start=offset):
                utxo = UTXO(tx_id, index, output.asset_id, output.amount, output.owners,
                            source_chain=chain.chain_id)
                destination.atomic[utxo.utxo_id] = _AtomicEntry(utxo, self.propagation_polls, tx_id)

        record.status = TransactionStatus.ACCEPTED
        logger.debug(f"[devnet] {record.alias} accepted {tx_id}")

    def _verify(self, chain: LocalChain, signed: SignedTransaction) -> List[UTXO]:
        unsigned = signed.unsigned
        if unsigned.chain_id != chain.chain_id:
            raise SubmissionError(f"tx is for chain {unsigned.chain_id}, not {chain.chain_id}")
        if not unsigned.inputs:
            raise SubmissionError("tx has no inputs")

        consumed: List[UTXO] = []
        seen: Set[str] = set()
        for tx_input in unsigned.inputs:
            if tx_input.utxo_id in seen:
                raise SubmissionError(f"input {tx_input.utxo_id} spent twice in one tx")
            seen.add(tx_input.utxo_id)

            if unsigned.kind == TxKind.IMPORT:
                entry = chain.atomic.get(tx_input.utxo_id)
                utxo = entry.utxo if entry and entry.visible_after == 0 else None
                if utxo is not None and utxo.source_chain != unsigned.source_chain:
                    raise SubmissionError(
                        f"atomic UTXO {tx_input.utxo_id} came from {utxo.source_chain}, "
                        f"not {unsigned.source_chain}"
                    )
            else:
                utxo = chain.utxos.get(tx_input.utxo_id)
            if utxo is None:
                raise SubmissionError(f"missing or already spent UTXO {tx_input.utxo_id}")
            if (utxo.amount, utxo.asset_id, utxo.owners) != (
                    tx_input.amount, tx_input.asset_id, tx_input.owners):
                raise SubmissionError(f"input {tx_input.utxo_id} does not match the UTXO")
            consumed.append(utxo)

        digest = unsigned.hash()
        for tx_input, credential in zip(unsigned.inputs, signed.credentials):
            signers = {
                derive_address(chain.alias, bytes.fromhex(sig.public_key))
                for sig in credential.signatures
                if verify_signature(sig.public_key, sig.signature, digest)
            }
            if len(signers & set(tx_input.owners.addresses)) < tx_input.owners.threshold:
                raise SubmissionError(f"invalid credential for input {tx_input.utxo_id}")

        if unsigned.fee_asset_id != self.avax_asset_id or unsigned.fee < chain.tx_fee:
            raise SubmissionError(f"fee {unsigned.fee} below required {chain.tx_fee}")
        assets = {i.asset_id for i in unsigned.inputs}
        assets |= {o.asset_id for o in unsigned.outputs + unsigned.exported_outputs}
        for asset_id in assets:
            expected = unsigned.fee if asset_id == unsigned.fee_asset_id else 0
            if unsigned.burned(asset_id) != expected:
                raise SubmissionError(f"value not conserved for asset {asset_id}")

        if unsigned.kind == TxKind.EXPORT and unsigned.destination_chain not in self._by_id:
            raise SubmissionError(f"unknown destination chain {unsigned.destination_chain}")
        if unsigned.kind == TxKind.IMPORT and unsigned.source_chain not in self._by_id:
            raise SubmissionError(f"unknown source chain {unsigned.source_chain}")
        return consumed

    # ------------------------------------------------------------------
    # ChainClient
    # ------------------------------------------------------------------

    async def get_blockchain_id(self, alias: str) -> ChainID:
        await self._enter("get_blockchain_id")
        return self._chain(alias).chain_id

    async def get_asset_description(self, chain: str, symbol: str) -> AssetDescription:
        await self._enter("get_asset_description")
        self._chain(chain)
        for description in self.assets.values():
            if symbol in (description.symbol, description.asset_id):
                return description
        raise AssetNotFoundError(chain, symbol)

    async def get_utxos(
        self,
        chain: str,
        addresses: List[Address],
        source_chain: Optional[ChainID] = None,
        limit: int = 1024,
        start_index: Optional[str] = None,
    ) -> UTXOPage:
        await self._enter("get_utxos")
        target = self._chain(chain)
        wanted = set(addresses)

        if source_chain is not None:
            for record in self.transactions.values():
                unsigned = record.signed.unsigned
                if unsigned.kind == TxKind.EXPORT and unsigned.destination_chain == target.chain_id:
                    self._advance(record)
            visible = []
            for entry in target.atomic.values():
                if entry.utxo.source_chain != source_chain:
                    continue
                if entry.visible_after > 0:
                    entry.visible_after -= 1
                    continue
                visible.append(entry.utxo)
            pool = visible
        else:
            pool = list(target.utxos.values())

        matching = sorted(
            (u for u in pool if wanted & set(u.owners.addresses)),
            key=lambda u: (u.tx_id, u.output_index),
        )
        offset = int(start_index) if start_index else 0
        page = matching[offset:offset + limit]
        return UTXOPage(utxos=page, end_index=str(offset + len(page)), num_fetched=len(page))

    async def get_balance(self, chain: str, address: Address, asset_id: AssetID) -> int:
        await self._enter("get_balance")
        target = self._chain(chain)
        return sum(
            u.amount for u in target.utxos.values()
            if u.asset_id == asset_id and address in u.owners.addresses
        )

    async def get_tx_fee(self, chain: str) -> TxFees:
        await self._enter("get_tx_fee")
        target = self._chain(chain)
        return TxFees(tx_fee=target.tx_fee, create_asset_tx_fee=target.tx_fee * 10)

    async def issue_tx(self, chain: str, signed_tx: SignedTransaction) -> TxID:
        await self._enter("issue_tx")
        target = self._chain(chain)
        tx_id = signed_tx.tx_id
        if tx_id in self.transactions:
            return tx_id

        consumed = self._verify(target, signed_tx)
        for utxo in consumed:
            if signed_tx.unsigned.kind == TxKind.IMPORT:
                target.atomic.pop(utxo.utxo_id)
            else:
                target.utxos.pop(utxo.utxo_id)
            target.reserved[utxo.utxo_id] = utxo

        reject = target.alias in self._reject_next
        self._reject_next.discard(target.alias)
        self.transactions[tx_id] = _TxRecord(
            alias=target.alias,
            signed=signed_tx,
            status=TransactionStatus.PROCESSING,
            polls_remaining=self.processing_polls,
            reject=reject,
        )
        kind = signed_tx.unsigned.kind
        self.issued.append((target.alias, kind, tx_id))
        logger.debug(f"[devnet] {target.alias} issued {kind.value} tx {tx_id}")
        return tx_id

    async def get_tx_status(self, chain: str, tx_id: TxID) -> TransactionStatus:
        await self._enter("get_tx_status")
        target = self._chain(chain)
        record = self.transactions.get(tx_id)
        if record is None or record.alias != target.alias:
            return TransactionStatus.UNKNOWN
        self._advance(record)
        return record.status
