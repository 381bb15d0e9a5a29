"""
Transaction Builder

Builds unsigned base (same-chain), export and import transactions from a
UTXO snapshot. Building is a pure function of its arguments: UTXO selection
is ordered largest-first with ties broken by (tx_id, output_index), inputs
and outputs are sorted, and there is no clock or randomness involved. Two
builds from the same arguments produce byte-identical payloads, which makes
retrying a build safe.

Value is conserved exactly per asset:
    sum(inputs) == sum(outputs) + sum(exported_outputs) + fee
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from loguru import logger

from .errors import InsufficientFundsError
from .models import (
    Address,
    AssetID,
    ChainID,
    OutputOwners,
    TransferableInput,
    TransferableOutput,
    TxKind,
    UnsignedTransaction,
    UTXO,
)

Memo = Union[bytes, str, None]


@dataclass(frozen=True)
class Selection:
    """UTXOs chosen for one asset and the change left over"""
    asset_id: AssetID
    utxos: Tuple[UTXO, ...]
    required: int

    @property
    def total(self) -> int:
        return sum(u.amount for u in self.utxos)

    @property
    def change(self) -> int:
        return self.total - self.required


def _memo_bytes(memo: Memo) -> bytes:
    if memo is None:
        return b""
    return memo.encode("utf-8") if isinstance(memo, str) else bytes(memo)


def _owners(addresses: Sequence[Address], threshold: int = 1, locktime: int = 0) -> OutputOwners:
    return OutputOwners(addresses=tuple(addresses), threshold=threshold, locktime=locktime)


def spendable(utxos: Iterable[UTXO], asset_id: AssetID, from_addresses: Sequence[Address],
              as_of: int = 0) -> List[UTXO]:
    """Candidate UTXOs of `asset_id` that `from_addresses` can spend, in selection order."""
    candidates = [
        u for u in utxos
        if u.asset_id == asset_id and u.owners.is_spendable_by(from_addresses, as_of)
    ]
    return sorted(candidates, key=lambda u: (-u.amount, u.tx_id, u.output_index))


def select_utxos(utxos: Iterable[UTXO], asset_id: AssetID, required: int,
                 from_addresses: Sequence[Address], as_of: int = 0) -> Selection:
    """
    Pick UTXOs until `required` is covered

    Raises:
        InsufficientFundsError: spendable total is below `required`.
    """
    candidates = spendable(utxos, asset_id, from_addresses, as_of)
    chosen: List[UTXO] = []
    total = 0
    for utxo in candidates:
        if total >= required:
            break
        chosen.append(utxo)
        total += utxo.amount

    if total < required:
        raise InsufficientFundsError(asset_id, required, total)
    return Selection(asset_id=asset_id, utxos=tuple(chosen), required=required)


class TransactionBuilder:
    """
    Stateless builder bound to one chain

    Args:
        chain_id: Blockchain ID the transactions are issued on
        fee_asset_id: Asset the network fee is paid in
        tx_fee: Network fee for base/export/import transactions
    """

    def __init__(self, chain_id: ChainID, fee_asset_id: AssetID, tx_fee: int):
        if tx_fee < 0:
            raise ValueError("tx_fee must be non-negative")
        self.chain_id = chain_id
        self.fee_asset_id = fee_asset_id
        self.tx_fee = tx_fee

    def _requirements(self, asset_id: AssetID, amount: int) -> Dict[AssetID, int]:
        required = {asset_id: amount}
        if self.tx_fee:
            required[self.fee_asset_id] = required.get(self.fee_asset_id, 0) + self.tx_fee
        return required

    def _spend(
        self,
        utxos: Sequence[UTXO],
        asset_id: AssetID,
        amount: int,
        from_addresses: Sequence[Address],
        change_addresses: Sequence[Address],
        as_of: int,
    ) -> Tuple[Tuple[TransferableInput, ...], List[TransferableOutput]]:
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        if not from_addresses:
            raise ValueError("from_addresses must not be empty")
        if not change_addresses:
            raise ValueError("change_addresses must not be empty")

        inputs: List[TransferableInput] = []
        change: List[TransferableOutput] = []
        for required_asset, required in sorted(self._requirements(asset_id, amount).items()):
            selection = select_utxos(utxos, required_asset, required, from_addresses, as_of)
            inputs.extend(TransferableInput.from_utxo(u) for u in selection.utxos)
            if selection.change:
                change.append(TransferableOutput(required_asset, selection.change,
                                                 _owners(change_addresses)))

        return tuple(sorted(inputs, key=TransferableInput.sort_key)), change

    def build_transfer(
        self,
        utxos: Sequence[UTXO],
        amount: int,
        asset_id: AssetID,
        to_addresses: Sequence[Address],
        from_addresses: Sequence[Address],
        change_addresses: Sequence[Address],
        memo: Memo = None,
        threshold: int = 1,
        locktime: int = 0,
        as_of: int = 0,
    ) -> UnsignedTransaction:
        """Same-chain payment of `amount` to `to_addresses` with change back."""
        inputs, outputs = self._spend(utxos, asset_id, amount, from_addresses,
                                      change_addresses, as_of)
        outputs.append(TransferableOutput(asset_id, amount,
                                          _owners(to_addresses, threshold, locktime)))

        tx = UnsignedTransaction(
            kind=TxKind.BASE,
            chain_id=self.chain_id,
            inputs=inputs,
            outputs=tuple(sorted(outputs, key=TransferableOutput.sort_key)),
            fee=self.tx_fee,
            fee_asset_id=self.fee_asset_id,
            memo=_memo_bytes(memo),
        )
        logger.debug(f"Built transfer: {len(inputs)} inputs, {len(outputs)} outputs, fee {self.tx_fee}")
        return tx

    def build_export(
        self,
        utxos: Sequence[UTXO],
        amount: int,
        asset_id: AssetID,
        to_addresses: Sequence[Address],
        from_addresses: Sequence[Address],
        change_addresses: Sequence[Address],
        destination_chain: ChainID,
        memo: Memo = None,
        as_of: int = 0,
    ) -> UnsignedTransaction:
        """
        Move `amount` into `destination_chain`'s atomic memory

        Args:
            to_addresses: Owner addresses on the destination chain
            destination_chain: Real blockchain ID (not the alias)
        """
        if not destination_chain or destination_chain == self.chain_id:
            raise ValueError("destination_chain must be a different, resolved blockchain ID")

        inputs, change = self._spend(utxos, asset_id, amount, from_addresses,
                                     change_addresses, as_of)
        exported = (TransferableOutput(asset_id, amount, _owners(to_addresses)),)

        tx = UnsignedTransaction(
            kind=TxKind.EXPORT,
            chain_id=self.chain_id,
            inputs=inputs,
            outputs=tuple(sorted(change, key=TransferableOutput.sort_key)),
            fee=self.tx_fee,
            fee_asset_id=self.fee_asset_id,
            memo=_memo_bytes(memo),
            exported_outputs=exported,
            destination_chain=destination_chain,
        )
        logger.debug(f"Built export to {destination_chain}: {len(inputs)} inputs, amount {amount}")
        return tx

    def build_import(
        self,
        utxos: Sequence[UTXO],
        amount: Optional[int],
        asset_id: AssetID,
        to_addresses: Sequence[Address],
        from_addresses: Sequence[Address],
        change_addresses: Sequence[Address],
        source_chain: ChainID,
        memo: Memo = None,
        as_of: int = 0,
    ) -> UnsignedTransaction:
        """
        Consume atomic UTXOs exported from `source_chain`

        Every spendable atomic UTXO of `asset_id` is imported; the payout to
        `to_addresses` is the total less the fee. Atomic UTXOs cannot take
        change, so `amount` (when given) is only the minimum acceptable payout.
        """
        if not source_chain or source_chain == self.chain_id:
            raise ValueError("source_chain must be a different, resolved blockchain ID")

        atomic = [u for u in utxos if u.source_chain in (None, source_chain)]
        candidates = spendable(atomic, asset_id, from_addresses, as_of)
        total = sum(u.amount for u in candidates)

        fee_in_asset = self.tx_fee if asset_id == self.fee_asset_id else 0
        payout = total - fee_in_asset
        minimum = amount if amount is not None else 1
        if payout < minimum:
            raise InsufficientFundsError(asset_id, minimum + fee_in_asset, total)

        inputs = [TransferableInput.from_utxo(u) for u in candidates]
        outputs = [TransferableOutput(asset_id, payout, _owners(to_addresses))]

        if fee_in_asset == 0 and self.tx_fee:
            # Fee asset differs from the imported one: pay it from atomic UTXOs too
            fee_selection = select_utxos(atomic, self.fee_asset_id, self.tx_fee, from_addresses, as_of)
            inputs.extend(TransferableInput.from_utxo(u) for u in fee_selection.utxos)
            if fee_selection.change:
                outputs.append(TransferableOutput(self.fee_asset_id, fee_selection.change,
                                                  _owners(change_addresses)))

        tx = UnsignedTransaction(
            kind=TxKind.IMPORT,
            chain_id=self.chain_id,
            inputs=tuple(sorted(inputs, key=TransferableInput.sort_key)),
            outputs=tuple(sorted(outputs, key=TransferableOutput.sort_key)),
            fee=self.tx_fee,
            fee_asset_id=self.fee_asset_id,
            memo=_memo_bytes(memo),
            source_chain=source_chain,
        )
        logger.debug(f"Built import from {source_chain}: {len(inputs)} inputs, payout {payout}")
        return tx
