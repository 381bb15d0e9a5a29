"""
Ledger data model

UTXOs, transaction inputs/outputs, unsigned and signed transactions.
All value types are frozen dataclasses; amounts are ints in the asset's
smallest unit. Transactions encode to canonical JSON bytes (sorted keys,
no whitespace) so identical content always produces identical bytes.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .encoding import cb58_encode

Address = str
AssetID = str
ChainID = str
TxID = str

MAX_MEMO_BYTES = 256


def _canonical_bytes(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class TransactionStatus(str, Enum):
    """Status reported by a chain for a transaction ID"""
    UNKNOWN = "Unknown"
    PROCESSING = "Processing"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.ACCEPTED, TransactionStatus.REJECTED)

    @classmethod
    def parse(cls, value: str) -> "TransactionStatus":
        """
        Normalise a node status string.

        The platform chain reports Committed/Aborted and the contract chain
        reports Dropped; those map onto Accepted/Rejected.
        """
        aliases = {
            "Committed": cls.ACCEPTED,
            "Aborted": cls.REJECTED,
            "Dropped": cls.REJECTED,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class TxKind(str, Enum):
    BASE = "base"
    EXPORT = "export"
    IMPORT = "import"


@dataclass(frozen=True)
class OutputOwners:
    """Spend condition: `threshold` of `addresses` must sign after `locktime`."""
    addresses: Tuple[Address, ...]
    threshold: int = 1
    locktime: int = 0

    def __post_init__(self):
        addresses = tuple(sorted(set(self.addresses)))
        if not addresses:
            raise ValueError("OutputOwners requires at least one address")
        if not 1 <= self.threshold <= len(addresses):
            raise ValueError(
                f"threshold must be between 1 and {len(addresses)}, got {self.threshold}"
            )
        if self.locktime < 0:
            raise ValueError("locktime must be non-negative")
        object.__setattr__(self, "addresses", addresses)

    def is_spendable_by(self, addresses: Iterable[Address], as_of: int = 0) -> bool:
        if self.locktime > as_of:
            return False
        return len(set(addresses) & set(self.addresses)) >= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "addresses": list(self.addresses),
            "threshold": self.threshold,
            "locktime": self.locktime,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutputOwners":
        return cls(
            addresses=tuple(data["addresses"]),
            threshold=int(data.get("threshold", 1)),
            locktime=int(data.get("locktime", 0)),
        )


@dataclass(frozen=True)
class UTXO:
    """Unspent transaction output as observed by the queried node"""
    tx_id: TxID
    output_index: int
    asset_id: AssetID
    amount: int
    owners: OutputOwners
    source_chain: Optional[ChainID] = None  # set for atomic (imported) UTXOs

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"UTXO amount must be positive, got {self.amount}")
        if self.output_index < 0:
            raise ValueError("output_index must be non-negative")

    @property
    def utxo_id(self) -> str:
        return f"{self.tx_id}:{self.output_index}"

    @property
    def owning_addresses(self) -> Tuple[Address, ...]:
        return self.owners.addresses

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "txID": self.tx_id,
            "outputIndex": self.output_index,
            "assetID": self.asset_id,
            "amount": str(self.amount),
            "owners": self.owners.to_dict(),
        }
        if self.source_chain:
            data["sourceChain"] = self.source_chain
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UTXO":
        return cls(
            tx_id=data["txID"],
            output_index=int(data["outputIndex"]),
            asset_id=data["assetID"],
            amount=int(data["amount"]),
            owners=OutputOwners.from_dict(data["owners"]),
            source_chain=data.get("sourceChain"),
        )


class UTXOSet:
    """Immutable collection of UTXOs keyed by utxo_id, in a stable order."""

    def __init__(self, utxos: Iterable[UTXO] = ()):
        unique: Dict[str, UTXO] = {}
        for utxo in utxos:
            unique.setdefault(utxo.utxo_id, utxo)
        self._utxos: Tuple[UTXO, ...] = tuple(
            sorted(unique.values(), key=lambda u: (u.tx_id, u.output_index))
        )

    def __iter__(self) -> Iterator[UTXO]:
        return iter(self._utxos)

    def __len__(self) -> int:
        return len(self._utxos)

    def __bool__(self) -> bool:
        return bool(self._utxos)

    def __repr__(self) -> str:
        return f"UTXOSet({len(self._utxos)} utxos)"

    def for_asset(self, asset_id: AssetID) -> "UTXOSet":
        return UTXOSet(u for u in self._utxos if u.asset_id == asset_id)

    def balance(self, asset_id: AssetID) -> int:
        return sum(u.amount for u in self._utxos if u.asset_id == asset_id)


@dataclass(frozen=True)
class UTXOPage:
    """One page of a paginated getUTXOs response"""
    utxos: List[UTXO]
    end_index: Optional[str] = None
    num_fetched: int = 0


@dataclass(frozen=True)
class TransferableInput:
    """Reference to a UTXO being consumed, with the spend condition to satisfy"""
    tx_id: TxID
    output_index: int
    asset_id: AssetID
    amount: int
    owners: OutputOwners

    @classmethod
    def from_utxo(cls, utxo: UTXO) -> "TransferableInput":
        return cls(utxo.tx_id, utxo.output_index, utxo.asset_id, utxo.amount, utxo.owners)

    @property
    def utxo_id(self) -> str:
        return f"{self.tx_id}:{self.output_index}"

    def sort_key(self) -> Tuple:
        return (self.tx_id, self.output_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txID": self.tx_id,
            "outputIndex": self.output_index,
            "assetID": self.asset_id,
            "amount": str(self.amount),
            "owners": self.owners.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferableInput":
        return cls(
            tx_id=data["txID"],
            output_index=int(data["outputIndex"]),
            asset_id=data["assetID"],
            amount=int(data["amount"]),
            owners=OutputOwners.from_dict(data["owners"]),
        )


@dataclass(frozen=True)
class TransferableOutput:
    asset_id: AssetID
    amount: int
    owners: OutputOwners

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Output amount must be positive, got {self.amount}")

    def sort_key(self) -> Tuple:
        return (self.asset_id, self.owners.addresses, self.owners.threshold,
                self.owners.locktime, self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetID": self.asset_id,
            "amount": str(self.amount),
            "owners": self.owners.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferableOutput":
        return cls(
            asset_id=data["assetID"],
            amount=int(data["amount"]),
            owners=OutputOwners.from_dict(data["owners"]),
        )


@dataclass(frozen=True)
class UnsignedTransaction:
    """
    Unsigned base, export or import transaction.

    `outputs` stay on `chain_id`; `exported_outputs` are moved into the
    destination chain's atomic memory. `fee` is burned in `fee_asset_id`.
    """
    kind: TxKind
    chain_id: ChainID
    inputs: Tuple[TransferableInput, ...]
    outputs: Tuple[TransferableOutput, ...]
    fee: int
    fee_asset_id: AssetID
    memo: bytes = b""
    exported_outputs: Tuple[TransferableOutput, ...] = ()
    destination_chain: Optional[ChainID] = None
    source_chain: Optional[ChainID] = None

    def __post_init__(self):
        if len(self.memo) > MAX_MEMO_BYTES:
            raise ValueError(f"memo exceeds {MAX_MEMO_BYTES} bytes")
        if self.kind == TxKind.EXPORT and not self.destination_chain:
            raise ValueError("export transaction requires destination_chain")
        if self.kind == TxKind.IMPORT and not self.source_chain:
            raise ValueError("import transaction requires source_chain")

    def input_total(self, asset_id: AssetID) -> int:
        return sum(i.amount for i in self.inputs if i.asset_id == asset_id)

    def output_total(self, asset_id: AssetID) -> int:
        return sum(
            o.amount for o in self.outputs + self.exported_outputs if o.asset_id == asset_id
        )

    def burned(self, asset_id: AssetID) -> int:
        return self.input_total(asset_id) - self.output_total(asset_id)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "chainID": self.chain_id,
            "inputs": [i.to_dict() for i in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "fee": str(self.fee),
            "feeAssetID": self.fee_asset_id,
            "memo": self.memo.hex(),
        }
        if self.kind == TxKind.EXPORT:
            data["destinationChain"] = self.destination_chain
            data["exportedOutputs"] = [o.to_dict() for o in self.exported_outputs]
        if self.kind == TxKind.IMPORT:
            data["sourceChain"] = self.source_chain
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnsignedTransaction":
        return cls(
            kind=TxKind(data["kind"]),
            chain_id=data["chainID"],
            inputs=tuple(TransferableInput.from_dict(i) for i in data["inputs"]),
            outputs=tuple(TransferableOutput.from_dict(o) for o in data["outputs"]),
            fee=int(data["fee"]),
            fee_asset_id=data["feeAssetID"],
            memo=bytes.fromhex(data.get("memo", "")),
            exported_outputs=tuple(
                TransferableOutput.from_dict(o) for o in data.get("exportedOutputs", [])
            ),
            destination_chain=data.get("destinationChain"),
            source_chain=data.get("sourceChain"),
        )

    def to_bytes(self) -> bytes:
        return _canonical_bytes(self.to_dict())

    def hash(self) -> bytes:
        return hashlib.sha256(self.to_bytes()).digest()


@dataclass(frozen=True)
class Signature:
    public_key: str  # compressed secp256k1 point, hex
    signature: str   # DER-free r||s, hex


@dataclass(frozen=True)
class Credential:
    """Signatures authorising one input"""
    signatures: Tuple[Signature, ...]


@dataclass(frozen=True)
class SignedTransaction:
    unsigned: UnsignedTransaction
    credentials: Tuple[Credential, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if len(self.credentials) != len(self.unsigned.inputs):
            raise ValueError(
                f"expected {len(self.unsigned.inputs)} credentials, got {len(self.credentials)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unsignedTx": self.unsigned.to_dict(),
            "credentials": [
                [{"publicKey": s.public_key, "signature": s.signature} for s in c.signatures]
                for c in self.credentials
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedTransaction":
        return cls(
            unsigned=UnsignedTransaction.from_dict(data["unsignedTx"]),
            credentials=tuple(
                Credential(tuple(Signature(s["publicKey"], s["signature"]) for s in cred))
                for cred in data["credentials"]
            ),
        )

    def to_bytes(self) -> bytes:
        return _canonical_bytes(self.to_dict())

    @classmethod
    def from_bytes(cls, payload: bytes) -> "SignedTransaction":
        return cls.from_dict(json.loads(payload.decode("utf-8")))

    @property
    def tx_id(self) -> TxID:
        return cb58_encode(hashlib.sha256(self.to_bytes()).digest())


@dataclass(frozen=True)
class AssetDescription:
    asset_id: AssetID
    name: str
    symbol: str
    denomination: int = 9


@dataclass(frozen=True)
class TxFees:
    tx_fee: int
    create_asset_tx_fee: int = 0
