"""
Error taxonomy for interchain transfers

Retryable errors (transport level) carry ``retryable = True`` and are retried
inside the fetcher and submitter. Everything else reaches the transfer engine,
which wraps it in an ExportFailed / ImportFailed with phase context.
"""

from typing import Optional


class InterchainError(Exception):
    """Base exception for all interchain transfer errors."""

    retryable = False


class ConfigError(InterchainError):
    """Invalid or unreadable configuration."""


# Resolution

class ResolutionError(InterchainError):
    """Unknown asset symbol or chain alias."""


class AssetNotFoundError(ResolutionError):
    """Asset symbol is not registered on the chain."""

    def __init__(self, chain: str, symbol: str):
        self.chain = chain
        self.symbol = symbol
        super().__init__(f"Asset '{symbol}' not found on chain {chain}")


class ChainAliasError(ResolutionError):
    """Chain alias does not map to a registered blockchain ID."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Unknown chain alias '{alias}'")


# Transport

class TransportError(InterchainError):
    """Network or node failure. Safe to retry."""

    retryable = True


class FetchError(TransportError):
    """UTXO fetch failed after all retry attempts."""


class RPCError(InterchainError):
    """Node answered a query with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")


# Build / sign

class InsufficientFundsError(InterchainError):
    """Selected UTXOs cannot cover amount + fee."""

    def __init__(self, asset_id: str, required: int, available: int):
        self.asset_id = asset_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds for asset {asset_id}: "
            f"required {required}, available {available}"
        )


class MissingKeyError(InterchainError):
    """Keychain lacks a private key needed to satisfy an input's spend condition."""

    def __init__(self, utxo_ref: str, addresses):
        self.utxo_ref = utxo_ref
        self.addresses = tuple(addresses)
        super().__init__(
            f"No key available to spend {utxo_ref} (owners: {', '.join(self.addresses)})"
        )


# Submission / status

class SubmissionError(InterchainError):
    """Node refused the transaction (malformed, double spend, bad signature)."""


class TransactionRejected(SubmissionError):
    """Transaction reached the Rejected terminal status."""

    def __init__(self, chain: str, tx_id: str):
        self.chain = chain
        self.tx_id = tx_id
        super().__init__(f"Transaction {tx_id} rejected on chain {chain}")


class StatusTimeout(InterchainError):
    """Transaction did not reach a terminal status within the polling budget."""

    def __init__(self, chain: str, tx_id: str, attempts: int, last_status):
        self.chain = chain
        self.tx_id = tx_id
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Transaction {tx_id} on chain {chain} still {last_status} after {attempts} polls"
        )


class PropagationTimeout(InterchainError):
    """Exported UTXOs never became visible on the destination chain."""

    def __init__(self, destination_chain: str, export_tx_id: Optional[str], attempts: int):
        self.destination_chain = destination_chain
        self.export_tx_id = export_tx_id
        self.attempts = attempts
        super().__init__(
            f"Exported UTXOs from {export_tx_id} not visible on chain "
            f"{destination_chain} after {attempts} polls"
        )


class PollingCancelled(InterchainError):
    """Cancel event observed while waiting between polls."""


# Orchestration

EXPORT_REJECTED = "ExportRejected"
IMPORT_REJECTED = "ImportRejected"
# The ledger refused these payloads and a rebuild would be byte-identical
FINAL_REASONS = (EXPORT_REJECTED, IMPORT_REJECTED)


class TransferFailed(InterchainError):
    """
    A transfer leg failed.

    Carries the phase the transfer was in, a short reason code, and every
    transaction ID known at the time of failure so the caller can resume or
    reconcile without re-exporting.
    """

    leg = "transfer"

    def __init__(
        self,
        phase,
        reason: str,
        export_tx_id: Optional[str] = None,
        import_tx_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.phase = phase
        self.reason = reason
        self.export_tx_id = export_tx_id
        self.import_tx_id = import_tx_id
        detail = f": {message}" if message else ""
        super().__init__(
            f"{self.leg} leg failed in phase {getattr(phase, 'value', phase)} "
            f"({reason}){detail}"
        )

    @property
    def resumable(self) -> bool:
        """Import can still be attempted from the recorded export."""
        return self.export_tx_id is not None and self.reason not in FINAL_REASONS


class ExportFailed(TransferFailed):
    leg = "export"


class ImportFailed(TransferFailed):
    leg = "import"


class TransferCancelled(InterchainError):
    """Transfer stopped at a suspension point on request."""

    def __init__(self, phase, export_tx_id: Optional[str] = None):
        self.phase = phase
        self.export_tx_id = export_tx_id
        suffix = f" (export tx {export_tx_id})" if export_tx_id else ""
        super().__init__(f"Transfer cancelled in phase {getattr(phase, 'value', phase)}{suffix}")
