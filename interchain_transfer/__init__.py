"""
Interchain Transfer

Moves asset balances between chains of a multi-chain UTXO network with a
two-phase export/import sequence.

Components:
- transfer_engine: Orchestrator (export -> confirm -> propagate -> import)
- resolver: Asset symbol and chain alias resolution
- fetcher: Paged UTXO set fetching with transport retries
- builder: Deterministic base/export/import transaction building
- signer / keychain: secp256k1 signing with chain-scoped keychains
- tracker: Submission and status polling
- rpc_client: JSON-RPC node client (aiohttp)
- devnet: In-process network for dry runs and tests
- transaction_history: SQLite checkpoints for resume without re-export

Transfer Phases:
1. Export Building - Resolve asset/chain, fetch UTXOs, build export
2. Export Signed / Submitted - Sign, issue, wait for Accepted
3. Awaiting Propagation - Poll destination for atomic UTXOs
4. Import Building / Signed / Submitted - Build, sign, issue, wait for Accepted
5. Done (or ExportFailed / ImportFailed / Cancelled)
"""

from .backoff import (
    PollPolicy,
    RetryPolicy,
)
from .builder import (
    TransactionBuilder,
)
from .config import (
    TransferSettings,
    load_settings,
    setup_logging,
)
from .devnet import (
    LocalNetwork,
)
from .errors import (
    ExportFailed,
    ImportFailed,
    InterchainError,
    TransferCancelled,
)
from .keychain import (
    KeyChain,
)
from .models import (
    TransactionStatus,
    UTXO,
    UTXOSet,
)
from .rpc_client import (
    AvalancheRPCClient,
)
from .transaction_history import (
    TransferHistoryDB,
    TransferRecord,
)
from .transfer_engine import (
    InterchainTransferEngine,
    SendResult,
    TransferContext,
    TransferHandle,
    TransferPhase,
    TransferRequest,
    TransferResult,
    graceful_shutdown,
)

__all__ = [
    # Main engine
    'InterchainTransferEngine',
    'TransferContext',
    'TransferRequest',
    'TransferResult',
    'TransferPhase',
    'TransferHandle',
    'SendResult',
    'graceful_shutdown',

    # Building blocks
    'TransactionBuilder',
    'KeyChain',
    'TransactionStatus',
    'UTXO',
    'UTXOSet',
    'PollPolicy',
    'RetryPolicy',

    # Clients
    'AvalancheRPCClient',
    'LocalNetwork',

    # Configuration
    'TransferSettings',
    'load_settings',
    'setup_logging',

    # History tracking
    'TransferHistoryDB',
    'TransferRecord',

    # Errors
    'InterchainError',
    'ExportFailed',
    'ImportFailed',
    'TransferCancelled',
]

__version__ = '1.0.0'
