"""
Interchain Transfer Engine

Moves an asset balance from one chain to another with a two-phase
export/import sequence:
1. Resolve asset and destination chain ID
2. Fetch source UTXOs, build and sign the export
3. Submit the export and wait for acceptance
4. Wait for the exported UTXOs to propagate to the destination chain
5. Build, sign and submit the import
6. Wait for import acceptance

Every phase transition is checkpointed (when a history DB is configured), and
every failure after the export carries the export TxID so the import can be
resumed without exporting again.
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet, List, Optional, Tuple, Type

from loguru import logger

from .backoff import (
    DEFAULT_PROPAGATION_POLICY,
    DEFAULT_STATUS_POLICY,
    PollPolicy,
    RetryPolicy,
    wait_or_cancel,
)
from .builder import TransactionBuilder
from .client import ChainClient
from .encoding import format_amount
from .errors import (
    EXPORT_REJECTED,
    IMPORT_REJECTED,
    ConfigError,
    ExportFailed,
    ImportFailed,
    InterchainError,
    PollingCancelled,
    PropagationTimeout,
    StatusTimeout,
    TransactionRejected,
    TransferCancelled,
    TransferFailed,
)
from .fee_fetcher import FeeFetcher
from .fetcher import UTXOFetcher
from .keychain import KeyChain
from .models import (
    MAX_MEMO_BYTES,
    Address,
    AssetID,
    TransactionStatus,
    TxID,
    UnsignedTransaction,
    UTXOSet,
)
from .resolver import AssetResolver, ChainResolver
from .signer import sign
from .tracker import TransactionTracker
from .transaction_history import TransactionDetail, TransferHistoryDB, TransferRecord


class TransferPhase(str, Enum):
    INIT = "init"
    EXPORT_BUILDING = "export_building"
    EXPORT_SIGNED = "export_signed"
    EXPORT_SUBMITTED = "export_submitted"
    AWAITING_PROPAGATION = "awaiting_propagation"
    IMPORT_BUILDING = "import_building"
    IMPORT_SIGNED = "import_signed"
    IMPORT_SUBMITTED = "import_submitted"
    DONE = "done"
    EXPORT_FAILED = "export_failed"
    IMPORT_FAILED = "import_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferPhase.DONE, TransferPhase.EXPORT_FAILED,
                        TransferPhase.IMPORT_FAILED, TransferPhase.CANCELLED)


@dataclass
class TransferRequest:
    """Cross-chain transfer request"""
    amount: int  # smallest unit (nAVAX for AVAX)
    asset: str = "AVAX"
    source_chain: str = "X"
    destination_chain: str = "C"
    to_address: Optional[Address] = None  # defaults to the first destination keychain address
    memo: Optional[str] = None
    request_id: str = None
    requested_at: datetime = None

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"amount must be an int in the smallest unit, got {self.amount!r}")
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if self.source_chain == self.destination_chain:
            raise ValueError("source and destination chains must differ")
        if self.memo is not None and len(self.memo.encode("utf-8")) > MAX_MEMO_BYTES:
            raise ValueError(f"memo exceeds {MAX_MEMO_BYTES} bytes")
        if self.request_id is None:
            self.request_id = f"xfer_{uuid.uuid4().hex[:12]}"
        if self.requested_at is None:
            self.requested_at = datetime.now(timezone.utc)


@dataclass
class TransferResult:
    """Transfer result"""
    request_id: str
    success: bool
    phase: TransferPhase
    source_chain: str
    destination_chain: str
    asset: str
    amount: int
    to_address: Optional[Address]
    export_tx_id: Optional[TxID]
    import_tx_id: Optional[TxID]
    export_fee: int
    import_fee: int
    received_amount: int
    total_time_seconds: float
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    error: Optional[InterchainError] = field(default=None, repr=False, compare=False)
    completed_at: Optional[datetime] = None

    @property
    def resumable(self) -> bool:
        return (isinstance(self.error, TransferFailed) and self.error.resumable) or (
            self.phase == TransferPhase.CANCELLED and self.export_tx_id is not None
        )

    def raise_for_status(self):
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'error'}
        data['phase'] = self.phase.value
        if self.completed_at:
            data['completed_at'] = self.completed_at.isoformat()
        return data


@dataclass
class SendResult:
    """Same-chain transfer result"""
    chain: str
    tx_id: TxID
    amount: int
    fee: int
    status: TransactionStatus
    balance_before: int
    balance_after: int


@dataclass
class TransferContext:
    """
    Everything a transfer engine needs, passed in explicitly

    Keychains are keyed by chain alias and only read during signing, so one
    context can serve many concurrent transfers.
    """
    client: ChainClient
    keychains: Dict[str, KeyChain]
    status_policy: PollPolicy = DEFAULT_STATUS_POLICY
    propagation_policy: PollPolicy = DEFAULT_PROPAGATION_POLICY
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    fee_asset: str = "AVAX"
    fallback_fees: Dict[str, int] = field(default_factory=dict)
    confirm_export: bool = True
    history: Optional[TransferHistoryDB] = None


@dataclass
class _TransferState:
    phase: TransferPhase = TransferPhase.INIT
    export_tx_id: Optional[TxID] = None
    import_tx_id: Optional[TxID] = None
    export_fee: int = 0
    import_fee: int = 0
    received_amount: int = 0


@dataclass
class _BuildLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TransferHandle:
    """Awaitable running transfer with cooperative cancellation"""

    def __init__(self, request: TransferRequest, task: "asyncio.Task[TransferResult]",
                 cancel_event: asyncio.Event):
        self.request = request
        self.task = task
        self._cancel_event = cancel_event

    def cancel(self):
        """Stop at the next suspension point; in-flight submissions still complete."""
        self._cancel_event.set()

    def done(self) -> bool:
        return self.task.done()

    def __await__(self):
        return self.task.__await__()


class InterchainTransferEngine:
    """
    Cross-chain transfer orchestrator

    Safety Features:
    1. Deterministic builds, serialised per source address set
    2. Export acceptance confirmed before waiting on propagation
    3. Propagation waits are bounded and cancellable
    4. Rejected is never reported as success
    5. Export TxID checkpointed for resume without re-export
    """

    def __init__(self, context: TransferContext):
        """
        Initialize transfer engine

        Args:
            context: Client, keychains, polling policies and optional history DB
        """
        self.context = context
        self.client = context.client
        self.history = context.history

        self.assets = AssetResolver(context.client)
        self.chains = ChainResolver(context.client)
        self.fetcher = UTXOFetcher(context.client, retry_policy=context.retry_policy)
        self.tracker = TransactionTracker(context.client, retry_policy=context.retry_policy)
        self.fee_fetcher = FeeFetcher(context.client, fallback_fees=context.fallback_fees)

        self._build_locks: Dict[Tuple[str, FrozenSet[Address]], _BuildLock] = {}
        self.transfer_history: List[TransferResult] = []

        logger.info("Interchain Transfer Engine initialized")
        logger.info(f"  Chains with keys: {', '.join(sorted(context.keychains))}")
        logger.info(f"  Export confirmation: {'enabled' if context.confirm_export else 'disabled'}")
        logger.info(f"  Checkpointing: {'enabled' if self.history else 'disabled'}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def keychain(self, alias: str) -> KeyChain:
        keychain = self.context.keychains.get(alias)
        if keychain is None or not len(keychain):
            raise ConfigError(f"No keys configured for chain {alias}")
        return keychain

    @contextlib.asynccontextmanager
    async def _build_lock(self, chain: str, addresses: List[Address]) -> AsyncIterator[None]:
        """Serialise builds per source address set; the entry is dropped once unused."""
        key = (chain, frozenset(addresses))
        entry = self._build_locks.get(key)
        if entry is None:
            entry = self._build_locks[key] = _BuildLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._build_locks[key]

    def _set_phase(self, request: TransferRequest, state: _TransferState, phase: TransferPhase,
                   failure: Optional[TransferFailed] = None):
        state.phase = phase
        logger.debug(f"[{request.request_id}] phase -> {phase.value}")
        if self.history:
            self.history.update_phase(
                request.request_id,
                phase.value,
                export_tx_id=state.export_tx_id,
                import_tx_id=state.import_tx_id,
                failure_reason=failure.reason if failure else None,
                error_message=str(failure.__cause__ or failure) if failure else None,
                completed=phase.is_terminal,
                export_fee=state.export_fee or None,
                import_fee=state.import_fee or None,
                received_amount=state.received_amount or None,
            )

    def _record_tx(self, request: TransferRequest, tx_id: TxID, leg: str, chain: str):
        if self.history:
            self.history.record_transaction(TransactionDetail(
                tx_id=tx_id,
                transfer_request_id=request.request_id,
                leg=leg,
                chain=chain,
                status=TransactionStatus.PROCESSING.value,
                created_at=datetime.now(timezone.utc),
            ))

    def _confirm_tx(self, tx_id: TxID, status: TransactionStatus):
        if self.history:
            confirmed_at = datetime.now(timezone.utc) if status == TransactionStatus.ACCEPTED else None
            self.history.update_transaction_status(tx_id, status.value, confirmed_at)

    def _failure(self, cls: Type[TransferFailed], state: _TransferState, reason: str,
                 error: Exception) -> TransferFailed:
        failure = cls(state.phase, reason, state.export_tx_id, state.import_tx_id, str(error))
        failure.__cause__ = error
        return failure

    async def _fee_asset_id(self, chain: str) -> AssetID:
        return await self.assets.resolve(chain, self.context.fee_asset)

    # ------------------------------------------------------------------
    # Export leg
    # ------------------------------------------------------------------

    async def _export(self, request: TransferRequest, state: _TransferState):
        source_keys = self.keychain(request.source_chain)
        destination_keys = self.keychain(request.destination_chain)
        self._set_phase(request, state, TransferPhase.EXPORT_BUILDING)

        asset_id = await self.assets.resolve(request.source_chain, request.asset)
        fee_asset_id = await self._fee_asset_id(request.source_chain)
        source_id = await self.chains.resolve(request.source_chain)
        destination_id = await self.chains.resolve(request.destination_chain)
        fee, _ = await self.fee_fetcher.fetch_fee(request.source_chain)

        from_addresses = source_keys.get_address_strings()
        async with self._build_lock(request.source_chain, from_addresses):
            utxos = await self.fetcher.fetch(request.source_chain, from_addresses)
            logger.info(
                f"Current {request.source_chain}-chain balance: "
                f"{format_amount(utxos.balance(asset_id))} {request.asset}"
            )

            builder = TransactionBuilder(source_id, fee_asset_id, fee)
            unsigned = builder.build_export(
                list(utxos),
                request.amount,
                asset_id,
                to_addresses=destination_keys.get_address_strings(),
                from_addresses=from_addresses,
                change_addresses=from_addresses,
                destination_chain=destination_id,
                memo=request.memo,
            )
            signed = sign(unsigned, source_keys)
            self._set_phase(request, state, TransferPhase.EXPORT_SIGNED)

            tx_id = await self.tracker.submit(request.source_chain, signed)

        state.export_tx_id = tx_id
        state.export_fee = fee
        self._record_tx(request, tx_id, "export", request.source_chain)
        self._set_phase(request, state, TransferPhase.EXPORT_SUBMITTED)
        logger.info(f"✓ {request.source_chain}-chain export TX: {tx_id}")

    async def _confirm_export(self, request: TransferRequest, state: _TransferState,
                              cancel_event: Optional[asyncio.Event]):
        try:
            status = await self.tracker.wait_for_terminal(
                request.source_chain, state.export_tx_id,
                self.context.status_policy, cancel_event,
            )
        except TransactionRejected as e:
            self._confirm_tx(state.export_tx_id, TransactionStatus.REJECTED)
            raise self._failure(ExportFailed, state, EXPORT_REJECTED, e)
        except StatusTimeout as e:
            raise self._failure(ExportFailed, state, "ExportConfirmationTimeout", e)
        except PollingCancelled:
            raise
        except Exception as e:
            raise self._failure(ExportFailed, state, type(e).__name__, e)
        self._confirm_tx(state.export_tx_id, status)

    # ------------------------------------------------------------------
    # Import leg
    # ------------------------------------------------------------------

    async def _await_propagation(self, request: TransferRequest, state: _TransferState,
                                 source_id: str, asset_id: AssetID,
                                 cancel_event: Optional[asyncio.Event]) -> UTXOSet:
        """
        Poll the destination chain until this export's outputs show up

        Returns:
            Every atomic UTXO from the source chain owned by the destination keys
        """
        self._set_phase(request, state, TransferPhase.AWAITING_PROPAGATION)
        addresses = self.keychain(request.destination_chain).get_address_strings()
        policy = self.context.propagation_policy

        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.timeout_seconds
        intervals = policy.intervals()
        attempts = 0

        while True:
            attempts += 1
            utxos = await self.fetcher.fetch(request.destination_chain, addresses,
                                             source_chain=source_id)
            exported = UTXOSet(u for u in utxos if u.tx_id == state.export_tx_id)
            if exported.for_asset(asset_id):
                logger.info(
                    f"✓ Exported UTXOs visible on {request.destination_chain}-chain "
                    f"after {attempts} polls"
                )
                return utxos

            delay = next(intervals, None)
            if delay is None or loop.time() + delay > deadline:
                raise PropagationTimeout(request.destination_chain, state.export_tx_id, attempts)
            logger.debug(
                f"Waiting {delay:.1f}s for exported UTXOs on {request.destination_chain} "
                f"(poll {attempts}/{policy.max_attempts})"
            )
            if await wait_or_cancel(delay, cancel_event):
                raise PollingCancelled(f"Cancelled while awaiting propagation of {state.export_tx_id}")

    async def _pending_import_accepted(self, request: TransferRequest, state: _TransferState,
                                       asset_id: AssetID, fee_asset_id: AssetID,
                                       cancel_event: Optional[asyncio.Event]) -> bool:
        """
        On resume: settle an import that was already submitted, if any

        Raises:
            TransactionRejected: the ledger refused it; a rebuild would be the same payload
        """
        status = await self.tracker.poll_status(request.destination_chain, state.import_tx_id)
        if status == TransactionStatus.REJECTED:
            self._confirm_tx(state.import_tx_id, status)
            raise TransactionRejected(request.destination_chain, state.import_tx_id)
        if status == TransactionStatus.UNKNOWN:
            logger.warning(f"⚠ Previous import {state.import_tx_id} is unknown to the node, rebuilding")
            return False
        if not state.received_amount:
            # No checkpoint: the import paid the exported amount less its fee
            fee, _ = await self.fee_fetcher.fetch_fee(request.destination_chain)
            state.import_fee = fee
            state.received_amount = request.amount - fee if asset_id == fee_asset_id else request.amount
        self._set_phase(request, state, TransferPhase.IMPORT_SUBMITTED)
        await self.tracker.wait_for_terminal(
            request.destination_chain, state.import_tx_id,
            self.context.status_policy, cancel_event,
        )
        return True

    async def _import(self, request: TransferRequest, state: _TransferState,
                      cancel_event: Optional[asyncio.Event]):
        destination_keys = self.keychain(request.destination_chain)
        to_address = request.to_address or destination_keys.get_address_strings()[0]

        source_id = await self.chains.resolve(request.source_chain)
        destination_id = await self.chains.resolve(request.destination_chain)
        # asset IDs are chain-global
        asset_id = await self.assets.resolve(request.source_chain, request.asset)
        fee_asset_id = await self._fee_asset_id(request.source_chain)

        if state.import_tx_id and await self._pending_import_accepted(
                request, state, asset_id, fee_asset_id, cancel_event):
            self._confirm_tx(state.import_tx_id, TransactionStatus.ACCEPTED)
            return

        atomic = await self._await_propagation(request, state, source_id, asset_id, cancel_event)
        # Import only this export's outputs; other atomic UTXOs belong to other transfers
        utxos = [u for u in atomic
                 if u.tx_id == state.export_tx_id
                 or (u.asset_id == fee_asset_id and asset_id != fee_asset_id)]

        self._set_phase(request, state, TransferPhase.IMPORT_BUILDING)
        fee, _ = await self.fee_fetcher.fetch_fee(request.destination_chain)
        from_addresses = destination_keys.get_address_strings()
        builder = TransactionBuilder(destination_id, fee_asset_id, fee)
        unsigned = builder.build_import(
            utxos,
            None,
            asset_id,
            to_addresses=[to_address],
            from_addresses=from_addresses,
            change_addresses=from_addresses,
            source_chain=source_id,
            memo=request.memo,
        )
        signed = sign(unsigned, destination_keys)
        self._set_phase(request, state, TransferPhase.IMPORT_SIGNED)

        tx_id = await self.tracker.submit(request.destination_chain, signed)
        state.import_tx_id = tx_id
        state.import_fee = fee
        state.received_amount = _paid_to(unsigned, asset_id, to_address)
        self._record_tx(request, tx_id, "import", request.destination_chain)
        self._set_phase(request, state, TransferPhase.IMPORT_SUBMITTED)
        logger.info(f"✓ {request.destination_chain}-chain import TX: {tx_id}")

        status = await self.tracker.wait_for_terminal(
            request.destination_chain, tx_id, self.context.status_policy, cancel_event,
        )
        self._confirm_tx(tx_id, status)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _run(self, request: TransferRequest, state: _TransferState,
                   cancel_event: Optional[asyncio.Event]) -> TransferResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        error: Optional[InterchainError] = None
        resumed = state.export_tx_id is not None

        if self.history:
            self.history.record_transfer(TransferRecord(
                request_id=request.request_id,
                source_chain=request.source_chain,
                destination_chain=request.destination_chain,
                asset=request.asset,
                amount=request.amount,
                to_address=request.to_address,
                phase=state.phase.value,
                export_tx_id=state.export_tx_id,
                memo=request.memo,
                created_at=request.requested_at,
            ))

        try:
            if state.export_tx_id is None:
                try:
                    await self._export(request, state)
                except Exception as e:
                    raise self._failure(ExportFailed, state, type(e).__name__, e)

            if self.context.confirm_export or resumed:
                await self._confirm_export(request, state, cancel_event)

            try:
                await self._import(request, state, cancel_event)
            except (PollingCancelled, TransferFailed):
                raise
            except TransactionRejected as e:
                raise self._failure(ImportFailed, state, IMPORT_REJECTED, e)
            except StatusTimeout as e:
                raise self._failure(ImportFailed, state, "ImportConfirmationTimeout", e)
            except Exception as e:
                raise self._failure(ImportFailed, state, type(e).__name__, e)

            self._set_phase(request, state, TransferPhase.DONE)
            logger.info(f"✓ Transfer {request.request_id} complete: "
                        f"{format_amount(state.received_amount)} {request.asset} received")

        except PollingCancelled:
            error = TransferCancelled(state.phase, state.export_tx_id)
            self._set_phase(request, state, TransferPhase.CANCELLED)
            logger.warning(f"⚠ {error}")

        except TransferFailed as failure:
            error = failure
            terminal = (TransferPhase.EXPORT_FAILED if isinstance(failure, ExportFailed)
                        else TransferPhase.IMPORT_FAILED)
            self._set_phase(request, state, terminal, failure)
            if self.history:
                self.history.record_error(request.request_id, failure.reason, str(failure))
            logger.error(f"✗ {failure}")
            if failure.resumable:
                logger.error(f"  Resume with export TX {failure.export_tx_id}; do not re-export")

        result = TransferResult(
            request_id=request.request_id,
            success=state.phase == TransferPhase.DONE,
            phase=state.phase,
            source_chain=request.source_chain,
            destination_chain=request.destination_chain,
            asset=request.asset,
            amount=request.amount,
            to_address=request.to_address,
            export_tx_id=state.export_tx_id,
            import_tx_id=state.import_tx_id,
            export_fee=state.export_fee,
            import_fee=state.import_fee,
            received_amount=state.received_amount,
            total_time_seconds=loop.time() - started,
            failure_reason=getattr(error, 'reason', None),
            error_message=str(error) if error else None,
            error=error,
            completed_at=datetime.now(timezone.utc),
        )
        self.transfer_history.append(result)
        return result

    async def transfer(self, request: TransferRequest,
                       cancel_event: Optional[asyncio.Event] = None) -> TransferResult:
        """
        Execute a complete export/import transfer

        Args:
            request: Transfer request
            cancel_event: Set to stop at the next suspension point

        Returns:
            TransferResult (check `success`, or call `raise_for_status()`)
        """
        logger.info(f"Starting transfer: {request.request_id}")
        logger.info(f"  From: {request.source_chain}-chain")
        logger.info(f"  To: {request.destination_chain}-chain")
        logger.info(f"  Amount: {format_amount(request.amount)} {request.asset}")
        return await self._run(request, _TransferState(), cancel_event)

    def start(self, request: TransferRequest) -> TransferHandle:
        """Run `transfer` as a task; must be called from a running event loop."""
        cancel_event = asyncio.Event()
        task = asyncio.get_running_loop().create_task(
            self.transfer(request, cancel_event), name=f"transfer-{request.request_id}"
        )
        return TransferHandle(request, task, cancel_event)

    async def resume(self, request: TransferRequest, export_tx_id: TxID,
                     import_tx_id: Optional[TxID] = None,
                     cancel_event: Optional[asyncio.Event] = None) -> TransferResult:
        """
        Continue a transfer whose export was already submitted

        Never builds or submits another export.
        """
        logger.info(f"Resuming transfer {request.request_id} from export TX {export_tx_id}")
        state = _TransferState(
            phase=TransferPhase.EXPORT_SUBMITTED,
            export_tx_id=export_tx_id,
            import_tx_id=import_tx_id,
        )
        return await self._run(request, state, cancel_event)

    async def resume_from_history(self, request_id: str,
                                  cancel_event: Optional[asyncio.Event] = None) -> TransferResult:
        """Resume a checkpointed transfer by request ID."""
        if not self.history:
            raise ConfigError("resume_from_history requires a history database")
        record = self.history.get_transfer(request_id)
        if record is None:
            raise ConfigError(f"No recorded transfer {request_id}")
        if record.export_tx_id is None:
            raise ConfigError(f"Transfer {request_id} never submitted an export; start a new transfer")

        request = TransferRequest(
            amount=record.amount,
            asset=record.asset,
            source_chain=record.source_chain,
            destination_chain=record.destination_chain,
            to_address=record.to_address,
            memo=record.memo,
            request_id=record.request_id,
            requested_at=record.created_at,
        )
        logger.info(f"Resuming transfer {request_id} from export TX {record.export_tx_id}")
        state = _TransferState(
            phase=TransferPhase.EXPORT_SUBMITTED,
            export_tx_id=record.export_tx_id,
            import_tx_id=record.import_tx_id,
            export_fee=record.export_fee,
            import_fee=record.import_fee,
            received_amount=record.received_amount,
        )
        return await self._run(request, state, cancel_event)

    async def send(self, chain: str, amount: int, to_address: Address, asset: str = "AVAX",
                   memo: Optional[str] = None) -> SendResult:
        """
        Same-chain transfer with status follow-up

        Raises:
            InsufficientFundsError, MissingKeyError, SubmissionError,
            TransactionRejected, StatusTimeout
        """
        keys = self.keychain(chain)
        addresses = keys.get_address_strings()
        asset_id = await self.assets.resolve(chain, asset)
        fee_asset_id = await self._fee_asset_id(chain)
        chain_id = await self.chains.resolve(chain)
        fee, _ = await self.fee_fetcher.fetch_fee(chain)

        balance_before = await self.client.get_balance(chain, addresses[0], asset_id)
        logger.info(f"Balance before sending tx: {format_amount(balance_before)} {asset}")

        async with self._build_lock(chain, addresses):
            utxos = await self.fetcher.fetch(chain, addresses)
            unsigned = TransactionBuilder(chain_id, fee_asset_id, fee).build_transfer(
                list(utxos), amount, asset_id,
                to_addresses=[to_address],
                from_addresses=addresses,
                change_addresses=addresses,
                memo=memo,
            )
            tx_id = await self.tracker.submit(chain, sign(unsigned, keys))

        status = await self.tracker.wait_for_terminal(chain, tx_id, self.context.status_policy)
        balance_after = await self.client.get_balance(chain, addresses[0], asset_id)
        logger.info(f"Balance after sending tx: {format_amount(balance_after)} {asset}")

        return SendResult(chain, tx_id, amount, fee, status, balance_before, balance_after)

    async def close(self):
        """Close the client session and history database"""
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
        if self.history:
            self.history.close()
        logger.info("Interchain Transfer Engine closed")


def _paid_to(unsigned: UnsignedTransaction, asset_id: AssetID, address: Address) -> int:
    return sum(o.amount for o in unsigned.outputs
               if o.asset_id == asset_id and address in o.owners.addresses)


async def graceful_shutdown(engine: InterchainTransferEngine, timeout: float = 15.0):
    """
    Close the engine and cancel leftover background tasks

    Args:
        engine: Engine to shut down
        timeout: Maximum time to wait for engine.close() (seconds)

    Example:
        engine = InterchainTransferEngine(context)
        try:
            # ... use engine ...
        finally:
            await graceful_shutdown(engine)
    """
    logger.info("Starting graceful shutdown...")
    try:
        await asyncio.wait_for(engine.close(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"⚠ Engine close timed out after {timeout}s")

    current = asyncio.current_task()
    pending = [task for task in asyncio.all_tasks() if not task.done() and task is not current]
    if pending:
        logger.debug(f"Cancelling {len(pending)} remaining background tasks")
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=5.0)

    logger.info("✓ Graceful shutdown complete")
