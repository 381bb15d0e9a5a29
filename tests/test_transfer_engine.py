"""
Tests for InterchainTransferEngine against LocalNetwork.
"""

import asyncio

import pytest

from interchain_transfer.backoff import PollPolicy
from interchain_transfer.devnet import LocalNetwork
from interchain_transfer.errors import (
    ConfigError,
    ExportFailed,
    ImportFailed,
    TransferCancelled,
    TransportError,
)
from interchain_transfer.models import TransactionStatus, TxKind
from interchain_transfer.transfer_engine import TransferPhase, TransferRequest

from conftest import make_keychains

AMOUNT = 50_000_000
FEE = 1_000_000


async def balance(network, alias, address):
    return await network.get_balance(alias, address, network.avax_asset_id)


def test_request_validation():
    with pytest.raises(ValueError):
        TransferRequest(amount=0)
    with pytest.raises(ValueError):
        TransferRequest(amount=0.5)
    with pytest.raises(ValueError):
        TransferRequest(amount=10, source_chain="X", destination_chain="X")
    with pytest.raises(ValueError):
        TransferRequest(amount=10, memo="m" * 300)
    assert TransferRequest(amount=10).request_id.startswith("xfer_")


@pytest.mark.asyncio
async def test_same_chain_send(network, keychains, x_address, engine):
    network.fund("X", x_address, 100_000_000)
    recipient = make_keychains("0x" + "33" * 32, aliases=("X",))["X"].get_address_strings()[0]

    result = await engine.send("X", AMOUNT, recipient, memo="Figment Pathway")

    assert result.status == TransactionStatus.ACCEPTED
    assert result.balance_before == 100_000_000
    assert result.balance_after == 100_000_000 - AMOUNT - FEE
    assert await balance(network, "X", recipient) == AMOUNT


@pytest.mark.asyncio
async def test_export_import_round_trip(network, x_address, c_address, funded_engine, history):
    """Test X -> C transfer: destination gains amount less the import fee."""
    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.success
    assert result.phase == TransferPhase.DONE
    assert result.export_tx_id and result.import_tx_id
    assert result.received_amount == AMOUNT - FEE
    assert await balance(network, "X", x_address) == 100_000_000 - AMOUNT - FEE
    assert await balance(network, "C", c_address) == AMOUNT - FEE
    assert network.exports_issued() == 1

    record = history.get_transfer(result.request_id)
    assert record.phase == "done"
    assert record.export_tx_id == result.export_tx_id
    assert record.import_tx_id == result.import_tx_id
    assert record.completed_at is not None
    legs = [tx["leg"] for tx in history.get_transactions(result.request_id)]
    assert legs == ["export", "import"]


@pytest.mark.asyncio
async def test_import_to_explicit_address(network, funded_engine):
    recipient = make_keychains("0x" + "44" * 32, aliases=("C",))["C"].get_address_strings()[0]

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT, to_address=recipient))

    assert result.success
    assert await balance(network, "C", recipient) == AMOUNT - FEE


@pytest.mark.asyncio
async def test_insufficient_funds_submits_nothing(network, x_address, make_engine):
    network.fund("X", x_address, 10_000_000)
    engine = make_engine()

    result = await engine.transfer(TransferRequest(amount=AMOUNT))

    assert not result.success
    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "InsufficientFundsError"
    assert result.export_tx_id is None
    assert not result.resumable
    assert network.calls["issue_tx"] == 0
    with pytest.raises(ExportFailed):
        result.raise_for_status()


@pytest.mark.asyncio
async def test_unknown_asset_fails_export(funded_engine):
    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT, asset="NOPE"))

    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "AssetNotFoundError"


@pytest.mark.asyncio
async def test_rejected_export_is_not_resumable(network, x_address, funded_engine, history):
    network.reject_next("X")

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "ExportRejected"
    assert result.export_tx_id is not None
    assert not result.resumable
    assert history.get_resumable_transfers() == []
    # rejected inputs are spendable again
    assert await balance(network, "X", x_address) == 100_000_000


@pytest.mark.asyncio
async def test_rejected_import_reports_failure(network, funded_engine):
    network.reject_next("C")

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert not result.success
    assert result.phase == TransferPhase.IMPORT_FAILED
    assert result.failure_reason == "ImportRejected"
    assert result.export_tx_id and result.import_tx_id
    assert isinstance(result.error, ImportFailed)
    assert not result.resumable


@pytest.mark.asyncio
async def test_propagation_timeout_then_resume_without_reexport(x_address, c_address, keychains,
                                                               make_engine, history):
    slow = LocalNetwork(propagation_polls=1000)
    slow.fund("X", x_address, 100_000_000)
    engine = make_engine(client=slow, history=history)

    failed = await engine.transfer(TransferRequest(amount=AMOUNT))

    assert failed.phase == TransferPhase.IMPORT_FAILED
    assert failed.failure_reason == "PropagationTimeout"
    assert failed.resumable
    assert failed.error.export_tx_id == failed.export_tx_id
    assert [r.request_id for r in history.get_resumable_transfers()] == [failed.request_id]

    slow.settle()
    resumed = await engine.resume_from_history(failed.request_id)

    assert resumed.success
    assert resumed.export_tx_id == failed.export_tx_id
    assert slow.exports_issued() == 1
    assert await balance(slow, "C", c_address) == AMOUNT - FEE
    assert history.get_transfer(failed.request_id).phase == "done"


@pytest.mark.asyncio
async def test_resume_by_export_tx_id(x_address, c_address, make_engine):
    slow = LocalNetwork(propagation_polls=1000)
    slow.fund("X", x_address, 100_000_000)
    engine = make_engine(client=slow)
    request = TransferRequest(amount=AMOUNT)

    failed = await engine.transfer(request)
    slow.settle()
    resumed = await engine.resume(request, failed.export_tx_id)

    assert resumed.success
    assert slow.exports_issued() == 1
    assert [kind for _, kind, _ in slow.issued] == [TxKind.EXPORT, TxKind.IMPORT]


@pytest.mark.asyncio
async def test_resume_after_import_already_accepted(network, funded_engine, history):
    """Test that resuming a completed import does not import twice."""
    done = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    again = await funded_engine.resume(
        TransferRequest(amount=AMOUNT, request_id=done.request_id),
        done.export_tx_id,
        done.import_tx_id,
    )

    assert again.success
    assert len(network.issued) == 2
    assert again.received_amount == AMOUNT - FEE
    assert again.import_fee == FEE


@pytest.mark.asyncio
async def test_resume_from_history_requires_export(funded_engine, make_engine):
    with pytest.raises(ConfigError):
        await funded_engine.resume_from_history("never-recorded")
    with pytest.raises(ConfigError):
        await make_engine().resume_from_history("anything")


@pytest.mark.asyncio
async def test_cancel_before_polling_keeps_export_tx_id(network, funded_engine):
    cancel = asyncio.Event()
    cancel.set()

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT), cancel_event=cancel)

    assert result.phase == TransferPhase.CANCELLED
    assert isinstance(result.error, TransferCancelled)
    assert result.export_tx_id is not None
    assert result.resumable
    assert network.exports_issued() == 1


@pytest.mark.asyncio
async def test_cancel_handle_during_propagation(x_address, c_address, make_engine, history):
    slow = LocalNetwork(propagation_polls=10**6)
    slow.fund("X", x_address, 100_000_000)
    waiting = PollPolicy(interval_seconds=0.01, backoff=1.0, max_interval_seconds=0.01,
                         max_attempts=10_000, timeout_seconds=60.0)
    engine = make_engine(client=slow, propagation_policy=waiting, history=history)

    handle = engine.start(TransferRequest(amount=AMOUNT))
    while not slow.exports_issued():
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)
    handle.cancel()
    result = await handle

    assert handle.done()
    assert result.phase == TransferPhase.CANCELLED
    assert result.export_tx_id is not None
    assert result.import_tx_id is None

    slow.settle()
    resumed = await engine.resume_from_history(result.request_id)
    assert resumed.success
    assert slow.exports_issued() == 1
    assert await balance(slow, "C", c_address) == AMOUNT - FEE


@pytest.mark.asyncio
async def test_transient_transport_faults_are_retried(network, funded_engine):
    network.inject_fault("get_utxos", TransportError("reset"), times=2)
    network.inject_fault("issue_tx", TransportError("lost"))

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.success
    assert network.exports_issued() == 1


@pytest.mark.asyncio
async def test_persistent_fetch_failure_fails_export(network, funded_engine):
    network.inject_fault("get_utxos", TransportError("down"), times=3)

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "FetchError"
    assert network.calls["issue_tx"] == 0


@pytest.mark.asyncio
async def test_concurrent_transfers_from_one_address(network, x_address, c_address, make_engine):
    """Test two transfers sharing a source address never spend the same UTXO."""
    network.fund("X", x_address, 60_000_000)
    network.fund("X", x_address, 60_000_000)
    engine = make_engine()

    first, second = await asyncio.gather(
        engine.transfer(TransferRequest(amount=AMOUNT)),
        engine.transfer(TransferRequest(amount=AMOUNT)),
    )

    assert first.success and second.success
    assert network.exports_issued() == 2
    assert await balance(network, "X", x_address) == 2 * (60_000_000 - AMOUNT - FEE)
    assert engine._build_locks == {}


@pytest.mark.asyncio
async def test_export_without_confirmation(network, c_address, make_engine, x_address):
    network.fund("X", x_address, 100_000_000)
    engine = make_engine(confirm_export=False)

    result = await engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.success
    assert await balance(network, "C", c_address) == AMOUNT - FEE


@pytest.mark.asyncio
async def test_missing_destination_keys_fails_export(network, x_address, make_engine):
    network.fund("X", x_address, 100_000_000)
    engine = make_engine(keychains=make_keychains(aliases=("X",)))

    result = await engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "ConfigError"
    assert network.calls["issue_tx"] == 0


def test_result_to_dict_is_serialisable():
    from interchain_transfer.transfer_engine import TransferResult

    result = TransferResult(
        request_id="r1", success=False, phase=TransferPhase.IMPORT_FAILED,
        source_chain="X", destination_chain="C", asset="AVAX", amount=AMOUNT,
        to_address=None, export_tx_id="tx1", import_tx_id=None, export_fee=FEE,
        import_fee=0, received_amount=0, total_time_seconds=1.0,
        failure_reason="PropagationTimeout",
        error=ImportFailed(TransferPhase.AWAITING_PROPAGATION, "PropagationTimeout", "tx1"),
    )

    data = result.to_dict()
    assert data["phase"] == "import_failed"
    assert "error" not in data
    assert result.resumable


@pytest.mark.asyncio
async def test_resume_after_rejected_import_never_resends(network, funded_engine, history):
    network.reject_next("C")
    failed = await funded_engine.transfer(TransferRequest(amount=AMOUNT))
    assert history.get_resumable_transfers() == []

    again = await funded_engine.resume(
        TransferRequest(amount=AMOUNT, request_id=failed.request_id),
        failed.export_tx_id,
        failed.import_tx_id,
    )

    assert again.phase == TransferPhase.IMPORT_FAILED
    assert again.failure_reason == "ImportRejected"
    assert again.import_tx_id == failed.import_tx_id
    assert not again.resumable
    assert len(network.issued) == 2


@pytest.mark.asyncio
async def test_resume_from_history_reports_recorded_amounts(network, funded_engine, history):
    done = await funded_engine.transfer(TransferRequest(amount=AMOUNT))
    record = history.get_transfer(done.request_id)
    assert (record.export_fee, record.import_fee, record.received_amount) == (FEE, FEE, AMOUNT - FEE)

    again = await funded_engine.resume_from_history(done.request_id)

    assert again.success
    assert (again.export_fee, again.import_fee, again.received_amount) == (FEE, FEE, AMOUNT - FEE)
    assert len(network.issued) == 2


@pytest.mark.asyncio
async def test_unexpected_error_before_export_becomes_export_failure(network, funded_engine, history):
    network.inject_fault("get_utxos", KeyError("utxos"))

    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.phase == TransferPhase.EXPORT_FAILED
    assert result.failure_reason == "KeyError"
    assert isinstance(result.error.__cause__, KeyError)
    assert history.get_transfer(result.request_id).phase == "export_failed"
    assert network.calls["issue_tx"] == 0


@pytest.mark.asyncio
async def test_unexpected_error_after_export_keeps_export_tx_id(x_address, make_engine, history):
    slow = LocalNetwork(propagation_polls=1000)
    slow.fund("X", x_address, 100_000_000)
    engine = make_engine(client=slow, history=history)
    failed = await engine.transfer(TransferRequest(amount=AMOUNT))

    slow.settle()
    slow.inject_fault("get_utxos", KeyError("utxos"))
    result = await engine.resume_from_history(failed.request_id)

    assert result.phase == TransferPhase.IMPORT_FAILED
    assert result.failure_reason == "KeyError"
    assert result.export_tx_id == failed.export_tx_id
    assert result.resumable
    assert history.get_transfer(failed.request_id).phase == "import_failed"
    assert slow.exports_issued() == 1


@pytest.mark.asyncio
async def test_import_resolves_asset_on_source_chain_only(network, funded_engine):
    result = await funded_engine.transfer(TransferRequest(amount=AMOUNT))

    assert result.success
    assert network.calls["get_asset_description"] == 1
