"""
Tests for the SQLite transfer checkpoint store.
"""

from datetime import datetime, timezone

import pytest

from interchain_transfer.errors import EXPORT_REJECTED, IMPORT_REJECTED
from interchain_transfer.transaction_history import (
    TransactionDetail,
    TransferHistoryDB,
    TransferRecord,
)


def make_record(request_id="xfer_1", amount=50_000_000, **kwargs):
    return TransferRecord(
        request_id=request_id,
        source_chain="X",
        destination_chain="C",
        asset="AVAX",
        amount=amount,
        to_address=None,
        phase="init",
        **kwargs,
    )


def test_record_transfer_is_unique(history):
    assert history.record_transfer(make_record())
    assert not history.record_transfer(make_record())


def test_large_amounts_round_trip(history):
    """Test amounts beyond 64-bit range survive storage."""
    huge = 2 ** 70
    history.record_transfer(make_record(amount=huge))
    assert history.get_transfer("xfer_1").amount == huge


def test_phase_updates_never_clear_tx_ids(history):
    history.record_transfer(make_record())
    history.update_phase("xfer_1", "export_submitted", export_tx_id="export-tx")
    history.update_phase("xfer_1", "import_failed", failure_reason="PropagationTimeout",
                         error_message="not visible", completed=True)

    record = history.get_transfer("xfer_1")
    assert record.phase == "import_failed"
    assert record.export_tx_id == "export-tx"
    assert record.failure_reason == "PropagationTimeout"
    assert record.completed_at is not None


def test_resumable_transfers(history):
    history.record_transfer(make_record("never_exported"))
    history.update_phase("never_exported", "export_failed", failure_reason="InsufficientFundsError")

    history.record_transfer(make_record("rejected"))
    history.update_phase("rejected", "export_failed", export_tx_id="tx-r", failure_reason=EXPORT_REJECTED)

    history.record_transfer(make_record("import_rejected"))
    history.update_phase("import_rejected", "import_failed", export_tx_id="tx-e",
                         import_tx_id="tx-ir", failure_reason=IMPORT_REJECTED)

    history.record_transfer(make_record("timed_out"))
    history.update_phase("timed_out", "import_failed", export_tx_id="tx-t",
                         failure_reason="PropagationTimeout")

    history.record_transfer(make_record("finished"))
    history.update_phase("finished", "done", export_tx_id="tx-f", import_tx_id="tx-i")

    assert [r.request_id for r in history.get_resumable_transfers()] == ["timed_out"]


def test_transactions_and_statistics(history):
    history.record_transfer(make_record("a"))
    history.record_transfer(make_record("b", amount=7))
    history.record_transaction(TransactionDetail(
        tx_id="tx-a", transfer_request_id="a", leg="export", chain="X",
        status="Processing", created_at=datetime.now(timezone.utc),
    ))
    history.update_transaction_status("tx-a", "Accepted", datetime.now(timezone.utc))
    history.update_phase("a", "done", export_tx_id="tx-a", completed=True)
    history.update_phase("b", "export_failed")
    history.record_error("b", "InsufficientFundsError", "required 8, available 7")

    transactions = history.get_transactions("a")
    assert [(t["leg"], t["status"]) for t in transactions] == [("export", "Accepted")]
    assert transactions[0]["confirmed_at"] is not None

    stats = history.get_statistics()
    assert stats['total_transfers'] == 2
    assert stats['successful_transfers'] == 1
    assert stats['failed_transfers'] == 1
    assert stats['total_volume'] == 50_000_000
    assert stats['success_rate'] == pytest.approx(50.0)


def test_file_database_persists(tmp_path):
    path = tmp_path / "history.db"
    db = TransferHistoryDB(str(path))
    db.record_transfer(make_record())
    db.update_phase("xfer_1", "export_submitted", export_tx_id="export-tx")
    db.close()

    reopened = TransferHistoryDB(str(path))
    assert reopened.get_transfer("xfer_1").export_tx_id == "export-tx"
    assert reopened.get_transfer("xfer_1").to_dict()['phase'] == "export_submitted"
    reopened.close()


def test_fees_and_received_amount_are_checkpointed(history):
    history.record_transfer(make_record())
    history.update_phase("xfer_1", "import_submitted", export_tx_id="export-tx",
                         import_tx_id="import-tx", export_fee=1_000_000,
                         import_fee=1_000_000, received_amount=49_000_000)
    history.update_phase("xfer_1", "done", completed=True)

    record = history.get_transfer("xfer_1")
    assert (record.export_fee, record.import_fee, record.received_amount) == (
        1_000_000, 1_000_000, 49_000_000)
    assert record.to_dict()['received_amount'] == 49_000_000
