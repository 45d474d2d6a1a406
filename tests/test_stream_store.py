from datetime import datetime

from stream_indexer.models import StreamState

from conftest import ALICE, BOB, CONTRACT


def stream_fields(worker: str = ALICE, state: str = "Active", withdrawn: str = "0"):
    return {
        "worker_address": worker.lower(),
        "deposit": "1000",
        "withdrawn": withdrawn,
        "state": state,
    }


def transaction(tx_hash: str, stream_id: int = 1, label: str = "employee"):
    return {
        "tx_hash": tx_hash,
        "type": "Withdrawal",
        "stream_id": stream_id,
        "amount": "10",
        "label": label,
        "timestamp": datetime.utcnow(),
    }


def test_upsert_refreshes_fields_but_keeps_label_and_created_at(store):
    first = store.upsert_stream(1, stream_fields(), default_label="tax")
    second = store.upsert_stream(1, stream_fields(withdrawn="500"), default_label="employee")

    assert second.withdrawn == "500"
    assert second.label == "tax"
    assert second.created_at == first.created_at


def test_record_transaction_inserts_once(store):
    assert store.record_transaction(transaction("0xa")) is True
    assert store.record_transaction(transaction("0xa", label="tax")) is False

    assert store.get_transaction("0xa").label == "employee"
    assert len(store.list_transactions()) == 1


def test_update_stream_fields_reports_missing_stream(store):
    assert store.update_stream_fields(99, {"withdrawn": "1"}) is False
    assert store.get_stream(99) is None


def test_terminal_state_guard(store):
    store.upsert_stream(1, stream_fields(state="Completed"), default_label="employee")

    assert store.update_stream_fields(1, {"state": "Paused", "withdrawn": "1000"}) is True

    stream = store.get_stream(1)
    assert stream.state == "Completed"
    assert stream.withdrawn == "1000"


def test_paused_and_active_move_both_ways(store):
    store.upsert_stream(1, stream_fields(), default_label="employee")

    store.update_stream_fields(1, {"state": "Paused"})
    assert store.get_stream(1).state == "Paused"
    store.update_stream_fields(1, {"state": "Active"})
    assert store.get_stream(1).state == "Active"


def test_list_non_terminal_streams(store):
    store.upsert_stream(1, stream_fields(state="Active"), default_label="employee")
    store.upsert_stream(2, stream_fields(state="Paused"), default_label="employee")
    store.upsert_stream(3, stream_fields(state="Completed"), default_label="employee")
    store.upsert_stream(4, stream_fields(state="Cancelled"), default_label="employee")

    assert [s.stream_id for s in store.list_non_terminal_streams()] == [1, 2]


def test_relabel_worker_streams(store):
    store.upsert_stream(1, stream_fields(worker=BOB), default_label="employee")
    store.upsert_stream(2, stream_fields(worker=BOB), default_label="tax")
    store.upsert_stream(3, stream_fields(worker=ALICE), default_label="employee")
    store.record_transaction(transaction("0x1", stream_id=1))
    store.record_transaction(transaction("0x3", stream_id=3))

    result = store.relabel_worker_streams(BOB.upper().replace("0X", "0x"), "tax")

    assert result == {"matched": 2, "updated": 1, "transactions_updated": 1}
    assert store.get_stream(1).label == "tax"
    assert store.get_stream(3).label == "employee"
    assert store.get_transaction("0x1").label == "tax"
    assert store.get_transaction("0x3").label == "employee"


def test_upsert_stats_keeps_unset_extras(store):
    store.upsert_stats(100, 50, total_streams=3, block_number=10)
    store.upsert_stats(90, 60)

    stats = store.get_stats()
    assert stats.contract_address == CONTRACT
    assert stats.available_balance == "90"
    assert stats.total_allocated == "60"
    assert stats.total_streams == 3
    assert stats.last_updated_block == 10


def test_get_counts(store):
    store.upsert_stream(1, stream_fields(state="Active"), default_label="employee")
    store.upsert_stream(2, stream_fields(state="Completed"), default_label="employee")
    store.record_transaction(transaction("0x1"))

    counts = store.get_counts()

    assert counts["streams"] == 2
    assert counts["transactions"] == 1
    assert counts["streams_by_state"] == {
        StreamState.ACTIVE.value: 1,
        StreamState.COMPLETED.value: 1,
        StreamState.CANCELLED.value: 0,
        StreamState.PAUSED.value: 0,
    }
