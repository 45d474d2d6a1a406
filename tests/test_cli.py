import json

import pytest

from stream_indexer.cli import EXIT_CONFIG_ERROR, build_parser, main
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.stream_store import StreamStore

from conftest import ALICE, BOB, CONTRACT

ENV_VARS = ["RPC_URL", "CONTRACT_ADDRESS", "TAX_ADDRESS", "DATABASE_URL", "INDEXER_CONFIG"]


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    database_url = f"sqlite:///{tmp_path / 'indexer.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("CONTRACT_ADDRESS", CONTRACT)
    return ["--config", str(tmp_path / "absent.yaml")], database_url


def seed_streams(database_url: str) -> None:
    db = DatabaseConnection(database_url)
    store = StreamStore(db, CONTRACT)
    for stream_id, worker in ((1, BOB), (2, BOB), (3, ALICE)):
        store.upsert_stream(
            stream_id,
            {"worker_address": worker.lower(), "deposit": "1000", "state": "Active"},
            default_label="employee"
        )
    db.dispose()


def test_parser_subcommands():
    parser = build_parser()

    args = parser.parse_args(["backfill", "--from-block", "10", "--chunk-size", "5"])
    assert args.command == "backfill"
    assert args.from_block == 10
    assert args.to_block is None
    assert args.chunk_size == 5

    assert parser.parse_args(["reconcile", "--no-backfill"]).no_backfill is True
    assert parser.parse_args(["mark-tax"]).address is None

    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_run_without_rpc_url_is_a_configuration_error(cli_env):
    options, _ = cli_env

    assert main(options + ["run"]) == EXIT_CONFIG_ERROR


def test_init_db_and_mark_tax(cli_env, capsys):
    options, database_url = cli_env

    assert main(options + ["init-db"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "success"

    seed_streams(database_url)
    assert main(options + ["mark-tax", BOB]) == 0
    assert json.loads(capsys.readouterr().out) == {"matched": 2, "updated": 2, "transactions_updated": 0}

    db = DatabaseConnection(database_url)
    store = StreamStore(db, CONTRACT)
    assert store.get_stream(1).label == "tax"
    assert store.get_stream(3).label == "employee"
    db.dispose()


def test_mark_tax_uses_configured_address(cli_env, monkeypatch, capsys):
    options, database_url = cli_env
    main(options + ["init-db"])
    seed_streams(database_url)
    capsys.readouterr()

    assert main(options + ["mark-tax"]) == EXIT_CONFIG_ERROR

    monkeypatch.setenv("TAX_ADDRESS", ALICE)
    assert main(options + ["mark-tax"]) == 0
    assert json.loads(capsys.readouterr().out)["matched"] == 1


def test_status_prints_json(cli_env, capsys):
    options, database_url = cli_env
    main(options + ["init-db"])
    seed_streams(database_url)
    capsys.readouterr()

    assert main(options + ["status"]) == 0

    status = json.loads(capsys.readouterr().out)
    assert status["contract_address"] == CONTRACT
    assert status["counts"]["streams"] == 3
    assert status["pending_gaps"] == []


@pytest.mark.parametrize("command", [["init-db"], ["status"], ["mark-tax"]])
def test_database_is_closed_after_each_command(cli_env, monkeypatch, capsys, command):
    options, _ = cli_env
    main(options + ["init-db"])
    calls = []
    original = DatabaseConnection.dispose

    def counting_dispose(self):
        calls.append(self)
        original(self)

    monkeypatch.setattr(DatabaseConnection, "dispose", counting_dispose)

    main(options + command)

    assert len(calls) == 1
