"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from goldshop_erp import constants, data_manager
from goldshop_erp.errors import (
    ConcurrentModificationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)


PRODUCTS = constants.Collection.PRODUCTS.value
CUSTOMERS = constants.Collection.CUSTOMERS.value
TRANSACTIONS = constants.Collection.TRANSACTIONS.value


@pytest.fixture
def document_store(store_workbook_path: Path) -> data_manager.DocumentStore:
    return data_manager.DocumentStore(store_workbook_path)


def _product(name: str = "Ring", stock: int = 3, price: str = "250.00") -> dict:
    return {"name": name, "gram": "2.5", "price": price, "stock": stock}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery walks up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=store.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Gold"
    assert parser.get("Store", "RetryAttempts") == "3"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, cost_ratio="0.75")
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.shop_name == "Test Gold"
    assert settings.retry_attempts == 3
    assert settings.retry_backoff == 0
    assert str(settings.cost_ratio) == "0.75"


def test_parse_settings_uses_defaults_for_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=store.xlsx\nShopName=X\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.retry_attempts == 3
    assert settings.retry_backoff == pytest.approx(0.1)
    assert str(settings.cost_ratio) == "0.80"


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_zero_retry_attempts(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=s.xlsx\nShopName=X\nSchemaVersion=1.0.0\n[Store]\nRetryAttempts=0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(store_workbook_path):
    assert isinstance(data_manager.open_workbook(store_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_leaves_no_temporary_files(store_workbook_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    workbook[PRODUCTS].append(["p1", 1, "Chain", "5", "100.00", 1, None])
    data_manager.save_workbook(workbook, store_workbook_path)

    assert [path.name for path in store_workbook_path.parent.iterdir()] == [store_workbook_path.name]
    reloaded = openpyxl.load_workbook(store_workbook_path)
    assert list(reloaded[PRODUCTS].iter_rows(min_row=2, values_only=True)) == [
        ("p1", 1, "Chain", "5", "100.00", 1, None)
    ]


def test_save_workbook_wraps_os_errors(store_workbook_path, monkeypatch):
    workbook = data_manager.open_workbook(store_workbook_path)

    def broken_replace(src, dst):
        raise PermissionError("locked")

    monkeypatch.setattr(data_manager.os, "replace", broken_replace)
    with pytest.raises(TransientStoreError):
        data_manager.save_workbook(workbook, store_workbook_path)
    assert [path.name for path in store_workbook_path.parent.iterdir()] == [store_workbook_path.name]


def test_validate_layout_rejects_missing_sheet(tmp_path):
    workbook = openpyxl.Workbook()
    path = tmp_path / "bad.xlsx"
    workbook.save(path)

    with pytest.raises(RuntimeError):
        data_manager.DocumentStore(path)


def test_locate_row_returns_row_index(store_workbook_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    workbook[PRODUCTS].append(["p6", 1, "Coin", "7", "3000.00", 2, None])

    assert data_manager.locate_row(workbook, PRODUCTS, "id", "p6") == 2
    assert data_manager.locate_row(workbook, PRODUCTS, "id", "nope") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, PRODUCTS, "ProductID", "p6")


def test_deserialize_document_coerces_identity_columns():
    document = data_manager.deserialize_document(["id", "version", "name", None], [42, None, "Ring", "x"])
    assert document == {"id": "42", "version": 0, "name": "Ring"}


def test_serialize_document_follows_column_order():
    columns = constants.COLLECTION_FIELDS[PRODUCTS]
    row = data_manager.serialize_document(columns, {"name": "Ring", "id": "p1", "stock": 2})
    assert row == ["p1", None, "Ring", None, None, 2, None]


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def test_resolve_path_handles_scoped_cash_records():
    ref = data_manager.resolve_path(data_manager.daily_cash_path("op-1"))
    assert ref == data_manager.CollectionRef(
        path="cash/op-1/dailyCashRecords", sheet="dailyCashRecords", owner_uid="op-1"
    )


@pytest.mark.parametrize("path", ["nope", "dailyCashRecords", "cash/op-1", "products/x/y"])
def test_resolve_path_rejects_unknown_paths(path):
    with pytest.raises(ValidationError):
        data_manager.resolve_path(path)


def test_daily_cash_path_requires_uid():
    with pytest.raises(ValidationError):
        data_manager.daily_cash_path("")


# ---------------------------------------------------------------------------
# Document operations
# ---------------------------------------------------------------------------


def test_create_then_get_assigns_id_and_version(document_store):
    doc_id = document_store.create(PRODUCTS, _product())
    document = document_store.get(PRODUCTS, doc_id)

    assert document["id"] == doc_id
    assert document["version"] == 1
    assert document["name"] == "Ring"
    assert document["price"] == "250.00"


def test_get_unknown_id_raises_not_found(document_store):
    with pytest.raises(NotFoundError):
        document_store.get(PRODUCTS, "missing")


def test_update_merges_and_bumps_version(document_store):
    doc_id = document_store.create(PRODUCTS, _product())
    document_store.update(PRODUCTS, doc_id, {"name": "Gold Ring"})
    document = document_store.get(PRODUCTS, doc_id)

    assert document["name"] == "Gold Ring"
    assert document["price"] == "250.00"
    assert document["stock"] == 3
    assert document["version"] == 2


def test_update_with_stale_version_raises_conflict(document_store):
    doc_id = document_store.create(PRODUCTS, _product())
    document_store.update(PRODUCTS, doc_id, {"stock": 2}, expected_version=1)

    with pytest.raises(ConcurrentModificationError):
        document_store.update(PRODUCTS, doc_id, {"stock": 1}, expected_version=1)
    assert document_store.get(PRODUCTS, doc_id)["stock"] == 2


def test_unknown_fields_are_rejected(document_store):
    with pytest.raises(ValidationError):
        document_store.create(PRODUCTS, {"name": "Ring", "colour": "yellow"})
    with pytest.raises(ValidationError):
        document_store.create(PRODUCTS, {"name": "Ring", "version": 9})


def test_delete_removes_document(document_store):
    keep = document_store.create(PRODUCTS, _product("Keep"))
    drop = document_store.create(PRODUCTS, _product("Drop"))
    document_store.delete(PRODUCTS, drop)

    assert [doc["id"] for doc in document_store.list(PRODUCTS)] == [keep]
    with pytest.raises(NotFoundError):
        document_store.delete(PRODUCTS, drop)


def test_find_by_scans_non_unique_fields(document_store):
    document_store.create(PRODUCTS, _product("Ring"))
    bangle = document_store.create(PRODUCTS, _product("Bangle"))

    assert document_store.find_by(PRODUCTS, "name", "Bangle")["id"] == bangle
    assert document_store.find_by(PRODUCTS, "name", "Anklet") is None


def test_changes_persist_across_store_instances(document_store, store_workbook_path):
    doc_id = document_store.create(PRODUCTS, _product())

    other = data_manager.DocumentStore(store_workbook_path)
    assert other.get(PRODUCTS, doc_id)["name"] == "Ring"


# ---------------------------------------------------------------------------
# Unique national id
# ---------------------------------------------------------------------------


def test_duplicate_tc_is_rejected(document_store):
    document_store.create(CUSTOMERS, {"name": "Ayse", "tc": "11111111111"})

    with pytest.raises(ConcurrentModificationError):
        document_store.create(CUSTOMERS, {"name": "Other", "tc": "11111111111"})
    assert len(document_store.list(CUSTOMERS)) == 1


def test_duplicate_tc_within_one_batch_is_rejected(document_store):
    batch = document_store.batch()
    batch.create(CUSTOMERS, {"name": "A", "tc": "222"})
    batch.create(CUSTOMERS, {"name": "B", "tc": "222"})

    with pytest.raises(ConcurrentModificationError):
        batch.commit()
    assert document_store.list(CUSTOMERS) == []


def test_tc_can_move_to_new_document_after_delete_in_same_batch(document_store):
    old = document_store.create(CUSTOMERS, {"name": "Old", "tc": "333"})
    batch = document_store.batch()
    batch.delete(CUSTOMERS, old)
    new = batch.create(CUSTOMERS, {"name": "New", "tc": "333"})
    batch.commit()

    assert document_store.find_by(CUSTOMERS, "tc", "333")["id"] == new


def test_update_to_taken_tc_is_rejected(document_store):
    document_store.create(CUSTOMERS, {"name": "A", "tc": "444"})
    other = document_store.create(CUSTOMERS, {"name": "B", "tc": "555"})

    with pytest.raises(ConcurrentModificationError):
        document_store.update(CUSTOMERS, other, {"tc": "444"})


def test_preexisting_duplicate_tc_resolves_to_first_row(store_workbook_path):
    workbook = openpyxl.load_workbook(store_workbook_path)
    workbook[CUSTOMERS].append(["c1", 1, "First", "666"])
    workbook[CUSTOMERS].append(["c2", 1, "Second", "666"])
    workbook.save(store_workbook_path)

    document_store = data_manager.DocumentStore(store_workbook_path)
    assert document_store.find_by(CUSTOMERS, "tc", "666")["id"] == "c1"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def test_batch_commits_all_operations(document_store):
    product_id = document_store.create(PRODUCTS, _product(stock=5))
    batch = document_store.batch()
    tx_id = batch.create(TRANSACTIONS, {"type": "sale", "amount": "10.00", "date": "2024-03-07"})
    batch.update(PRODUCTS, product_id, {"stock": 4}, expected_version=1)
    assert len(batch) == 2
    batch.commit()

    assert document_store.get(TRANSACTIONS, tx_id)["amount"] == "10.00"
    assert document_store.get(PRODUCTS, product_id)["stock"] == 4


def test_failed_precondition_leaves_store_unchanged(document_store, store_workbook_path):
    before = store_workbook_path.read_bytes()
    batch = document_store.batch()
    batch.create(TRANSACTIONS, {"type": "sale", "amount": "10.00"})
    batch.update(PRODUCTS, "missing", {"stock": 1})

    with pytest.raises(NotFoundError):
        batch.commit()
    assert document_store.list(TRANSACTIONS) == []
    assert store_workbook_path.read_bytes() == before


def test_failed_save_discards_in_memory_changes(document_store, monkeypatch):
    def failing_save(workbook, destination):
        raise TransientStoreError("disk full")

    monkeypatch.setattr(data_manager, "save_workbook", failing_save)
    with pytest.raises(TransientStoreError):
        document_store.create(PRODUCTS, _product())
    monkeypatch.undo()

    assert document_store.list(PRODUCTS) == []


def test_batch_cannot_be_committed_twice(document_store):
    batch = document_store.batch()
    batch.create(PRODUCTS, _product())
    batch.commit()

    with pytest.raises(RuntimeError):
        batch.commit()


# ---------------------------------------------------------------------------
# Scoped collections
# ---------------------------------------------------------------------------


def test_cash_records_are_isolated_per_operator(document_store):
    own_path = data_manager.daily_cash_path("op-1")
    other_path = data_manager.daily_cash_path("op-2")
    record_id = document_store.create(own_path, {"date": "2024-03-07", "initialCash": "100.00"})

    assert document_store.get(own_path, record_id)["ownerUid"] == "op-1"
    assert document_store.list(other_path) == []
    with pytest.raises(NotFoundError):
        document_store.get(other_path, record_id)
    with pytest.raises(NotFoundError):
        document_store.update(other_path, record_id, {"finalCash": "1.00"})


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def test_subscribe_pushes_initial_and_subsequent_snapshots(document_store):
    snapshots: list[list[str]] = []
    unsubscribe = document_store.subscribe(CUSTOMERS, lambda docs: snapshots.append([d["name"] for d in docs]))

    document_store.create(CUSTOMERS, {"name": "Ayse", "tc": "1"})
    document_store.create(PRODUCTS, _product())
    unsubscribe()
    document_store.create(CUSTOMERS, {"name": "Mehmet", "tc": "2"})

    assert snapshots == [[], ["Ayse"]]


def test_failing_subscriber_does_not_break_commit(document_store):
    def explode(documents):
        if documents:
            raise RuntimeError("boom")

    document_store.subscribe(CUSTOMERS, explode)
    doc_id = document_store.create(CUSTOMERS, {"name": "Ayse", "tc": "1"})

    assert document_store.get(CUSTOMERS, doc_id)["name"] == "Ayse"


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def test_run_with_retry_recovers_from_transient_failures(monkeypatch):
    delays: list[float] = []
    monkeypatch.setattr(data_manager.time, "sleep", delays.append)
    outcomes = [TransientStoreError("busy"), ConcurrentModificationError("race"), "done"]

    def flaky():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert data_manager.run_with_retry(flaky, attempts=3, backoff_base=0.1) == "done"
    assert delays == pytest.approx([0.1, 0.2])


def test_run_with_retry_surfaces_last_error(monkeypatch):
    monkeypatch.setattr(data_manager.time, "sleep", lambda _: None)
    calls = []

    def always_busy():
        calls.append(1)
        raise TransientStoreError(f"busy {len(calls)}")

    with pytest.raises(TransientStoreError, match="busy 2"):
        data_manager.run_with_retry(always_busy, attempts=2)
    assert len(calls) == 2


def test_run_with_retry_does_not_retry_other_errors(monkeypatch):
    monkeypatch.setattr(data_manager.time, "sleep", lambda _: None)
    calls = []

    def invalid():
        calls.append(1)
        raise ValidationError("bad")

    with pytest.raises(ValidationError):
        data_manager.run_with_retry(invalid, attempts=5)
    assert calls == [1]
