from datetime import date

import pytest
from sqlalchemy import select

from errors import LedgerValidationError, PersistenceError
from models import Transaction, TransactionType
from schemas import ColumnMapping, ImportRow, TransactionIn
from services import (
    ImportProgressRegistry,
    ImportResult,
    ImportService,
    TransactionService,
)
from suggestions import FuzzySuggestionProvider


def _row(n, amount_cents=10_00, external_id=None, **overrides) -> ImportRow:
    data = dict(
        row_number=n,
        date=date(2024, 2, n),
        description=f"Row {n}",
        amount_cents=amount_cents,
        type=TransactionType.expense,
        external_id=external_id,
    )
    data.update(overrides)
    return ImportRow(**data)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, completed, total, done):
        self.calls.append((completed, total, done))


def _descriptions(session):
    return session.scalars(select(Transaction.description).order_by(Transaction.id)).all()


def test_batch_duplicates_keep_first_occurrence(session, ledger):
    rows = [_row(1, external_id="X1"), _row(2, external_id="X1"), _row(3)]

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id
    )

    assert result.committed == 2
    assert result.duplicates_in_batch == 1
    assert result.duplicates == 1
    assert _descriptions(session) == ["Row 1", "Row 3"]


def test_persisted_external_ids_are_skipped(session, ledger):
    TransactionService(session).create(
        TransactionIn(
            description="Earlier import",
            amount_cents=1_00,
            date=date(2024, 1, 1),
            type=TransactionType.expense,
            account_id=ledger["checking"].id,
            category_id=ledger["food"].id,
            external_id="X1",
        )
    )
    rows = [_row(1, external_id="X1"), _row(2, external_id="X1"), _row(3, external_id="X2")]

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id
    )

    assert result.committed == 1
    assert result.duplicates_in_batch == 1
    assert result.duplicates_in_store == 1
    assert _descriptions(session) == ["Earlier import", "Row 3"]


def test_external_id_lookup_skipped_without_external_ids(session, ledger, monkeypatch):
    def _fail(self):
        raise AssertionError("external ids should not be fetched")

    monkeypatch.setattr(TransactionService, "list_external_ids", _fail)
    reconciled = ImportService(session, use_suggestions=False).reconcile([_row(1), _row(2)])
    assert len(reconciled.rows) == 2


def test_commit_applies_fallback_category_and_balances(session, ledger):
    rows = [
        _row(1, amount_cents=30_00),
        _row(2, amount_cents=5_00, type=TransactionType.income),
        _row(3, amount_cents=1_00, category_id=ledger["restaurants"].id),
    ]

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id
    )

    assert result.committed == 3
    txns = session.scalars(select(Transaction).order_by(Transaction.id)).all()
    assert [t.category_id for t in txns] == [
        ledger["food"].id,
        ledger["salary"].id,
        ledger["restaurants"].id,
    ]
    session.refresh(ledger["checking"])
    assert ledger["checking"].balance_cents == 100_00 - 30_00 + 5_00 - 1_00


def test_commit_time_rejection_stops_batch(session, ledger):
    rows = [
        _row(1),
        _row(2, category_id=ledger["salary"].id),
        _row(3),
    ]
    recorder = Recorder()

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id, recorder
    )

    assert result.failed
    assert result.committed == 1
    assert result.error.startswith("Row 2:")
    assert result.row_errors == [result.error]
    assert recorder.calls[-1] == (1, 3, True)
    assert _descriptions(session) == ["Row 1"]


def test_row_rejected_by_transaction_schema_stops_batch(session, ledger):
    rows = [_row(1), _row(2, description=""), _row(3)]
    recorder = Recorder()

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id, recorder
    )

    assert result.failed
    assert result.committed == 1
    assert result.error.startswith("Row 2: Invalid row")
    assert recorder.calls[-1] == (1, 3, True)
    assert _descriptions(session) == ["Row 1"]


def test_progress_is_monotonic_and_finishes(session, ledger):
    recorder = Recorder()
    rows = [_row(n) for n in range(1, 5)]

    ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id, recorder
    )

    assert recorder.calls == [
        (0, 4, False),
        (1, 4, False),
        (2, 4, False),
        (3, 4, False),
        (4, 4, False),
        (4, 4, True),
    ]


def test_persistence_error_aborts_remaining_rows(session, ledger, monkeypatch):
    original = TransactionService.create
    calls = {"n": 0}

    def flaky(self, data):
        calls["n"] += 1
        if calls["n"] == 2:
            raise PersistenceError("Storage failure during create_transaction")
        return original(self, data)

    monkeypatch.setattr(TransactionService, "create", flaky)
    recorder = Recorder()
    rows = [_row(n) for n in range(1, 5)]

    result = ImportService(session, use_suggestions=False).commit(
        rows, ledger["checking"].id, recorder
    )

    assert result.failed
    assert result.committed == 1
    assert result.total == 4
    assert calls["n"] == 2
    assert recorder.calls[-1] == (1, 4, True)
    assert _descriptions(session) == ["Row 1"]


def test_duplicate_detected_at_commit_counts_as_skip(session, ledger, monkeypatch):
    TransactionService(session).create(
        TransactionIn(
            description="Imported elsewhere",
            amount_cents=1_00,
            date=date(2024, 1, 1),
            type=TransactionType.expense,
            account_id=ledger["checking"].id,
            category_id=ledger["food"].id,
            external_id="RACE",
        )
    )
    monkeypatch.setattr(TransactionService, "list_external_ids", lambda self: [])
    recorder = Recorder()

    result = ImportService(session, use_suggestions=False).commit(
        [_row(1, external_id="RACE"), _row(2)], ledger["checking"].id, recorder
    )

    assert result.committed == 1
    assert result.duplicates_in_store == 1
    assert result.total == 1
    assert not result.failed
    assert recorder.calls == [(0, 2, False), (0, 1, False), (1, 1, False), (1, 1, True)]


def test_preview_detects_columns_and_suggests_categories(session, ledger):
    content = (
        "Data;Descrição;Valor;Identificador\n"
        "01/02/2024;FOOD COURT SHOPPING;-25,00;T1\n"
        "02/02/2024;Salary ACME;3.000,00;T2\n"
        "xx/02/2024;Broken;1,00;T3\n"
    )
    service = ImportService(session, provider=FuzzySuggestionProvider(min_score=80))

    preview = service.preview(content)

    assert preview.mapping == ColumnMapping(
        date="Data", description="Descrição", amount="Valor", external_id="Identificador"
    )
    assert len(preview.rows) == 2
    assert preview.errors and preview.errors[0].startswith("Row 3:")
    food_row, salary_row = preview.rows
    assert food_row.category_id == ledger["food"].id
    assert food_row.category_suggested
    assert salary_row.type == TransactionType.income
    assert salary_row.category_id == ledger["salary"].id


def test_preview_without_detectable_columns_needs_mapping(session, ledger):
    content = "foo,bar,baz\n1,2,3\n"
    service = ImportService(session, use_suggestions=False)
    with pytest.raises(LedgerValidationError):
        service.preview(content)

    preview = service.preview(
        content, ColumnMapping(date="foo", description="bar", amount="baz")
    )
    assert preview.rows == []
    assert preview.errors == ["Row 1: Invalid date: '1'"]


def test_commit_token_applies_overrides(session, ledger):
    content = "date,description,amount,id\n2024-02-01,Bakery,-4.50,B1\n2024-02-02,Cinema,-20.00,B2\n"
    service = ImportService(session, use_suggestions=False)
    preview = service.preview(
        content,
        ColumnMapping(date="date", description="description", amount="amount", external_id="id"),
    )

    result = service.commit_token(
        preview.token,
        ledger["checking"].id,
        {2: ledger["restaurants"].id},
    )

    assert result.committed == 2
    txns = session.scalars(select(Transaction).order_by(Transaction.id)).all()
    assert [t.external_id for t in txns] == ["B1", "B2"]
    assert txns[0].category_id == ledger["food"].id
    assert txns[1].category_id == ledger["restaurants"].id


def test_commit_token_rejects_tampering(session, ledger):
    service = ImportService(session, use_suggestions=False)
    with pytest.raises(LedgerValidationError):
        service.commit_token("not-a-token", ledger["checking"].id)


def test_progress_registry_tracks_and_purges():
    registry = ImportProgressRegistry()
    job = registry.start()
    observer = registry.observer(job.job_id)

    observer(0, 3, False)
    observer(2, 3, False)
    observer(1, 3, False)
    assert registry.get(job.job_id).completed == 2

    assert registry.purge_finished(0) == 0
    registry.finish(job.job_id, ImportResult(total=3, committed=3))
    progress = registry.get(job.job_id)
    assert progress.done
    assert progress.result.committed == 3

    assert registry.purge_finished(0) == 1
    assert registry.get(job.job_id) is None
