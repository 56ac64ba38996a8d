from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select, update

from database import Base, build_engine, make_session_factory
from errors import InvalidTransfer, LedgerValidationError, ScheduleBusy
from models import (
    Account,
    AccountType,
    CategoryType,
    Frequency,
    Schedule,
    Transaction,
    TransactionType,
)
from schemas import AccountIn, CategoryIn, ScheduleIn
from services import (
    AccountService,
    CategoryService,
    PaymentGuard,
    ScheduleService,
    SchedulePaymentService,
)

TODAY = date(2024, 3, 20)


def _schedule_in(ledger, frequency, **overrides):
    data = dict(
        description="Rent",
        amount_cents=40_00,
        date=date(2024, 1, 31),
        frequency=frequency,
        type=TransactionType.expense,
        account_id=ledger["checking"].id,
        category_id=ledger["food"].id,
    )
    data.update(overrides)
    return ScheduleIn(**data)


def _count(session, model) -> int:
    return session.scalar(select(func.count(model.id)))


def test_paying_monthly_schedule_advances_one_month(session, ledger):
    schedule = ScheduleService(session).create(_schedule_in(ledger, Frequency.monthly))

    result = SchedulePaymentService(session).pay(schedule.id, today=TODAY)

    assert result.next_date == date(2024, 2, 29)
    assert result.schedule.date == date(2024, 2, 29)
    assert _count(session, Schedule) == 1
    assert _count(session, Transaction) == 1
    txn = result.transaction
    assert txn.date == TODAY
    assert txn.description == "Payment: Rent"
    assert txn.origin_schedule_id == schedule.id
    session.refresh(ledger["checking"])
    assert ledger["checking"].balance_cents == 60_00


def test_paying_once_schedule_retires_it(session, ledger):
    schedule = ScheduleService(session).create(_schedule_in(ledger, Frequency.once))

    result = SchedulePaymentService(session).pay(schedule.id, today=TODAY)

    assert result.retired
    assert _count(session, Schedule) == 0
    assert _count(session, Transaction) == 1
    assert result.transaction.origin_schedule_id is None


def test_paying_transfer_schedule_moves_money(session, ledger):
    schedule = ScheduleService(session).create(
        _schedule_in(
            ledger,
            Frequency.weekly,
            type=TransactionType.transfer,
            to_account_id=ledger["savings"].id,
            category_id=None,
            date=date(2024, 3, 4),
        )
    )

    result = SchedulePaymentService(session).pay(schedule.id, today=TODAY)

    assert result.next_date == date(2024, 3, 11)
    session.refresh(ledger["checking"])
    session.refresh(ledger["savings"])
    assert ledger["checking"].balance_cents == 60_00
    assert ledger["savings"].balance_cents == 60_00


def test_reentrant_pay_is_rejected(session, ledger):
    schedule = ScheduleService(session).create(_schedule_in(ledger, Frequency.monthly))
    guard = PaymentGuard()

    with guard.hold(schedule.id):
        with pytest.raises(ScheduleBusy):
            SchedulePaymentService(session, guard=guard).pay(schedule.id, today=TODAY)

    assert not guard.is_busy(schedule.id)
    assert _count(session, Transaction) == 0


def test_pay_loses_race_and_rolls_back(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)

    with factory() as setup:
        account = AccountService(setup).create(
            AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_00)
        )
        category = CategoryService(setup).create(
            CategoryIn(name="Housing", type=CategoryType.expense)
        )
        schedule = ScheduleService(setup).create(
            ScheduleIn(
                description="Rent",
                amount_cents=40_00,
                date=date(2024, 3, 1),
                frequency=Frequency.monthly,
                type=TransactionType.expense,
                account_id=account.id,
                category_id=category.id,
            )
        )

    stale = factory()
    assert stale.get(Schedule, schedule.id).date == date(2024, 3, 1)

    with factory() as other:
        other.execute(
            update(Schedule)
            .where(Schedule.id == schedule.id)
            .values(date=date(2024, 4, 1))
        )
        other.commit()

    with pytest.raises(ScheduleBusy):
        SchedulePaymentService(stale).pay(schedule.id, today=TODAY)
    stale.close()

    with factory() as check:
        assert _count(check, Transaction) == 0
        assert check.get(Schedule, schedule.id).date == date(2024, 4, 1)
        assert check.get(Account, account.id).balance_cents == 100_00
    engine.dispose()


def test_schedule_validation(session, ledger):
    service = ScheduleService(session)
    with pytest.raises(ValidationError):
        _schedule_in(ledger, Frequency.monthly, amount_cents=-1)
    with pytest.raises(LedgerValidationError):
        service.create(_schedule_in(ledger, Frequency.monthly, amount_cents=0))
    with pytest.raises(InvalidTransfer):
        service.create(
            _schedule_in(
                ledger,
                Frequency.monthly,
                type=TransactionType.transfer,
                to_account_id=ledger["checking"].id,
            )
        )
    assert service.list() == []


def test_schedule_update_and_delete(session, ledger):
    service = ScheduleService(session)
    schedule = service.create(_schedule_in(ledger, Frequency.monthly))

    updated = service.update(
        schedule.id,
        _schedule_in(ledger, Frequency.yearly, amount_cents=99_00, date=date(2024, 6, 1)),
    )
    assert updated.frequency == Frequency.yearly
    assert updated.amount_cents == 99_00

    service.delete(schedule.id)
    assert service.list() == []
