from datetime import date

import pytest
from sqlalchemy import func, select

from errors import (
    DuplicateExternalId,
    InvalidReference,
    InvalidTransfer,
    LedgerValidationError,
)
from models import (
    Account,
    AccountType,
    AssetHolding,
    AssetIncomeType,
    CategoryType,
    Transaction,
    TransactionType,
)
from periods import Period
from schemas import AccountIn, AccountUpdate, AssetIn, CategoryIn, TransactionIn
from services import (
    AccountService,
    AssetService,
    CategoryService,
    TransactionService,
)


def _expense(ledger, amount_cents, **overrides):
    data = dict(
        description="Lunch",
        amount_cents=amount_cents,
        date=date(2024, 3, 1),
        type=TransactionType.expense,
        account_id=ledger["checking"].id,
        category_id=ledger["groceries"].id,
    )
    data.update(overrides)
    return TransactionIn(**data)


def _balance(session, account) -> int:
    session.refresh(account)
    return account.balance_cents


def test_create_and_delete_round_trip(session, ledger):
    service = TransactionService(session)
    txn = service.create(_expense(ledger, 12_34))
    assert _balance(session, ledger["checking"]) == 100_00 - 12_34

    service.delete(txn.id)
    assert _balance(session, ledger["checking"]) == 100_00
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_update_amount_replaces_effect(session, ledger):
    service = TransactionService(session)
    txn = service.create(_expense(ledger, 30_00))

    service.update(txn.id, _expense(ledger, 50_00))
    assert _balance(session, ledger["checking"]) == 50_00


def test_update_moves_transaction_between_accounts(session, ledger):
    service = TransactionService(session)
    txn = service.create(_expense(ledger, 5_00))

    service.update(txn.id, _expense(ledger, 5_00, account_id=ledger["savings"].id))
    assert _balance(session, ledger["checking"]) == 100_00
    assert _balance(session, ledger["savings"]) == 15_00


def test_update_expense_into_transfer(session, ledger):
    service = TransactionService(session)
    txn = service.create(_expense(ledger, 10_00))

    updated = service.update(
        txn.id,
        _expense(
            ledger,
            10_00,
            type=TransactionType.transfer,
            to_account_id=ledger["savings"].id,
        ),
    )
    assert updated.category_id is None
    assert _balance(session, ledger["checking"]) == 90_00
    assert _balance(session, ledger["savings"]) == 30_00


def _buy(ledger, amount_cents, asset_id, **overrides):
    data = dict(
        description="Buy fund",
        amount_cents=amount_cents,
        date=date(2024, 3, 2),
        type=TransactionType.transfer,
        account_id=ledger["checking"].id,
        to_account_id=ledger["savings"].id,
        asset_id=asset_id,
    )
    data.update(overrides)
    return TransactionIn(**data)


def _holding_value(session, asset) -> int | None:
    holding = session.scalar(
        select(AssetHolding).where(AssetHolding.asset_id == asset.id)
    )
    return holding.current_value_cents if holding else None


def test_transfer_keeps_asset_only_for_investment_destination(session, ledger):
    fund = AssetService(session).create(
        AssetIn(name="FUND11", income_type=AssetIncomeType.variable)
    )
    service = TransactionService(session)
    into_investment = service.create(_buy(ledger, 10_00, fund.id))
    assert into_investment.asset_id == fund.id

    back = service.create(
        _buy(
            ledger,
            5_00,
            fund.id,
            description="Redeem",
            account_id=ledger["savings"].id,
            to_account_id=ledger["checking"].id,
        )
    )
    assert back.asset_id is None
    assert _holding_value(session, fund) == 10_00


def test_unknown_asset_is_rejected(session, ledger):
    with pytest.raises(InvalidReference) as exc_info:
        TransactionService(session).create(_buy(ledger, 10_00, 999))
    assert exc_info.value.kind == "Asset"
    assert _balance(session, ledger["checking"]) == 100_00


def test_holding_follows_transfer_lifecycle(session, ledger):
    assets = AssetService(session)
    fund = assets.create(AssetIn(name="FUND11", income_type=AssetIncomeType.variable))
    bond = assets.create(AssetIn(name="Treasury", income_type=AssetIncomeType.fixed))
    service = TransactionService(session)

    first = service.create(_buy(ledger, 10_00, fund.id))
    second = service.create(_buy(ledger, 4_00, fund.id))
    assert _holding_value(session, fund) == 14_00

    service.update(first.id, _buy(ledger, 6_00, fund.id))
    assert _holding_value(session, fund) == 10_00

    service.update(second.id, _buy(ledger, 4_00, bond.id))
    assert _holding_value(session, fund) == 6_00
    assert _holding_value(session, bond) == 4_00

    service.delete(first.id)
    assert _holding_value(session, fund) is None
    assert [h.asset.name for h in assets.holdings()] == ["Treasury"]

    with pytest.raises(LedgerValidationError):
        assets.delete(bond.id)
    service.delete(second.id)
    assets.delete(bond.id)
    assert [a.name for a in assets.list_all()] == ["FUND11"]


def test_adjustment_round_trip_through_service(session, ledger):
    service = TransactionService(session)
    adjustment = service.create(
        TransactionIn(
            description="Reconcile",
            amount_cents=250_00,
            date=date(2024, 3, 1),
            type=TransactionType.adjustment,
            account_id=ledger["checking"].id,
        )
    )
    assert adjustment.balance_delta_cents == 150_00
    service.create(
        TransactionIn(
            description="Paycheck",
            amount_cents=10_00,
            date=date(2024, 3, 2),
            type=TransactionType.income,
            account_id=ledger["checking"].id,
            category_id=ledger["salary"].id,
        )
    )

    service.delete(adjustment.id)
    assert _balance(session, ledger["checking"]) == 110_00


def test_rejected_mutation_commits_nothing(session, ledger):
    service = TransactionService(session)
    with pytest.raises(InvalidTransfer):
        service.create(
            _expense(
                ledger,
                10_00,
                type=TransactionType.transfer,
                to_account_id=ledger["checking"].id,
            )
        )
    with pytest.raises(LedgerValidationError):
        service.create(_expense(ledger, 10_00, category_id=ledger["salary"].id))
    with pytest.raises(LedgerValidationError):
        service.create(_expense(ledger, 10_00, category_id=None))
    with pytest.raises(InvalidReference):
        service.create(_expense(ledger, 10_00, account_id=999))

    assert _balance(session, ledger["checking"]) == 100_00
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_duplicate_external_id_is_a_conflict(session, ledger):
    service = TransactionService(session)
    service.create(_expense(ledger, 1_00, external_id="bank-1"))
    with pytest.raises(DuplicateExternalId):
        service.create(_expense(ledger, 2_00, external_id="bank-1"))

    assert service.list_external_ids() == ["bank-1"]
    assert _balance(session, ledger["checking"]) == 99_00


def test_blank_external_id_is_not_deduplicated(session, ledger):
    service = TransactionService(session)
    service.create(_expense(ledger, 1_00, external_id="  "))
    service.create(_expense(ledger, 1_00, external_id=""))
    assert service.list_external_ids() == []


def test_list_filters_and_summary(session, ledger):
    service = TransactionService(session)
    service.create(_expense(ledger, 20_00, description="Market"))
    service.create(
        TransactionIn(
            description="Salary",
            amount_cents=500_00,
            date=date(2024, 3, 5),
            type=TransactionType.income,
            account_id=ledger["checking"].id,
            category_id=ledger["salary"].id,
        )
    )
    service.create(_expense(ledger, 7_00, date=date(2024, 4, 1)))

    march = Period("custom", date(2024, 3, 1), date(2024, 3, 31))
    assert [t.description for t in service.list(march)] == ["Salary", "Market"]

    summary = service.summary(march)
    assert summary == {
        "income_cents": 500_00,
        "expense_cents": 20_00,
        "net_cents": 480_00,
        "count": 2,
    }


def test_account_update_never_touches_balance(session, ledger):
    accounts = AccountService(session)
    account = accounts.update(
        ledger["checking"].id, AccountUpdate(name="Main", currency="usd")
    )
    assert account.name == "Main"
    assert account.currency == "USD"
    assert account.balance_cents == 100_00


def test_account_delete_refused_while_in_use(session, ledger):
    TransactionService(session).create(_expense(ledger, 1_00))
    with pytest.raises(LedgerValidationError):
        AccountService(session).delete(ledger["checking"].id)

    spare = AccountService(session).create(AccountIn(name="Wallet", type=AccountType.cash))
    AccountService(session).delete(spare.id)
    assert session.get(Account, spare.id) is None


def test_category_hierarchy_rules(session, ledger):
    categories = CategoryService(session)
    with pytest.raises(LedgerValidationError):
        categories.create(
            CategoryIn(
                name="Organic",
                type=CategoryType.expense,
                parent_id=ledger["groceries"].id,
            )
        )
    with pytest.raises(LedgerValidationError):
        categories.create(
            CategoryIn(name="Bonus", type=CategoryType.income, parent_id=ledger["food"].id)
        )
    with pytest.raises(LedgerValidationError):
        categories.update(
            ledger["food"].id,
            CategoryIn(
                name="Food",
                type=CategoryType.expense,
                parent_id=ledger["restaurants"].id,
            ),
        )
    with pytest.raises(LedgerValidationError):
        categories.delete(ledger["food"].id)


def test_fallback_category_follows_order(session, ledger):
    categories = CategoryService(session)
    first = categories.create(
        CategoryIn(name="Misc", type=CategoryType.expense, order=-1)
    )
    assert categories.fallback_for(CategoryType.expense).id == first.id
    assert categories.fallback_for(CategoryType.income).id == ledger["salary"].id
