from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable, Iterable, Iterator, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from csv_utils import extract_rows, read_csv
from errors import (
    DuplicateExternalId,
    InvalidReference,
    InvalidTransfer,
    LedgerError,
    LedgerValidationError,
    PersistenceError,
    ScheduleBusy,
)
from import_tokens import dump_batch, load_batch
from ledger import LedgerEngine, Posting
from models import (
    MAX_CENTS,
    Account,
    AccountType,
    Asset,
    AssetHolding,
    Budget,
    Category,
    CategoryType,
    Frequency,
    Schedule,
    Transaction,
    TransactionType,
)
from periods import Period, month_period
from recurrence import advance_date, local_today
from schemas import (
    AccountIn,
    AccountUpdate,
    AssetIn,
    BudgetIn,
    CategoryIn,
    ColumnMapping,
    ImportRow,
    ScheduleIn,
    TransactionIn,
)
from suggestions import (
    CategoryOption,
    FuzzySuggestionProvider,
    SuggestionProvider,
    safe_categories,
    safe_column_mapping,
)

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[int, int, bool], None]


def get_current_user_id() -> int:
    return 1


@contextmanager
def unit_of_work(
    session: Session, action: str, external_id: Optional[str] = None
) -> Iterator[None]:
    """Commit everything done inside the block, or nothing.

    Storage failures surface as ``PersistenceError``; a unique violation on
    the external id becomes ``DuplicateExternalId``.
    """
    try:
        yield
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if external_id and "external_id" in str(exc.orig):
            raise DuplicateExternalId(external_id) from exc
        logger.error(f"{action}: storage rejected write", exc_info=True)
        raise PersistenceError(f"Storage rejected {action}") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"{action}: storage failure", exc_info=True)
        raise PersistenceError(f"Storage failure during {action}") from exc
    except Exception:
        session.rollback()
        raise


@dataclass(frozen=True)
class CheckedReferences:
    to_account_id: Optional[int]
    category_id: Optional[int]
    asset_id: Optional[int]


def check_references(
    session: Session,
    user_id: int,
    *,
    type: TransactionType,
    amount_cents: int,
    account_id: int,
    to_account_id: Optional[int],
    category_id: Optional[int],
    asset_id: Optional[int] = None,
) -> CheckedReferences:
    """Validate the account/category references of a transaction or schedule.

    Returns the normalized optional references: destination only for
    transfers, category only for income/expense, asset only for transfers
    into an investment account.
    """
    if amount_cents < 0:
        raise LedgerValidationError("Amount must not be negative")
    if type != TransactionType.adjustment and amount_cents == 0:
        raise LedgerValidationError("Amount must be greater than zero")

    account = session.get(Account, account_id)
    if not account or account.user_id != user_id:
        raise InvalidReference("Account", account_id)

    to_account: Optional[Account] = None
    if type == TransactionType.transfer:
        if to_account_id is None:
            raise InvalidTransfer("Transfers require a destination account")
        if to_account_id == account_id:
            raise InvalidTransfer("Source and destination accounts must differ")
        to_account = session.get(Account, to_account_id)
        if not to_account or to_account.user_id != user_id:
            raise InvalidReference("Account", to_account_id)
    else:
        to_account_id = None

    side = type.category_type
    if side is None:
        category_id = None
    else:
        if category_id is None:
            raise LedgerValidationError(
                f"A category is required for {type.value} transactions"
            )
        category = session.get(Category, category_id)
        if not category or category.user_id != user_id:
            raise InvalidReference("Category", category_id)
        if category.type != side:
            raise LedgerValidationError(
                f'Category type "{category.type.value}" does not match '
                f'transaction type "{type.value}"'
            )

    if to_account is None or to_account.type != AccountType.investment:
        asset_id = None
    elif asset_id is not None:
        asset = session.get(Asset, asset_id)
        if not asset or asset.user_id != user_id:
            raise InvalidReference("Asset", asset_id)
    return CheckedReferences(
        to_account_id=to_account_id, category_id=category_id, asset_id=asset_id
    )


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise InvalidReference("Account", account_id)
        return account

    def lock(self, account_ids: Iterable[Optional[int]]) -> dict[int, Account]:
        wanted = {account_id for account_id in account_ids if account_id is not None}
        if not wanted:
            return {}
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.id.in_(wanted))
            .with_for_update()
        )
        return {account.id: account for account in self.session.scalars(stmt)}

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            currency=data.currency.upper(),
            balance_cents=data.balance_cents,
            bank_name=data.bank_name,
            color=data.color,
        )
        with unit_of_work(self.session, "create_account"):
            self.session.add(account)
        self.session.refresh(account)
        logger.info(f"account_created: id={account.id} type={account.type.value}")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        with unit_of_work(self.session, "update_account"):
            changes = data.model_dump(exclude_unset=True)
            if "name" in changes and changes["name"] is not None:
                account.name = changes["name"].strip()
            if changes.get("type") is not None:
                account.type = changes["type"]
            if changes.get("currency") is not None:
                account.currency = changes["currency"].upper()
            if "bank_name" in changes:
                account.bank_name = changes["bank_name"]
            if "color" in changes:
                account.color = changes["color"]
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        used_by_transactions = self.session.execute(
            select(func.count(Transaction.id)).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.to_account_id == account.id,
                )
            )
        ).scalar_one()
        used_by_schedules = self.session.execute(
            select(func.count(Schedule.id)).where(
                or_(
                    Schedule.account_id == account.id,
                    Schedule.to_account_id == account.id,
                )
            )
        ).scalar_one()
        if used_by_transactions or used_by_schedules:
            raise LedgerValidationError(
                "Account still has transactions or schedules; remove them first"
            )
        with unit_of_work(self.session, "delete_account"):
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id}")


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .options(selectinload(Category.children))
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.order, Category.name, Category.id)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise InvalidReference("Category", category_id)
        return category

    def options(self) -> list[CategoryOption]:
        return [CategoryOption(c.id, c.name, c.type) for c in self.list_all()]

    def fallback_for(self, type: CategoryType) -> Optional[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.type == type)
            .order_by(Category.order, Category.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def _check_parent(
        self, data: CategoryIn, category: Optional[Category] = None
    ) -> Optional[Category]:
        if data.parent_id is None:
            return None
        if category is not None and data.parent_id == category.id:
            raise LedgerValidationError("A category cannot be its own parent")
        parent = self.get(data.parent_id)
        if parent.parent_id is not None:
            raise LedgerValidationError("Categories can only be nested one level deep")
        if parent.type != data.type:
            raise LedgerValidationError("Subcategory type must match its parent")
        if category is not None and category.children:
            raise LedgerValidationError(
                "A category with subcategories cannot become a subcategory"
            )
        return parent

    def _check_unique_name(
        self, data: CategoryIn, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == data.type,
            func.lower(Category.name) == data.name.strip().lower(),
            Category.parent_id.is_(None)
            if data.parent_id is None
            else Category.parent_id == data.parent_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt.limit(1)):
            raise LedgerValidationError("Category already exists")

    def create(self, data: CategoryIn) -> Category:
        self._check_parent(data)
        self._check_unique_name(data)
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            parent_id=data.parent_id,
            icon=data.icon,
            color=data.color,
            order=data.order,
        )
        with unit_of_work(self.session, "create_category"):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        self._check_parent(data, category)
        self._check_unique_name(data, exclude_id=category.id)
        if data.type != category.type:
            if category.children:
                raise LedgerValidationError(
                    "Cannot change the type of a category with subcategories"
                )
            in_use = self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category.id
                )
            ).scalar_one()
            if in_use:
                raise LedgerValidationError(
                    "Cannot change the type of a category used by transactions"
                )
        with unit_of_work(self.session, "update_category"):
            category.name = data.name.strip()
            category.type = data.type
            category.parent_id = data.parent_id
            category.icon = data.icon
            category.color = data.color
            category.order = data.order
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if category.children:
            raise LedgerValidationError("Delete the subcategories first")
        for model in (Transaction, Schedule, Budget):
            count = self.session.execute(
                select(func.count(model.id)).where(model.category_id == category.id)
            ).scalar_one()
            if count:
                raise LedgerValidationError(
                    f"Category is still used by {model.__tablename__}"
                )
        with unit_of_work(self.session, "delete_category"):
            self.session.delete(category)


class AssetService:
    """Investment assets and the holdings transfers build up in them."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Asset]:
        stmt = (
            select(Asset)
            .where(Asset.user_id == self.user_id)
            .order_by(Asset.name, Asset.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, asset_id: int) -> Asset:
        asset = self.session.get(Asset, asset_id)
        if not asset or asset.user_id != self.user_id:
            raise InvalidReference("Asset", asset_id)
        return asset

    def create(self, data: AssetIn) -> Asset:
        name = data.name.strip()
        taken = self.session.scalar(
            select(Asset.id).where(Asset.user_id == self.user_id, Asset.name == name)
        )
        if taken is not None:
            raise LedgerValidationError(f'An asset named "{name}" already exists')
        asset = Asset(
            user_id=self.user_id,
            name=name,
            income_type=data.income_type,
            color=data.color,
        )
        with unit_of_work(self.session, "create_asset"):
            self.session.add(asset)
        self.session.refresh(asset)
        logger.info(
            f"asset_created: id={asset.id} income_type={asset.income_type.value}"
        )
        return asset

    def delete(self, asset_id: int) -> None:
        asset = self.get(asset_id)
        used = self.session.execute(
            select(func.count(Transaction.id)).where(Transaction.asset_id == asset.id)
        ).scalar_one()
        if used:
            raise LedgerValidationError("Asset is still used by transactions")
        with unit_of_work(self.session, "delete_asset"):
            self.session.execute(
                delete(AssetHolding).where(AssetHolding.asset_id == asset.id)
            )
            self.session.delete(asset)
        logger.info(f"asset_deleted: id={asset_id}")

    def holdings(self) -> list[AssetHolding]:
        stmt = (
            select(AssetHolding)
            .options(joinedload(AssetHolding.asset))
            .where(AssetHolding.user_id == self.user_id)
            .order_by(AssetHolding.updated_at.desc(), AssetHolding.id)
        )
        return self.session.scalars(stmt).all()

    def _holding(self, asset_id: int) -> Optional[AssetHolding]:
        return self.session.scalar(
            select(AssetHolding).where(
                AssetHolding.user_id == self.user_id,
                AssetHolding.asset_id == asset_id,
            )
        )

    def invest(self, asset_id: int, amount_cents: int) -> AssetHolding:
        """Add a transfer's amount to the asset's holding, opening it if needed.

        Runs inside the caller's unit of work; nothing is committed here.
        """
        holding = self._holding(asset_id)
        if holding is None:
            holding = AssetHolding(
                user_id=self.user_id, asset_id=asset_id, current_value_cents=0
            )
            self.session.add(holding)
        value = holding.current_value_cents + amount_cents
        if value > MAX_CENTS:
            raise LedgerValidationError("Holding value is out of range")
        holding.current_value_cents = value
        self.session.flush()
        return holding

    def divest(self, asset_id: int, amount_cents: int) -> Optional[AssetHolding]:
        """Take an amount back out of a holding; an emptied holding is closed."""
        holding = self._holding(asset_id)
        if holding is None:
            return None
        value = holding.current_value_cents - amount_cents
        if value <= 0:
            self.session.delete(holding)
            self.session.flush()
            return None
        holding.current_value_cents = value
        self.session.flush()
        return holding


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.assets = AssetService(session, self.user_id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise InvalidReference("Transaction", transaction_id)
        return txn

    def _filtered(self, period: Period, filters: TransactionFilters):
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return stmt

    def list(
        self,
        period: Period,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            self._filtered(period, filters or TransactionFilters())
            .options(joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def summary(
        self, period: Period, account_id: Optional[int] = None
    ) -> dict[str, int]:
        income_sum = func.sum(
            case(
                (Transaction.type == TransactionType.income, Transaction.amount_cents),
                else_=0,
            )
        )
        expense_sum = func.sum(
            case(
                (Transaction.type == TransactionType.expense, Transaction.amount_cents),
                else_=0,
            )
        )
        stmt = select(
            func.coalesce(income_sum, 0),
            func.coalesce(expense_sum, 0),
            func.count(Transaction.id),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        income, expense, count = self.session.execute(stmt).one()
        return {
            "income_cents": int(income or 0),
            "expense_cents": int(expense or 0),
            "net_cents": int(income or 0) - int(expense or 0),
            "count": int(count or 0),
        }

    def list_external_ids(self) -> list[str]:
        stmt = select(Transaction.external_id).where(
            Transaction.user_id == self.user_id,
            Transaction.external_id.isnot(None),
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("list_external_ids: storage failure", exc_info=True)
            raise PersistenceError("Could not load existing external ids") from exc

    def _external_id_taken(
        self, external_id: str, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Transaction.id).where(
            Transaction.user_id == self.user_id,
            Transaction.external_id == external_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Transaction.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def stage(
        self, data: TransactionIn, *, origin_schedule_id: Optional[int] = None
    ) -> Transaction:
        """Apply a new transaction to its accounts and flush it, without committing."""
        refs = check_references(
            self.session,
            self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
            asset_id=data.asset_id,
        )
        if data.external_id and self._external_id_taken(data.external_id):
            raise DuplicateExternalId(data.external_id)

        accounts = self.accounts.lock([data.account_id, refs.to_account_id])
        txn = Transaction(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            date=data.date,
            type=data.type,
            account_id=data.account_id,
            to_account_id=refs.to_account_id,
            category_id=refs.category_id,
            asset_id=refs.asset_id,
            external_id=data.external_id,
            origin_schedule_id=origin_schedule_id,
        )
        LedgerEngine(accounts).apply(txn)
        self.session.add(txn)
        self.session.flush()
        if refs.asset_id is not None:
            self.assets.invest(refs.asset_id, txn.amount_cents)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with unit_of_work(self.session, "create_transaction", data.external_id):
            txn = self.stage(data)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"amount_cents={txn.amount_cents} account={txn.account_id}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        with unit_of_work(self.session, "update_transaction", data.external_id):
            refs = check_references(
                self.session,
                self.user_id,
                type=data.type,
                amount_cents=data.amount_cents,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                category_id=data.category_id,
                asset_id=data.asset_id,
            )
            if data.external_id and self._external_id_taken(
                data.external_id, exclude_id=txn.id
            ):
                raise DuplicateExternalId(data.external_id)

            old = Posting.of(txn)
            old_asset_id = txn.asset_id
            accounts = self.accounts.lock(
                [old.account_id, old.to_account_id, data.account_id, refs.to_account_id]
            )
            txn.description = data.description.strip()
            txn.amount_cents = data.amount_cents
            txn.date = data.date
            txn.type = data.type
            txn.account_id = data.account_id
            txn.to_account_id = refs.to_account_id
            txn.category_id = refs.category_id
            txn.asset_id = refs.asset_id
            txn.external_id = data.external_id
            LedgerEngine(accounts).replace(old, txn)
            self.session.flush()
            if old_asset_id is not None:
                self.assets.divest(old_asset_id, old.amount_cents)
            if refs.asset_id is not None:
                self.assets.invest(refs.asset_id, txn.amount_cents)
        self.session.refresh(txn)
        logger.info(f"transaction_updated: id={txn.id} type={txn.type.value}")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with unit_of_work(self.session, "delete_transaction"):
            accounts = self.accounts.lock([txn.account_id, txn.to_account_id])
            LedgerEngine(accounts).reverse(txn)
            if txn.asset_id is not None:
                self.assets.divest(txn.asset_id, txn.amount_cents)
            self.session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id}")


class ScheduleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Schedule]:
        stmt = (
            select(Schedule)
            .options(joinedload(Schedule.category))
            .where(Schedule.user_id == self.user_id)
            .order_by(Schedule.date, Schedule.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, schedule_id: int) -> Schedule:
        schedule = self.session.get(Schedule, schedule_id)
        if not schedule or schedule.user_id != self.user_id:
            raise InvalidReference("Schedule", schedule_id)
        return schedule

    def _check(self, data: ScheduleIn) -> CheckedReferences:
        return check_references(
            self.session,
            self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
        )

    def create(self, data: ScheduleIn) -> Schedule:
        refs = self._check(data)
        schedule = Schedule(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            date=data.date,
            frequency=data.frequency,
            type=data.type,
            account_id=data.account_id,
            to_account_id=refs.to_account_id,
            category_id=refs.category_id,
        )
        with unit_of_work(self.session, "create_schedule"):
            self.session.add(schedule)
        self.session.refresh(schedule)
        logger.info(
            f"schedule_created: id={schedule.id} frequency={schedule.frequency.value}"
        )
        return schedule

    def update(self, schedule_id: int, data: ScheduleIn) -> Schedule:
        schedule = self.get(schedule_id)
        refs = self._check(data)
        with unit_of_work(self.session, "update_schedule"):
            schedule.description = data.description.strip()
            schedule.amount_cents = data.amount_cents
            schedule.date = data.date
            schedule.frequency = data.frequency
            schedule.type = data.type
            schedule.account_id = data.account_id
            schedule.to_account_id = refs.to_account_id
            schedule.category_id = refs.category_id
        self.session.refresh(schedule)
        return schedule

    def delete(self, schedule_id: int) -> None:
        schedule = self.get(schedule_id)
        with unit_of_work(self.session, "delete_schedule"):
            self.session.delete(schedule)
        logger.info(f"schedule_deleted: id={schedule_id}")


class PaymentGuard:
    """Schedule ids with a payment in flight in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()

    @contextmanager
    def hold(self, schedule_id: int) -> Iterator[None]:
        with self._lock:
            if schedule_id in self._in_flight:
                raise ScheduleBusy(schedule_id)
            self._in_flight.add(schedule_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(schedule_id)

    def is_busy(self, schedule_id: int) -> bool:
        with self._lock:
            return schedule_id in self._in_flight


payment_guard = PaymentGuard()


@dataclass
class PaymentResult:
    transaction: Transaction
    schedule: Optional[Schedule]
    next_date: Optional[date]

    @property
    def retired(self) -> bool:
        return self.schedule is None


class SchedulePaymentService:
    """Marks schedules as paid.

    The realized transaction and the schedule's advance (or retirement) are
    written in one database transaction. The advance is a compare-and-set on
    the schedule date read at the start, so a concurrent payment from another
    process rolls the whole payment back instead of paying twice.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        guard: Optional[PaymentGuard] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.guard = guard or payment_guard

    def pay(self, schedule_id: int, today: Optional[date] = None) -> PaymentResult:
        today = today or local_today()
        with self.guard.hold(schedule_id):
            schedule = ScheduleService(self.session, self.user_id).get(schedule_id)
            due_date = schedule.date
            frequency = schedule.frequency
            retire = frequency == Frequency.once
            data = TransactionIn(
                description=f"Payment: {schedule.description}"[:200],
                amount_cents=schedule.amount_cents,
                date=today,
                type=schedule.type,
                account_id=schedule.account_id,
                to_account_id=schedule.to_account_id,
                category_id=schedule.category_id,
            )
            next_date: Optional[date] = None
            with unit_of_work(self.session, "pay_schedule"):
                txn = TransactionService(self.session, self.user_id).stage(
                    data, origin_schedule_id=schedule.id
                )
                if retire:
                    result = self.session.execute(
                        delete(Schedule).where(
                            Schedule.id == schedule.id, Schedule.date == due_date
                        )
                    )
                else:
                    next_date = advance_date(due_date, frequency)
                    result = self.session.execute(
                        update(Schedule)
                        .where(Schedule.id == schedule.id, Schedule.date == due_date)
                        .values(date=next_date)
                    )
                if result.rowcount != 1:
                    raise ScheduleBusy(schedule_id)
            self.session.refresh(txn)
            logger.info(
                f"schedule_paid: id={schedule_id} transaction={txn.id} "
                f"retired={retire} next_date={next_date}"
            )
            if retire:
                return PaymentResult(transaction=txn, schedule=None, next_date=None)
            self.session.refresh(schedule)
            return PaymentResult(transaction=txn, schedule=schedule, next_date=next_date)


@dataclass
class ReconciliationResult:
    rows: list[ImportRow]
    duplicates_in_batch: int = 0
    duplicates_in_store: int = 0


@dataclass
class ImportPreview:
    headers: list[str]
    mapping: ColumnMapping
    rows: list[ImportRow]
    errors: list[str]
    token: str


@dataclass
class ImportResult:
    total: int
    committed: int = 0
    duplicates_in_batch: int = 0
    duplicates_in_store: int = 0
    row_errors: list[str] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None

    @property
    def duplicates(self) -> int:
        return self.duplicates_in_batch + self.duplicates_in_store


class ImportService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        provider: Optional[SuggestionProvider] = None,
        use_suggestions: bool = True,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.provider = provider
        self.use_suggestions = use_suggestions
        self.transactions = TransactionService(session, self.user_id)
        self.categories = CategoryService(session, self.user_id)

    def _provider(self) -> Optional[SuggestionProvider]:
        if not self.use_suggestions:
            return None
        if self.provider is None:
            self.provider = FuzzySuggestionProvider(
                known_descriptions=self._known_descriptions()
            )
        return self.provider

    def _known_descriptions(self, limit: int = 500) -> dict[str, int]:
        stmt = (
            select(Transaction.description, Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.isnot(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        known: dict[str, int] = {}
        for description, category_id in self.session.execute(stmt):
            known.setdefault(description, category_id)
        return known

    def preview(
        self, content: str, mapping: Optional[ColumnMapping] = None
    ) -> ImportPreview:
        headers, raw_rows = read_csv(content)
        max_rows = get_settings().import_max_rows
        if len(raw_rows) > max_rows:
            raise LedgerValidationError(f"Import is limited to {max_rows} rows")

        if mapping is None:
            suggested = safe_column_mapping(self._provider(), headers, raw_rows[:5])
            if not all(suggested.get(k) for k in ("date", "description", "amount")):
                raise LedgerValidationError(
                    "Could not detect the date, description and amount columns; "
                    "supply a column mapping"
                )
            mapping = ColumnMapping(
                date=suggested["date"],
                description=suggested["description"],
                amount=suggested["amount"],
                external_id=suggested.get("external_id"),
            )

        rows, errors = extract_rows(headers, raw_rows, mapping)
        rows = self._suggest_categories(rows)
        token = dump_batch(rows, self.user_id)
        logger.info(
            f"import_preview: rows={len(rows)} errors={len(errors)} "
            f"suggested={sum(1 for r in rows if r.category_suggested)}"
        )
        return ImportPreview(
            headers=headers, mapping=mapping, rows=rows, errors=errors, token=token
        )

    def _suggest_categories(self, rows: list[ImportRow]) -> list[ImportRow]:
        provider = self._provider()
        if provider is None or not rows:
            return rows
        options = self.categories.options()
        suggestions = safe_categories(
            provider, [row.description for row in rows], options
        )
        types = {option.id: option.type for option in options}
        staged: list[ImportRow] = []
        for row in rows:
            category_id = suggestions.get(row.description)
            if (
                row.category_id is None
                and category_id is not None
                and types.get(category_id) == row.type.category_type
            ):
                row = row.model_copy(
                    update={"category_id": category_id, "category_suggested": True}
                )
            staged.append(row)
        return staged

    def reconcile(self, rows: Sequence[ImportRow]) -> ReconciliationResult:
        seen: set[str] = set()
        survivors: list[ImportRow] = []
        in_batch = 0
        for row in rows:
            external_id = (row.external_id or "").strip()
            if external_id:
                if external_id in seen:
                    in_batch += 1
                    continue
                seen.add(external_id)
            survivors.append(row)

        in_store = 0
        if any((row.external_id or "").strip() for row in survivors):
            persisted = set(self.transactions.list_external_ids())
            kept: list[ImportRow] = []
            for row in survivors:
                external_id = (row.external_id or "").strip()
                if external_id and external_id in persisted:
                    in_store += 1
                    continue
                kept.append(row)
            survivors = kept
        return ReconciliationResult(
            rows=survivors, duplicates_in_batch=in_batch, duplicates_in_store=in_store
        )

    def _transaction_for(
        self, row: ImportRow, account_id: int, category_id: Optional[int]
    ) -> TransactionIn:
        try:
            return TransactionIn(
                description=row.description,
                amount_cents=row.amount_cents,
                date=row.date,
                type=row.type,
                account_id=account_id,
                category_id=category_id,
                external_id=row.external_id,
            )
        except ValidationError as exc:
            reasons = "; ".join(error["msg"] for error in exc.errors())
            raise LedgerValidationError(f"Invalid row: {reasons}") from exc

    def commit(
        self,
        rows: Sequence[ImportRow],
        account_id: int,
        observer: Optional[ProgressObserver] = None,
    ) -> ImportResult:
        """Commit reconciled rows one at a time, in input order.

        A duplicate external id caught by the store is a skip and drops out
        of ``total``. Any other failure stops the batch; rows committed before
        it stay committed and later rows are not attempted.
        """
        AccountService(self.session, self.user_id).get(account_id)
        reconciled = self.reconcile(rows)
        result = ImportResult(
            total=len(reconciled.rows),
            duplicates_in_batch=reconciled.duplicates_in_batch,
            duplicates_in_store=reconciled.duplicates_in_store,
        )
        notify = observer or (lambda completed, total, done: None)
        notify(0, result.total, False)

        fallbacks: dict[CategoryType, Optional[int]] = {}
        for row in reconciled.rows:
            category_id = row.category_id
            side = row.type.category_type
            if category_id is None and side is not None:
                if side not in fallbacks:
                    fallback = self.categories.fallback_for(side)
                    fallbacks[side] = fallback.id if fallback else None
                category_id = fallbacks[side]
            try:
                self.transactions.create(
                    self._transaction_for(row, account_id, category_id)
                )
            except DuplicateExternalId as exc:
                result.duplicates_in_store += 1
                result.total -= 1
                logger.warning(
                    f"import_commit: skipped duplicate row={row.row_number} {exc}"
                )
                notify(result.committed, result.total, False)
                continue
            except LedgerError as exc:
                result.failed = True
                result.error = f"Row {row.row_number}: {exc}"
                result.row_errors.append(result.error)
                logger.error(
                    f"import_commit: aborted row={row.row_number} "
                    f"committed={result.committed} total={result.total} error={exc}"
                )
                break
            result.committed += 1
            notify(result.committed, result.total, False)

        notify(result.committed, result.total, True)
        logger.info(
            f"import_commit: committed={result.committed} total={result.total} "
            f"duplicates={result.duplicates} row_errors={len(result.row_errors)} "
            f"failed={result.failed}"
        )
        return result

    def commit_token(
        self,
        token: str,
        account_id: int,
        category_overrides: Optional[dict[int, Optional[int]]] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> ImportResult:
        rows = load_batch(token, self.user_id)
        overrides = category_overrides or {}
        reviewed: list[ImportRow] = []
        for row in rows:
            if row.row_number in overrides:
                row = row.model_copy(
                    update={
                        "category_id": overrides[row.row_number],
                        "category_suggested": False,
                    }
                )
            reviewed.append(row)
        return self.commit(reviewed, account_id, observer)


@dataclass
class ImportProgress:
    job_id: str
    completed: int = 0
    total: int = 0
    done: bool = False
    result: Optional[ImportResult] = None
    updated_at: float = field(default_factory=time.monotonic)


class ImportProgressRegistry:
    """In-memory progress of running imports, polled by the API."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, ImportProgress] = {}

    def start(self) -> ImportProgress:
        progress = ImportProgress(job_id=uuid.uuid4().hex)
        with self._lock:
            self._jobs[progress.job_id] = progress
        return replace(progress)

    def observer(self, job_id: str) -> ProgressObserver:
        def _update(completed: int, total: int, done: bool) -> None:
            with self._lock:
                progress = self._jobs.get(job_id)
                if progress is None:
                    return
                progress.completed = max(progress.completed, completed)
                progress.total = total
                progress.done = progress.done or done
                progress.updated_at = time.monotonic()

        return _update

    def finish(self, job_id: str, result: ImportResult) -> None:
        with self._lock:
            progress = self._jobs.get(job_id)
            if progress is None:
                return
            progress.result = result
            progress.done = True
            progress.updated_at = time.monotonic()

    def get(self, job_id: str) -> Optional[ImportProgress]:
        with self._lock:
            progress = self._jobs.get(job_id)
            return replace(progress) if progress else None

    def purge_finished(self, older_than_secs: float) -> int:
        cutoff = time.monotonic() - older_than_secs
        with self._lock:
            stale = [
                job_id
                for job_id, progress in self._jobs.items()
                if progress.done and progress.updated_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)


progress_registry = ImportProgressRegistry()


def rollup_category_ids(category: Category) -> set[int]:
    """Categories whose transactions count toward a budget on ``category``.

    A top-level category rolls up its direct children; a subcategory only
    counts itself.
    """
    ids = {category.id}
    if category.parent_id is None:
        ids.update(child.id for child in category.children)
    return ids


@dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    spent_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.budget.limit_cents - self.spent_cents

    @property
    def percent_used(self) -> float:
        return self.spent_cents / self.budget.limit_cents * 100


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.categories = CategoryService(session, self.user_id)

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category).selectinload(Category.children))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).unique().all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise InvalidReference("Budget", budget_id)
        return budget

    def _check_category(self, category_id: int, exclude_id: Optional[int] = None) -> None:
        self.categories.get(category_id)
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id, Budget.category_id == category_id
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt.limit(1)):
            raise LedgerValidationError("A budget already exists for this category")

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            limit_cents=data.limit_cents,
        )
        with unit_of_work(self.session, "create_budget"):
            self.session.add(budget)
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        if data.category_id != budget.category_id:
            self._check_category(data.category_id, exclude_id=budget.id)
        with unit_of_work(self.session, "update_budget"):
            budget.category_id = data.category_id
            budget.limit_cents = data.limit_cents
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with unit_of_work(self.session, "delete_budget"):
            self.session.delete(budget)

    def spent_for_month(self, category: Category, year: int, month: int) -> int:
        period = month_period(year, month)
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType(category.type.value),
            Transaction.category_id.in_(rollup_category_ids(category)),
            Transaction.date.between(period.start, period.end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list_with_spent(
        self, year: Optional[int] = None, month: Optional[int] = None
    ) -> list[BudgetProgress]:
        if year is None or month is None:
            today = local_today()
            year, month = today.year, today.month
        return [
            BudgetProgress(
                budget=budget,
                spent_cents=self.spent_for_month(budget.category, year, month),
            )
            for budget in self.list_all()
        ]
