import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_SECRET_KEY", "test-secret")

import pytest  # noqa: E402

from database import Base, build_engine, make_session_factory  # noqa: E402
from models import AccountType, CategoryType  # noqa: E402
from schemas import AccountIn, CategoryIn  # noqa: E402
from services import AccountService, CategoryService  # noqa: E402


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def ledger(session):
    """Two accounts and a small category tree."""
    accounts = AccountService(session)
    categories = CategoryService(session)
    checking = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_00)
    )
    savings = accounts.create(
        AccountIn(name="Savings", type=AccountType.investment, balance_cents=20_00)
    )
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    groceries = categories.create(
        CategoryIn(name="Groceries", type=CategoryType.expense, parent_id=food.id)
    )
    restaurants = categories.create(
        CategoryIn(name="Restaurants", type=CategoryType.expense, parent_id=food.id)
    )
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return {
        "checking": checking,
        "savings": savings,
        "food": food,
        "groceries": groceries,
        "restaurants": restaurants,
        "salary": salary,
    }
