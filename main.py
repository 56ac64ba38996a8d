import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from errors import (
    DuplicateExternalId,
    InvalidReference,
    LedgerError,
    PersistenceError,
    ScheduleBusy,
)
from import_tokens import load_batch
from models import (
    Account,
    Asset,
    AssetHolding,
    Category,
    CategoryType,
    Schedule,
    Transaction,
    TransactionType,
)
from periods import Period, month_start, resolve_period, shift_month
from recurrence import (
    PROJECTION_MONTHS_BACK,
    local_today,
    project_cash_flow,
    upcoming_occurrences,
)
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    AssetIn,
    BudgetIn,
    CategoryIn,
    ColumnMapping,
    ImportCommitIn,
    ScheduleIn,
    TransactionIn,
)
from services import (
    AccountService,
    AssetService,
    BudgetProgress,
    BudgetService,
    CategoryService,
    ImportResult,
    ImportService,
    ScheduleService,
    SchedulePaymentService,
    TransactionFilters,
    TransactionService,
    progress_registry,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, InvalidReference):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ScheduleBusy, DuplicateExternalId)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    category_param = request.query_params.get("category")
    account_param = request.query_params.get("account")
    query = request.query_params.get("q")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    category_id = int(category_param) if (category_param or "").isdigit() else None
    account_id = int(account_param) if (account_param or "").isdigit() else None
    return TransactionFilters(
        type=txn_type, category_id=category_id, account_id=account_id, query=query
    )


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "currency": account.currency,
        "balance_cents": account.balance_cents,
        "bank_name": account.bank_name,
        "color": account.color,
    }


def category_out(category: Category, with_children: bool = False) -> dict:
    data = {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "parent_id": category.parent_id,
        "icon": category.icon,
        "color": category.color,
        "order": category.order,
    }
    if with_children:
        data["children"] = [category_out(child) for child in category.children]
    return data


def asset_out(asset: Asset) -> dict:
    return {
        "id": asset.id,
        "name": asset.name,
        "income_type": asset.income_type.value,
        "color": asset.color,
    }


def holding_out(holding: AssetHolding) -> dict:
    return {
        "id": holding.id,
        "asset_id": holding.asset_id,
        "asset": asset_out(holding.asset),
        "current_value_cents": holding.current_value_cents,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "asset_id": txn.asset_id,
        "external_id": txn.external_id,
        "balance_delta_cents": txn.balance_delta_cents,
        "origin_schedule_id": txn.origin_schedule_id,
    }


def schedule_out(schedule: Schedule) -> dict:
    return {
        "id": schedule.id,
        "description": schedule.description,
        "amount_cents": schedule.amount_cents,
        "date": schedule.date.isoformat(),
        "frequency": schedule.frequency.value,
        "type": schedule.type.value,
        "account_id": schedule.account_id,
        "to_account_id": schedule.to_account_id,
        "category_id": schedule.category_id,
    }


def budget_out(progress: BudgetProgress) -> dict:
    budget = progress.budget
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "category": budget.category.name,
        "limit_cents": budget.limit_cents,
        "spent_cents": progress.spent_cents,
        "remaining_cents": progress.remaining_cents,
        "percent_used": round(progress.percent_used, 1),
    }


def import_result_out(result: ImportResult) -> dict:
    return {
        "total": result.total,
        "committed": result.committed,
        "duplicates": result.duplicates,
        "duplicates_in_batch": result.duplicates_in_batch,
        "duplicates_in_store": result.duplicates_in_store,
        "row_errors": result.row_errors,
        "failed": result.failed,
        "error": result.error,
    }


@app.get("/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_out(account) for account in AccountService(db).list_all()]


@app.post("/accounts", status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return account_out(account)


@app.get("/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).get(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return account_out(account)


@app.patch("/accounts/{account_id}")
def update_account(
    account_id: int, payload: AccountUpdate, db: Session = Depends(get_db)
):
    try:
        account = AccountService(db).update(account_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return account_out(account)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/categories")
def list_categories(
    type: Optional[CategoryType] = None, db: Session = Depends(get_db)
):
    categories = CategoryService(db).list_all(type)
    return [
        category_out(category, with_children=True)
        for category in categories
        if category.parent_id is None
    ]


@app.post("/categories", status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.patch("/categories/{category_id}")
def update_category(
    category_id: int, payload: CategoryIn, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db).update(category_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/assets")
def list_assets(db: Session = Depends(get_db)):
    return [asset_out(asset) for asset in AssetService(db).list_all()]


@app.post("/assets", status_code=201)
def create_asset(payload: AssetIn, db: Session = Depends(get_db)):
    try:
        asset = AssetService(db).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return asset_out(asset)


@app.delete("/assets/{asset_id}")
def delete_asset(asset_id: int, db: Session = Depends(get_db)):
    try:
        AssetService(db).delete(asset_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/asset-holdings")
def list_asset_holdings(db: Session = Depends(get_db)):
    return [holding_out(holding) for holding in AssetService(db).holdings()]


@app.get("/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    page = int(request.query_params.get("page", "1"))
    page = max(page, 1)
    limit = int(request.query_params.get("limit", "50"))
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db).list(period, filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_out(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.get("/transactions/summary")
def transactions_summary(
    request: Request,
    account: Optional[int] = None,
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    summary = TransactionService(db).summary(period, account)
    summary["period"] = period.slug
    return summary


@app.get("/transactions/external-ids")
def transactions_external_ids(db: Session = Depends(get_db)):
    try:
        return TransactionService(db).list_external_ids()
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/transactions", status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/schedules")
def list_schedules(db: Session = Depends(get_db)):
    return [schedule_out(schedule) for schedule in ScheduleService(db).list()]


@app.post("/schedules", status_code=201)
def create_schedule(payload: ScheduleIn, db: Session = Depends(get_db)):
    try:
        schedule = ScheduleService(db).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return schedule_out(schedule)


@app.get("/schedules/{schedule_id}")
def get_schedule(schedule_id: int, db: Session = Depends(get_db)):
    try:
        schedule = ScheduleService(db).get(schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return schedule_out(schedule)


@app.put("/schedules/{schedule_id}")
def update_schedule(
    schedule_id: int, payload: ScheduleIn, db: Session = Depends(get_db)
):
    try:
        schedule = ScheduleService(db).update(schedule_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return schedule_out(schedule)


@app.delete("/schedules/{schedule_id}")
def delete_schedule(schedule_id: int, db: Session = Depends(get_db)):
    try:
        ScheduleService(db).delete(schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/schedules/{schedule_id}/pay")
def pay_schedule(schedule_id: int, db: Session = Depends(get_db)):
    try:
        result = SchedulePaymentService(db).pay(schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {
        "transaction": transaction_out(result.transaction),
        "schedule": schedule_out(result.schedule) if result.schedule else None,
        "retired": result.retired,
    }


@app.get("/schedules/{schedule_id}/occurrences")
def schedule_occurrences(
    schedule_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        schedule = ScheduleService(db).get(schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    start = start or local_today()
    end = end or start + timedelta(days=90)
    if start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    return {
        "schedule_id": schedule.id,
        "dates": [d.isoformat() for d in upcoming_occurrences(schedule, start, end)],
    }


@app.get("/cash-flow/projection")
def cash_flow_projection(db: Session = Depends(get_db)):
    today = local_today()
    year, month = shift_month(today.year, today.month, -PROJECTION_MONTHS_BACK)
    user_id = AccountService(db).user_id
    transactions = db.scalars(
        select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.date >= month_start(year, month),
            Transaction.type.in_([TransactionType.income, TransactionType.expense]),
        )
    ).all()
    schedules = ScheduleService(db).list()
    months = project_cash_flow(transactions, schedules, today)
    return [
        {
            "month": row.key,
            "is_projected": row.is_projected,
            "realized_income_cents": row.realized_income_cents,
            "realized_expense_cents": row.realized_expense_cents,
            "predicted_income_cents": row.predicted_income_cents,
            "predicted_expense_cents": row.predicted_expense_cents,
            "total_income_cents": row.total_income_cents,
            "total_expense_cents": row.total_expense_cents,
            "net_flow_cents": row.net_flow_cents,
        }
        for row in months
    ]


@app.get("/budgets")
def list_budgets(
    year: Optional[int] = Query(default=None, ge=1970, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    if (year is None) != (month is None):
        raise HTTPException(status_code=400, detail="Pass both year and month")
    return [budget_out(p) for p in BudgetService(db).list_with_spent(year, month)]


@app.post("/budgets", status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    service = BudgetService(db)
    try:
        budget = service.create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    today = local_today()
    spent = service.spent_for_month(budget.category, today.year, today.month)
    return budget_out(BudgetProgress(budget=budget, spent_cents=spent))


@app.patch("/budgets/{budget_id}")
def update_budget(budget_id: int, payload: BudgetIn, db: Session = Depends(get_db)):
    service = BudgetService(db)
    try:
        budget = service.update(budget_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    today = local_today()
    spent = service.spent_for_month(budget.category, today.year, today.month)
    return budget_out(BudgetProgress(budget=budget, spent_cents=spent))


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def _decode_upload(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        # older bank exports are latin-1
        return raw.decode("latin-1")


@app.post("/imports/preview")
async def import_preview(
    file: UploadFile = File(...),
    date_column: Optional[str] = Form(default=None),
    description_column: Optional[str] = Form(default=None),
    amount_column: Optional[str] = Form(default=None),
    external_id_column: Optional[str] = Form(default=None),
    db: Session = Depends(get_db),
):
    mapping = None
    columns = (date_column, description_column, amount_column)
    if any(columns):
        if not all(columns):
            raise HTTPException(
                status_code=400,
                detail="Mapping needs date, description and amount columns",
            )
        mapping = ColumnMapping(
            date=date_column,
            description=description_column,
            amount=amount_column,
            external_id=external_id_column or None,
        )
    content = _decode_upload(await file.read())
    try:
        preview = ImportService(db).preview(content, mapping)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {
        "headers": preview.headers,
        "mapping": preview.mapping.model_dump(),
        "rows": [row.model_dump(mode="json") for row in preview.rows],
        "errors": preview.errors,
        "token": preview.token,
    }


def run_import_job(
    factory: sessionmaker[Session], job_id: str, payload: ImportCommitIn
) -> None:
    observer = progress_registry.observer(job_id)
    result = ImportResult(total=0, failed=True, error="Import job crashed")
    try:
        with session_scope(factory) as session:
            try:
                result = ImportService(session).commit_token(
                    payload.token,
                    payload.account_id,
                    payload.category_overrides,
                    observer,
                )
            except LedgerError as exc:
                logger.error(f"import_commit: job={job_id} aborted error={exc}")
                result = ImportResult(total=0, failed=True, error=str(exc))
                observer(0, 0, True)
    finally:
        progress_registry.finish(job_id, result)
    logger.info(
        f"import_commit: job={job_id} committed={result.committed} "
        f"total={result.total} failed={result.failed}"
    )


@app.post("/imports/commit", status_code=202)
def import_commit(
    payload: ImportCommitIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: sessionmaker[Session] = Depends(get_session_factory),
):
    try:
        AccountService(db).get(payload.account_id)
        load_batch(payload.token)
    except LedgerError as exc:
        raise http_error(exc) from exc
    progress = progress_registry.start()
    background_tasks.add_task(run_import_job, factory, progress.job_id, payload)
    return {
        "job_id": progress.job_id,
        "progress_url": f"/imports/{progress.job_id}/progress",
    }


@app.get("/imports/{job_id}/progress")
def import_progress(job_id: str):
    progress = progress_registry.get(job_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    return {
        "job_id": progress.job_id,
        "completed": progress.completed,
        "total": progress.total,
        "done": progress.done,
        "result": import_result_out(progress.result) if progress.result else None,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
