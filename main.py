import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from aggregation import MonthlyTrend
from config import get_settings
from database import SessionLocal
from errors import InvalidRange, NotFound, PreferenceConflict, StorageFailure
from models import (
    Budget,
    Category,
    Notification,
    NotificationPreference,
    Transaction,
    TransactionType,
)
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import BudgetIn, CategoryIn, NotificationPreferenceIn, TransactionIn
from services import (
    BudgetService,
    CategoryService,
    DashboardService,
    NotificationPreferenceService,
    NotificationService,
    TransactionService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Alerts")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user() -> int:
    return get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFound)
def not_found_handler(_request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidRange)
def invalid_range_handler(_request: Request, exc: InvalidRange):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PreferenceConflict)
def preference_conflict_handler(_request: Request, exc: PreferenceConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StorageFailure)
def storage_failure_handler(_request: Request, exc: StorageFailure):
    logger.error(f"storage_failure: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "color": category.color,
    }


def period_to_dict(period: Period) -> dict[str, object]:
    return {
        "slug": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "note": txn.note,
    }


def budget_to_dict(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "description": budget.description,
        "category_id": budget.category_id,
        "limit_cents": budget.limit_cents,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "is_active": budget.is_active,
    }


def notification_to_dict(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type.value,
        "priority": notification.priority.value,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "budget_id": notification.budget_id,
        "transaction_id": notification.transaction_id,
    }


def preference_to_dict(prefs: NotificationPreference) -> dict[str, object]:
    data = NotificationPreferenceIn.model_validate(
        prefs, from_attributes=True
    ).model_dump(mode="json")
    data["user_id"] = prefs.user_id
    return data


def trend_to_dict(point: MonthlyTrend) -> dict[str, object]:
    data = asdict(point)
    data["net_cents"] = point.net_cents
    return data


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [category_to_dict(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return category_to_dict(category)


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    txn = TransactionService(db, user_id).create(data)
    return transaction_to_dict(txn)


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    transaction_type: Optional[TransactionType] = Query(default=None, alias="type"),
    category_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    period = period_from_request(request)
    items = TransactionService(db, user_id).list(
        period,
        transaction_type=transaction_type,
        category_id=category_id,
        limit=limit,
        offset=max(offset, 0),
    )
    return [transaction_to_dict(t) for t in items]


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    txn = TransactionService(db, user_id).update(transaction_id, data)
    return transaction_to_dict(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


@app.get("/api/budgets")
def api_budgets(
    active: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    budgets = BudgetService(db, user_id).list_all(active_only=active)
    return [budget_to_dict(b) for b in budgets]


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return budget_to_dict(BudgetService(db, user_id).create(data))


@app.put("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return budget_to_dict(BudgetService(db, user_id).update(budget_id, data))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    BudgetService(db, user_id).delete(budget_id)
    return Response(status_code=204)


@app.get("/api/budgets/{budget_id}/spend")
def api_budget_spend(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    consumption = BudgetService(db, user_id).recompute_spend(budget_id)
    return {
        "spent_cents": consumption.spent_cents,
        "remaining_cents": consumption.remaining_cents,
        "percentage_used": consumption.percentage_used,
    }


@app.get("/api/notifications")
def api_notifications(
    limit: Optional[int] = None,
    offset: int = 0,
    unread: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    items = NotificationService(db, user_id).list(
        limit=limit, offset=max(offset, 0), unread_only=unread
    )
    return [notification_to_dict(n) for n in items]


@app.get("/api/notifications/unread-count")
def api_unread_count(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return {"count": NotificationService(db, user_id).unread_count()}


@app.post("/api/notifications/read-all")
def api_mark_all_read(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return {"updated": NotificationService(db, user_id).mark_all_read()}


@app.post("/api/notifications/sweep")
def api_sweep_notifications(
    max_age_days: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    if max_age_days is not None and max_age_days < 0:
        raise HTTPException(status_code=400, detail="max_age_days must be >= 0")
    return {"removed": NotificationService(db, user_id).sweep_old(max_age_days)}


@app.post("/api/notifications/{notification_id}/read")
def api_mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    notification = NotificationService(db, user_id).mark_read(notification_id)
    return notification_to_dict(notification)


@app.delete("/api/notifications/{notification_id}", status_code=204)
def api_delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    NotificationService(db, user_id).delete(notification_id)
    return Response(status_code=204)


@app.get("/api/preferences")
def api_get_preferences(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return preference_to_dict(NotificationPreferenceService(db, user_id).get())


@app.put("/api/preferences")
def api_set_preferences(
    data: NotificationPreferenceIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return preference_to_dict(NotificationPreferenceService(db, user_id).set(data))


@app.get("/api/dashboard")
def api_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    period = period_from_request(request)
    summary = DashboardService(db, user_id).summary(period)
    return {
        "period": period_to_dict(period),
        "income_cents": summary["income_cents"],
        "expense_cents": summary["expense_cents"],
        "net_cents": summary["net_cents"],
        "total_budget_cents": summary["total_budget_cents"],
        "savings_rate": summary["savings_rate"],
        "expenses_by_category": [asdict(r) for r in summary["expenses_by_category"]],
        "income_by_category": [asdict(r) for r in summary["income_by_category"]],
        "budget_analysis": [asdict(b) for b in summary["budget_analysis"]],
        "monthly_trends": [trend_to_dict(p) for p in summary["monthly_trends"]],
        "income_change_percent": summary["income_change_percent"],
        "expense_change_percent": summary["expense_change_percent"],
        "net_change_percent": summary["net_change_percent"],
    }


@app.get("/api/reports/detailed")
def api_detailed_report(
    request: Request,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    period = period_from_request(request)
    report = DashboardService(db, user_id).detailed_report(
        period, category_id=category_id
    )
    return {
        "period": period_to_dict(report.period),
        "category_id": report.category_id,
        "expenses": [transaction_to_dict(t) for t in report.expenses],
        "income": [transaction_to_dict(t) for t in report.income],
        "total_expense_cents": report.total_expense_cents,
        "total_income_cents": report.total_income_cents,
        "net_cents": report.net_cents,
    }
