from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload

from aggregation import (
    BudgetConsumption,
    GroupBy,
    MonthlyTrend,
    budget_consumption,
    monthly_trend,
    net_change_percent,
    percent_change,
    savings_rate,
    summarize,
)
from config import get_settings
from database import storage_errors
from errors import InvalidRange, NotFound, PreferenceConflict, StorageFailure
from models import (
    DEFAULT_PRIORITY,
    Budget,
    Category,
    Notification,
    NotificationPreference,
    NotificationType,
    Transaction,
    TransactionType,
)
from periods import Period, add_months, month_end, month_start
from schemas import BudgetIn, CategoryIn, NotificationPreferenceIn, TransactionIn
from thresholds import AlertTier, classify_consumption

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def _resolve_user(user_id: Optional[int]) -> int:
    return get_current_user_id() if user_id is None else user_id


def local_now() -> datetime:
    return datetime.now(get_settings().tzinfo)


def _utcnow() -> datetime:
    return datetime.utcnow()


def format_money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


def in_quiet_hours(moment: time, start: time, end: time) -> bool:
    """Whether ``moment`` falls in the quiet window.

    A window with ``start < end`` is same-day and half-open. Otherwise it
    spans midnight and both ends are inclusive.
    """
    if start < end:
        return start <= moment < end
    return moment >= start or moment <= end


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        with storage_errors(self.session, "list_categories"):
            stmt = select(Category).order_by(Category.name)
            return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        with storage_errors(self.session, "get_category"):
            category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        with storage_errors(self.session, "create_category"):
            existing = self.session.scalar(
                select(Category).where(func.lower(Category.name) == data.name.lower())
            )
            if existing:
                raise ValueError("Category with this name already exists")
            category = Category(
                name=data.name.strip(),
                description=data.description,
                color=data.color,
            )
            self.session.add(category)
            self.session.commit()
            self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)

    def _validate(self, data: TransactionIn) -> None:
        if data.amount_cents <= 0:
            raise InvalidRange("Amount must be greater than zero")
        if not self.session.get(Category, data.category_id):
            raise NotFound("Category not found")

    def create(
        self, data: TransactionIn, *, now: Optional[datetime] = None
    ) -> Transaction:
        with storage_errors(self.session, "create_transaction"):
            self._validate(data)
            txn = Transaction(
                user_id=self.user_id,
                date=data.date,
                type=data.type,
                amount_cents=data.amount_cents,
                category_id=data.category_id,
                note=data.note,
            )
            self.session.add(txn)
            self.session.commit()
            self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        if txn.type == TransactionType.expense:
            self._alert_after_write(txn, now=now, announce=True)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        with storage_errors(self.session, "get_transaction"):
            txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update(
        self,
        transaction_id: int,
        data: TransactionIn,
        *,
        now: Optional[datetime] = None,
    ) -> Transaction:
        txn = self.get(transaction_id)
        with storage_errors(self.session, "update_transaction"):
            self._validate(data)
            txn.date = data.date
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.category_id = data.category_id
            txn.note = data.note
            self.session.commit()
            self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={self.user_id} id={txn.id} "
            f"amount_cents={txn.amount_cents}"
        )
        if txn.type == TransactionType.expense:
            self._alert_after_write(txn, now=now, announce=False)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with storage_errors(self.session, "delete_transaction"):
            self.session.delete(txn)
            self.session.commit()
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")

    def _alert_after_write(
        self, txn: Transaction, *, now: Optional[datetime], announce: bool
    ) -> None:
        # The transaction is already committed; alerting must not undo it.
        alerts = AlertService(self.session, self.user_id)
        try:
            alerts.evaluate_and_notify(txn.category_id, txn.amount_cents, now=now)
            if announce:
                alerts.notifications.notify_expense_added(txn, now=now)
        except StorageFailure:
            logger.exception(
                f"alert_pipeline_failed: user_id={self.user_id} transaction_id={txn.id}"
            )

    def _filtered(
        self,
        period: Period,
        transaction_type: Optional[TransactionType],
        category_id: Optional[int],
    ):
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
        )
        if transaction_type:
            stmt = stmt.where(Transaction.type == transaction_type)
        if category_id:
            stmt = stmt.where(Transaction.category_id == category_id)
        return stmt

    def list(
        self,
        period: Period,
        *,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            self._filtered(period, transaction_type, category_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with storage_errors(self.session, "list_transactions"):
            return self.session.scalars(stmt).all()

    def all_for_period(
        self,
        period: Period,
        *,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[Transaction]:
        stmt = self._filtered(period, transaction_type, category_id)
        if newest_first:
            stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        else:
            stmt = stmt.order_by(Transaction.date.asc(), Transaction.id.asc())
        with storage_errors(self.session, "transactions_for_period"):
            return self.session.scalars(stmt).all()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)

    def _validate(self, data: BudgetIn) -> None:
        if data.limit_cents <= 0:
            raise InvalidRange("Budget amount must be greater than zero")
        if data.end_date < data.start_date:
            raise InvalidRange("Budget end date must not be before its start date")
        if not self.session.get(Category, data.category_id):
            raise NotFound("Category not found")

    def list_all(self, *, active_only: bool = False) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        with storage_errors(self.session, "list_budgets"):
            return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        with storage_errors(self.session, "get_budget"):
            budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        with storage_errors(self.session, "create_budget"):
            self._validate(data)
            budget = Budget(
                user_id=self.user_id,
                name=data.name.strip(),
                description=data.description,
                category_id=data.category_id,
                limit_cents=data.limit_cents,
                start_date=data.start_date,
                end_date=data.end_date,
                is_active=data.is_active,
            )
            self.session.add(budget)
            self.session.commit()
            self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        with storage_errors(self.session, "update_budget"):
            self._validate(data)
            budget.name = data.name.strip()
            budget.description = data.description
            budget.category_id = data.category_id
            budget.limit_cents = data.limit_cents
            budget.start_date = data.start_date
            budget.end_date = data.end_date
            budget.is_active = data.is_active
            self.session.commit()
            self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with storage_errors(self.session, "delete_budget"):
            self.session.delete(budget)
            self.session.commit()
        logger.info(f"budget_deleted: user_id={self.user_id} id={budget_id}")

    def active_for_category(self, category_id: int, on: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.is_active.is_(True),
                Budget.start_date <= on,
                Budget.end_date >= on,
            )
            .order_by(Budget.id.asc())
        )
        with storage_errors(self.session, "active_budgets"):
            return self.session.scalars(stmt).all()

    def window_transactions(self, budget: Budget) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == budget.user_id,
                Transaction.category_id == budget.category_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(budget.start_date, budget.end_date),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        with storage_errors(self.session, "budget_window_transactions"):
            return self.session.scalars(stmt).all()

    def consumption(self, budget: Budget) -> BudgetConsumption:
        return budget_consumption(budget, self.window_transactions(budget))

    def recompute_spend(self, budget_id: int) -> BudgetConsumption:
        return self.consumption(self.get(budget_id))


class NotificationPreferenceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)

    def find(self) -> Optional[NotificationPreference]:
        with storage_errors(self.session, "find_preferences"):
            return self.session.scalar(
                select(NotificationPreference).where(
                    NotificationPreference.user_id == self.user_id
                )
            )

    def _defaults(self) -> NotificationPreferenceIn:
        settings = get_settings()
        return NotificationPreferenceIn(
            budget_warning_threshold=settings.default_warning_threshold
        )

    def get(self) -> NotificationPreference:
        """Return the user's preferences, creating the default row on first access."""
        existing = self.find()
        if existing:
            return existing
        return self.create(self._defaults())

    def create(self, data: NotificationPreferenceIn) -> NotificationPreference:
        if self.find():
            raise PreferenceConflict("Notification preferences already exist for user")
        prefs = NotificationPreference(user_id=self.user_id, **data.model_dump())
        with storage_errors(self.session, "create_preferences"):
            self.session.add(prefs)
            self.session.commit()
            self.session.refresh(prefs)
        return prefs

    def set(self, data: NotificationPreferenceIn) -> NotificationPreference:
        prefs = self.find()
        if prefs is None:
            return self.create(data)
        with storage_errors(self.session, "set_preferences"):
            for field, value in data.model_dump().items():
                setattr(prefs, field, value)
            self.session.commit()
            self.session.refresh(prefs)
        return prefs

    def warning_threshold(self) -> int:
        prefs = self.find()
        if prefs is None:
            return get_settings().default_warning_threshold
        return prefs.budget_warning_threshold

    def approve(
        self, notification_type: NotificationType, now: Optional[datetime] = None
    ) -> bool:
        prefs = self.find()
        if prefs is None:
            return True
        moment = (now or local_now()).time()
        if prefs.enable_quiet_hours and in_quiet_hours(
            moment, prefs.quiet_hours_start, prefs.quiet_hours_end
        ):
            return False
        return prefs.enabled_for(notification_type)


@dataclass(frozen=True)
class BudgetAlert:
    tier: AlertTier
    budget_id: int
    budget_name: str
    limit_cents: int
    spent_cents: int
    percentage_used: float

    @property
    def notification_type(self) -> NotificationType:
        notification_type = self.tier.notification_type
        if notification_type is None:
            raise ValueError("Normal consumption does not produce an alert")
        return notification_type


def budget_alert_text(alert: BudgetAlert) -> tuple[str, str]:
    spent = format_money(alert.spent_cents)
    limit = format_money(alert.limit_cents)
    over = format_money(alert.spent_cents - alert.limit_cents)
    pct = f"{alert.percentage_used:.1f}%"
    if alert.tier == AlertTier.critical:
        return (
            "Critical Budget Alert!",
            f"URGENT: You've spent {pct} of your {alert.budget_name} budget! "
            f"You're {over} over budget. Immediate action recommended.",
        )
    if alert.tier == AlertTier.exceeded:
        return (
            "Budget Exceeded!",
            f"You've exceeded your {alert.budget_name} budget by {over}. "
            f"Total spent: {spent} (Budget: {limit})",
        )
    return (
        "Budget Warning",
        f"You've spent {pct} of your {alert.budget_name} budget. "
        f"Current spending: {spent} of {limit}",
    )


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)
        self.preferences = NotificationPreferenceService(session, self.user_id)

    def _persist(
        self,
        notification_type: NotificationType,
        title: str,
        message: str,
        *,
        budget_id: Optional[int] = None,
        transaction_id: Optional[int] = None,
    ) -> Notification:
        notification = Notification(
            user_id=self.user_id,
            title=title,
            message=message,
            type=notification_type,
            priority=DEFAULT_PRIORITY[notification_type],
            is_read=False,
            created_at=_utcnow(),
            budget_id=budget_id,
            transaction_id=transaction_id,
        )
        with storage_errors(self.session, "create_notification"):
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
        logger.info(
            f"notification_created: user_id={self.user_id} id={notification.id} "
            f"type={notification_type.value}"
        )
        return notification

    def dispatch(self, alert: BudgetAlert) -> Notification:
        title, message = budget_alert_text(alert)
        return self._persist(
            alert.notification_type, title, message, budget_id=alert.budget_id
        )

    def notify_expense_added(
        self, txn: Transaction, *, now: Optional[datetime] = None
    ) -> Optional[Notification]:
        if not self.preferences.approve(NotificationType.expense_added, now):
            return None
        with storage_errors(self.session, "expense_label"):
            label = txn.note or (txn.category.name if txn.category else "Expense")
        return self._persist(
            NotificationType.expense_added,
            "New Expense Added",
            f"Expense '{label}' of {format_money(txn.amount_cents)} has been added",
            transaction_id=txn.id,
        )

    def create_monthly_report(
        self, *, now: Optional[datetime] = None
    ) -> Optional[Notification]:
        if not self.preferences.approve(NotificationType.monthly_report, now):
            return None
        return self._persist(
            NotificationType.monthly_report,
            "Monthly Financial Report",
            "Your monthly financial report is ready. "
            "Check your dashboard for detailed insights.",
        )

    def list(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        unread_only: bool = False,
    ) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == self.user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        if limit:
            stmt = stmt.limit(limit)
        with storage_errors(self.session, "list_notifications"):
            return self.session.scalars(stmt).all()

    def unread_count(self) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == self.user_id, Notification.is_read.is_(False)
        )
        with storage_errors(self.session, "unread_count"):
            return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, notification_id: int) -> Notification:
        with storage_errors(self.session, "get_notification"):
            notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise NotFound("Notification not found")
        return notification

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.get(notification_id)
        if notification.is_read:
            return notification
        with storage_errors(self.session, "mark_read"):
            notification.is_read = True
            notification.read_at = _utcnow()
            self.session.commit()
        return notification

    def mark_all_read(self) -> int:
        with storage_errors(self.session, "mark_all_read"):
            result = self.session.execute(
                update(Notification)
                .where(
                    Notification.user_id == self.user_id,
                    Notification.is_read.is_(False),
                )
                .values(is_read=True, read_at=_utcnow())
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        return int(result.rowcount or 0)

    def delete(self, notification_id: int) -> None:
        notification = self.get(notification_id)
        with storage_errors(self.session, "delete_notification"):
            self.session.delete(notification)
            self.session.commit()

    def sweep_old(
        self, max_age_days: Optional[int] = None, *, now: Optional[datetime] = None
    ) -> int:
        if max_age_days is None:
            max_age_days = get_settings().notification_retention_days
        cutoff = (now or _utcnow()) - timedelta(days=max_age_days)
        with storage_errors(self.session, "sweep_notifications"):
            result = self.session.execute(
                delete(Notification)
                .where(
                    Notification.user_id == self.user_id,
                    Notification.created_at < cutoff,
                )
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        removed = int(result.rowcount or 0)
        logger.info(
            f"notification_sweep: user_id={self.user_id} "
            f"max_age_days={max_age_days} removed={removed}"
        )
        return removed


class AlertService:
    """Recompute, classify, gate and dispatch budget alerts for one user."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)
        self.budgets = BudgetService(session, self.user_id)
        self.preferences = NotificationPreferenceService(session, self.user_id)
        self.notifications = NotificationService(session, self.user_id)

    def evaluate_budget(
        self, budget: Budget, warning_threshold: Optional[int] = None
    ) -> Optional[BudgetAlert]:
        if warning_threshold is None:
            warning_threshold = self.preferences.warning_threshold()
        consumption = self.budgets.consumption(budget)
        tier = classify_consumption(consumption, warning_threshold)
        if tier == AlertTier.normal:
            return None
        return BudgetAlert(
            tier=tier,
            budget_id=budget.id,
            budget_name=budget.name,
            limit_cents=consumption.limit_cents,
            spent_cents=consumption.spent_cents,
            percentage_used=consumption.percentage_used,
        )

    def evaluate_and_notify(
        self,
        category_id: int,
        amount_cents: int,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Notification]:
        """Run the alert pipeline for the active budgets of ``category_id``.

        At most one notification is created: the most severe candidate across
        the matching budgets wins, ties going to the higher consumption and
        then to the older budget.
        """
        now = now or local_now()
        with storage_errors(self.session, "evaluate_and_notify"):
            warning_threshold = self.preferences.warning_threshold()
            best: Optional[BudgetAlert] = None
            for budget in self.budgets.active_for_category(category_id, now.date()):
                alert = self.evaluate_budget(budget, warning_threshold)
                if alert is None:
                    continue
                if best is None or (alert.tier, alert.percentage_used) > (
                    best.tier,
                    best.percentage_used,
                ):
                    best = alert

            if best is None:
                logger.debug(
                    f"alert_none: user_id={self.user_id} category_id={category_id} "
                    f"amount_cents={amount_cents}"
                )
                return None

            if not self.preferences.approve(best.notification_type, now):
                logger.info(
                    f"alert_suppressed: user_id={self.user_id} "
                    f"budget_id={best.budget_id} tier={best.tier.name}"
                )
                return None

            notification = self.notifications.dispatch(best)
            logger.info(
                f"alert_dispatched: user_id={self.user_id} budget_id={best.budget_id} "
                f"tier={best.tier.name} percentage_used={best.percentage_used:.2f}"
            )
            return notification


@dataclass(frozen=True)
class BudgetAnalysis:
    budget_id: int
    budget_name: str
    category_name: str
    category_color: str
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    percentage_used: float
    is_over_budget: bool


@dataclass(frozen=True)
class DetailedReport:
    period: Period
    category_id: Optional[int]
    expenses: list[Transaction]
    income: list[Transaction]
    total_expense_cents: int
    total_income_cents: int

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = _resolve_user(user_id)
        self.transactions = TransactionService(session, self.user_id)
        self.budgets = BudgetService(session, self.user_id)

    def budget_analysis(self) -> list[BudgetAnalysis]:
        out: list[BudgetAnalysis] = []
        for budget in self.budgets.list_all(active_only=True):
            consumption = self.budgets.consumption(budget)
            out.append(
                BudgetAnalysis(
                    budget_id=budget.id,
                    budget_name=budget.name,
                    category_name=budget.category.name,
                    category_color=budget.category.color,
                    limit_cents=consumption.limit_cents,
                    spent_cents=consumption.spent_cents,
                    remaining_cents=consumption.remaining_cents,
                    percentage_used=consumption.percentage_used,
                    is_over_budget=consumption.is_over_budget,
                )
            )
        return out

    def trend(self, *, end: date, months: Optional[int] = None) -> list[MonthlyTrend]:
        months = months or get_settings().trend_months
        window = Period(
            "trend", add_months(month_start(end), -(months - 1)), month_end(end)
        )
        rows = self.transactions.all_for_period(window)
        return monthly_trend(rows, end=end, months=months)

    def summary(
        self, period: Period, *, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_now().date()
        rows = self.transactions.all_for_period(period)
        income = sum(t.amount_cents for t in rows if t.type == TransactionType.income)
        expenses = sum(
            t.amount_cents for t in rows if t.type == TransactionType.expense
        )
        analysis = self.budget_analysis()

        trend = self.trend(end=today, months=max(2, get_settings().trend_months))
        current, previous = trend[-1], trend[-2]

        return {
            "period": period,
            "income_cents": income,
            "expense_cents": expenses,
            "net_cents": income - expenses,
            "total_budget_cents": sum(b.limit_cents for b in analysis),
            "savings_rate": savings_rate(income, expenses),
            "expenses_by_category": summarize(
                rows, GroupBy.category, transaction_type=TransactionType.expense
            ),
            "income_by_category": summarize(
                rows, GroupBy.category, transaction_type=TransactionType.income
            ),
            "budget_analysis": analysis,
            "monthly_trends": trend,
            "income_change_percent": percent_change(
                current.income_cents, previous.income_cents
            ),
            "expense_change_percent": percent_change(
                current.expense_cents, previous.expense_cents
            ),
            "net_change_percent": net_change_percent(
                current.net_cents, previous.net_cents
            ),
        }

    def detailed_report(
        self, period: Period, *, category_id: Optional[int] = None
    ) -> DetailedReport:
        """Every transaction in the window, newest first, split by type."""
        rows = self.transactions.all_for_period(
            period, category_id=category_id, newest_first=True
        )
        expenses = [t for t in rows if t.type == TransactionType.expense]
        income = [t for t in rows if t.type == TransactionType.income]
        return DetailedReport(
            period=period,
            category_id=category_id,
            expenses=expenses,
            income=income,
            total_expense_cents=sum(t.amount_cents for t in expenses),
            total_income_cents=sum(t.amount_cents for t in income),
        )
