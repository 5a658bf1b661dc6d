from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidRange, NotFound, StorageFailure
from models import (
    Notification,
    NotificationPriority,
    NotificationType,
    Transaction,
    TransactionType,
)
from periods import resolve_period
from schemas import BudgetIn, CategoryIn, NotificationPreferenceIn, TransactionIn
from services import (
    AlertService,
    BudgetService,
    CategoryService,
    DashboardService,
    NotificationPreferenceService,
    TransactionService,
)

NOON = datetime(2025, 1, 15, 12, 0)


def _setup(session: Session, limit_cents: int = 50_000):
    food = CategoryService(session).create(CategoryIn(name="Food"))
    budget = BudgetService(session).create(
        BudgetIn(
            name="Groceries",
            category_id=food.id,
            limit_cents=limit_cents,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
        )
    )
    return food, budget


def _expense(category_id: int, amount_cents: int, day: date = date(2025, 1, 10)):
    return TransactionIn(
        date=day,
        type=TransactionType.expense,
        amount_cents=amount_cents,
        category_id=category_id,
    )


def _budget_notifications(session: Session) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.budget_id.is_not(None))
        .order_by(Notification.id)
    )
    return session.scalars(stmt).all()


def test_expense_crossing_warning_creates_warning_and_expense_notice() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session)

        TransactionService(session).create(_expense(food.id, 38_000), now=NOON)

        alerts = _budget_notifications(session)
        assert len(alerts) == 1
        warning = alerts[0]
        assert warning.type == NotificationType.budget_warning
        assert warning.priority == NotificationPriority.medium
        assert warning.budget_id == budget.id
        assert warning.title == "Budget Warning"
        assert warning.message == (
            "You've spent 76.0% of your Groceries budget. "
            "Current spending: $380.00 of $500.00"
        )

        notices = session.scalars(
            select(Notification).where(
                Notification.type == NotificationType.expense_added
            )
        ).all()
        assert len(notices) == 1


def test_critical_tier_preempts_lower_tiers() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session, limit_cents=80_000)
        transactions = TransactionService(session)

        transactions.create(_expense(food.id, 50_000), now=NOON)
        assert _budget_notifications(session) == []

        transactions.create(_expense(food.id, 55_000), now=NOON)

        alerts = _budget_notifications(session)
        assert len(alerts) == 1
        assert alerts[0].type == NotificationType.budget_critical
        assert alerts[0].priority == NotificationPriority.critical
        assert alerts[0].title == "Critical Budget Alert!"
        assert "$250.00 over budget" in alerts[0].message


def test_exceeded_message_reports_overage() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)

        TransactionService(session).create(_expense(food.id, 55_000), now=NOON)

        alerts = _budget_notifications(session)
        assert alerts[0].type == NotificationType.budget_exceeded
        assert alerts[0].priority == NotificationPriority.high
        assert alerts[0].message == (
            "You've exceeded your Groceries budget by $50.00. "
            "Total spent: $550.00 (Budget: $500.00)"
        )


def test_single_notification_across_overlapping_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session, limit_cents=40_000)
        tight = BudgetService(session).create(
            BudgetIn(
                name="Tight groceries",
                category_id=food.id,
                limit_cents=30_000,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
            )
        )

        TransactionService(session).create(_expense(food.id, 40_000), now=NOON)

        alerts = _budget_notifications(session)
        assert len(alerts) == 1
        assert alerts[0].budget_id == tight.id
        assert alerts[0].type == NotificationType.budget_critical


def test_inactive_and_out_of_window_budgets_are_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session)
        BudgetService(session).update(
            budget.id,
            BudgetIn(
                name="Groceries",
                category_id=food.id,
                limit_cents=50_000,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
                is_active=False,
            ),
        )

        result = AlertService(session).evaluate_and_notify(
            food.id, 60_000, now=NOON
        )
        assert result is None

        TransactionService(session).create(
            _expense(food.id, 60_000), now=datetime(2025, 3, 1, 12, 0)
        )
        assert _budget_notifications(session) == []


def test_disabled_tier_is_suppressed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        NotificationPreferenceService(session).set(
            NotificationPreferenceIn(enable_budget_exceeded_alerts=False)
        )

        TransactionService(session).create(_expense(food.id, 55_000), now=NOON)

        assert session.scalars(select(Notification)).all() == []


def test_quiet_hours_suppress_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        NotificationPreferenceService(session).set(
            NotificationPreferenceIn(enable_quiet_hours=True)
        )
        session.add(
            Transaction(
                user_id=1,
                date=date(2025, 1, 10),
                type=TransactionType.expense,
                amount_cents=70_000,
                category_id=food.id,
            )
        )
        session.commit()

        alerts = AlertService(session)
        assert alerts.evaluate_and_notify(
            food.id, 70_000, now=datetime(2025, 1, 15, 23, 30)
        ) is None
        dispatched = alerts.evaluate_and_notify(food.id, 70_000, now=NOON)
        assert dispatched is not None
        assert dispatched.type == NotificationType.budget_critical


def test_user_threshold_moves_warning_cutoff() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        NotificationPreferenceService(session).set(
            NotificationPreferenceIn(budget_warning_threshold=80)
        )

        TransactionService(session).create(_expense(food.id, 38_000), now=NOON)
        assert _budget_notifications(session) == []

        TransactionService(session).create(_expense(food.id, 2_000), now=NOON)
        alerts = _budget_notifications(session)
        assert len(alerts) == 1
        assert alerts[0].type == NotificationType.budget_warning


def test_alert_failure_keeps_transaction(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def broken(self, category_id, amount_cents, *, now=None):
        raise StorageFailure("evaluate_and_notify failed: database is locked")

    with Session(engine) as session:
        food, _ = _setup(session)
        monkeypatch.setattr(AlertService, "evaluate_and_notify", broken)

        txn = TransactionService(session).create(_expense(food.id, 60_000), now=NOON)

        stored = session.scalars(select(Transaction)).all()
        assert [t.id for t in stored] == [txn.id]
        assert session.scalars(select(Notification)).all() == []


def test_driver_error_surfaces_as_storage_failure(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def locked(self, category_id, on):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    with Session(engine) as session:
        food, _ = _setup(session)
        monkeypatch.setattr(BudgetService, "active_for_category", locked)

        with pytest.raises(StorageFailure):
            AlertService(session).evaluate_and_notify(food.id, 1_000, now=NOON)


def test_invalid_inputs_are_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        budgets = BudgetService(session)

        with pytest.raises(InvalidRange):
            budgets.create(
                BudgetIn(
                    name="Backwards",
                    category_id=food.id,
                    limit_cents=1_000,
                    start_date=date(2025, 2, 1),
                    end_date=date(2025, 1, 1),
                )
            )
        with pytest.raises(InvalidRange):
            budgets.create(
                BudgetIn(
                    name="Empty",
                    category_id=food.id,
                    limit_cents=0,
                    start_date=date(2025, 1, 1),
                    end_date=date(2025, 1, 31),
                )
            )
        with pytest.raises(InvalidRange):
            TransactionService(session).create(_expense(food.id, 0), now=NOON)
        with pytest.raises(InvalidRange):
            TransactionService(session).create(_expense(food.id, -500), now=NOON)
        with pytest.raises(NotFound):
            TransactionService(session).create(_expense(999, 500), now=NOON)


def test_recompute_spend_is_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session)
        transactions = TransactionService(session)
        transactions.create(_expense(food.id, 10_000), now=NOON)
        transactions.create(_expense(food.id, 5_000, date(2025, 2, 3)), now=NOON)
        TransactionService(session, user_id=2).create(
            _expense(food.id, 7_000), now=NOON
        )

        consumption = BudgetService(session).recompute_spend(budget.id)
        assert consumption.spent_cents == 10_000
        assert consumption.remaining_cents == 40_000
        assert consumption.percentage_used == 20.0

        with pytest.raises(NotFound):
            BudgetService(session, user_id=2).recompute_spend(budget.id)


def test_update_reevaluates_without_expense_notice() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        transactions = TransactionService(session)
        txn = transactions.create(_expense(food.id, 1_000), now=NOON)
        assert _budget_notifications(session) == []

        transactions.update(txn.id, _expense(food.id, 52_000), now=NOON)

        alerts = _budget_notifications(session)
        assert len(alerts) == 1
        assert alerts[0].type == NotificationType.budget_exceeded
        notices = session.scalars(
            select(Notification).where(
                Notification.type == NotificationType.expense_added
            )
        ).all()
        assert len(notices) == 1


def test_dashboard_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session)
        salary = CategoryService(session).create(CategoryIn(name="Salary"))
        transactions = TransactionService(session)
        transactions.create(
            TransactionIn(
                date=date(2025, 1, 5),
                type=TransactionType.income,
                amount_cents=100_000,
                category_id=salary.id,
            ),
            now=NOON,
        )
        transactions.create(_expense(food.id, 30_000), now=NOON)
        transactions.create(_expense(food.id, 10_000, date(2024, 12, 10)), now=NOON)

        today = date(2025, 1, 20)
        period = resolve_period("this_month", None, None, today=today)
        summary = DashboardService(session).summary(period, today=today)

        assert summary["income_cents"] == 100_000
        assert summary["expense_cents"] == 30_000
        assert summary["net_cents"] == 70_000
        assert summary["total_budget_cents"] == 50_000
        assert summary["savings_rate"] == 70.0
        expenses = summary["expenses_by_category"]
        assert [(r.label, r.total_cents, r.percentage) for r in expenses] == [
            ("Food", 30_000, 100.0)
        ]
        analysis = summary["budget_analysis"]
        assert len(analysis) == 1
        assert analysis[0].budget_id == budget.id
        assert analysis[0].spent_cents == 30_000
        assert analysis[0].percentage_used == 60.0
        assert analysis[0].is_over_budget is False

        trend = summary["monthly_trends"]
        assert trend[-1].label == "2025-01"
        assert trend[-2].label == "2024-12"
        assert trend[-2].expense_cents == 10_000
        assert summary["income_change_percent"] == 100.0
        assert summary["expense_change_percent"] == 200.0
        assert summary["net_change_percent"] == 800.0


def test_total_budget_counts_only_active_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session)
        BudgetService(session).create(
            BudgetIn(
                name="Dining",
                category_id=food.id,
                limit_cents=20_000,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
            )
        )
        BudgetService(session).create(
            BudgetIn(
                name="Paused",
                category_id=food.id,
                limit_cents=99_000,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
                is_active=False,
            )
        )

        today = date(2025, 1, 20)
        period = resolve_period(None, None, None, today=today)
        summary = DashboardService(session).summary(period, today=today)

        assert summary["total_budget_cents"] == 70_000


def test_detailed_report_lists_newest_first_with_totals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session, limit_cents=1_000_000)
        rent = CategoryService(session).create(CategoryIn(name="Rent"))
        salary = CategoryService(session).create(CategoryIn(name="Salary"))
        transactions = TransactionService(session)
        early = transactions.create(
            _expense(food.id, 2_000, date(2025, 1, 3)), now=NOON
        )
        late = transactions.create(
            _expense(food.id, 3_000, date(2025, 1, 20)), now=NOON
        )
        transactions.create(_expense(rent.id, 90_000, date(2025, 1, 1)), now=NOON)
        transactions.create(_expense(food.id, 4_000, date(2025, 2, 2)), now=NOON)
        transactions.create(
            TransactionIn(
                date=date(2025, 1, 5),
                type=TransactionType.income,
                amount_cents=250_000,
                category_id=salary.id,
            ),
            now=NOON,
        )
        TransactionService(session, user_id=2).create(
            _expense(food.id, 8_000, date(2025, 1, 10)), now=NOON
        )

        period = resolve_period("custom", "2025-01-01", "2025-01-31")
        dashboard = DashboardService(session)

        everything = dashboard.detailed_report(period)
        assert everything.total_expense_cents == 95_000
        assert everything.total_income_cents == 250_000
        assert everything.net_cents == 155_000
        assert [t.date for t in everything.expenses] == [
            date(2025, 1, 20),
            date(2025, 1, 3),
            date(2025, 1, 1),
        ]

        food_only = dashboard.detailed_report(period, category_id=food.id)
        assert [t.id for t in food_only.expenses] == [late.id, early.id]
        assert food_only.income == []
        assert food_only.total_expense_cents == 5_000


def test_transaction_listing_filters_and_pages() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _ = _setup(session, limit_cents=1_000_000)
        salary = CategoryService(session).create(CategoryIn(name="Salary"))
        transactions = TransactionService(session)
        ids = [
            transactions.create(
                _expense(food.id, 100, date(2025, 1, day)), now=NOON
            ).id
            for day in (2, 4, 6)
        ]
        transactions.create(
            TransactionIn(
                date=date(2025, 1, 8),
                type=TransactionType.income,
                amount_cents=5_000,
                category_id=salary.id,
            ),
            now=NOON,
        )
        period = resolve_period("custom", "2025-01-01", "2025-01-31")

        expenses = transactions.list(period, transaction_type=TransactionType.expense)
        assert [t.id for t in expenses] == list(reversed(ids))
        paged = transactions.list(
            period, transaction_type=TransactionType.expense, limit=2, offset=1
        )
        assert [t.id for t in paged] == [ids[1], ids[0]]
        assert len(transactions.list(period, category_id=salary.id)) == 1
        assert len(transactions.list(period)) == 4


def test_budget_and_transaction_store_errors_surface_as_storage_failure() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, budget = _setup(session)
        session.execute(text("DROP TABLE transactions"))
        session.commit()
        period = resolve_period("custom", "2025-01-01", "2025-01-31")

        with pytest.raises(StorageFailure):
            BudgetService(session).recompute_spend(budget.id)
        with pytest.raises(StorageFailure):
            TransactionService(session).list(period)
        with pytest.raises(StorageFailure):
            TransactionService(session).create(_expense(food.id, 1_000), now=NOON)
        with pytest.raises(StorageFailure):
            DashboardService(session).detailed_report(period)
