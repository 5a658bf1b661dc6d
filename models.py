from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class NotificationType(str, Enum):
    budget_warning = "budget_warning"
    budget_exceeded = "budget_exceeded"
    budget_critical = "budget_critical"
    expense_added = "expense_added"
    monthly_report = "monthly_report"


class NotificationPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


DEFAULT_PRIORITY: dict[NotificationType, NotificationPriority] = {
    NotificationType.budget_warning: NotificationPriority.medium,
    NotificationType.budget_exceeded: NotificationPriority.high,
    NotificationType.budget_critical: NotificationPriority.critical,
    NotificationType.expense_added: NotificationPriority.low,
    NotificationType.monthly_report: NotificationPriority.medium,
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#007bff")

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    budgets: Mapped[list["Budget"]] = relationship("Budget", back_populates="category")

    __table_args__ = (UniqueConstraint("name", name="uq_category_name"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="transaction",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category", back_populates="budgets")
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="budget",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("limit_cents >= 0", name="ck_budget_limit_non_negative"),
        CheckConstraint("end_date >= start_date", name="ck_budget_window_ordered"),
        Index("ix_budget_user_category_active", "user_id", "category_id", "is_active"),
    )


class NotificationPreference(Base, TimestampMixin):
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    enable_budget_warnings: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    budget_warning_threshold: Mapped[int] = mapped_column(
        Integer, default=75, nullable=False
    )
    enable_budget_exceeded_alerts: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    enable_budget_critical_alerts: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    enable_expense_notifications: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    enable_monthly_reports: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    enable_in_app_notifications: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    enable_email_notifications: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    enable_quiet_hours: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    quiet_hours_start: Mapped[time] = mapped_column(
        Time, default=time(22, 0), nullable=False
    )
    quiet_hours_end: Mapped[time] = mapped_column(
        Time, default=time(8, 0), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_notification_preference_user"),
        CheckConstraint(
            "budget_warning_threshold BETWEEN 1 AND 100",
            name="ck_preference_threshold_range",
        ),
    )

    def enabled_for(self, notification_type: NotificationType) -> bool:
        return {
            NotificationType.budget_warning: self.enable_budget_warnings,
            NotificationType.budget_exceeded: self.enable_budget_exceeded_alerts,
            NotificationType.budget_critical: self.enable_budget_critical_alerts,
            NotificationType.expense_added: self.enable_expense_notifications,
            NotificationType.monthly_report: self.enable_monthly_reports,
        }.get(notification_type, True)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType), nullable=False
    )
    priority: Mapped[NotificationPriority] = mapped_column(
        SAEnum(NotificationPriority),
        default=NotificationPriority.medium,
        nullable=False,
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    budget_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE")
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE")
    )

    budget: Mapped[Optional["Budget"]] = relationship(
        "Budget", back_populates="notifications"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="notifications"
    )

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )
