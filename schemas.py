from datetime import date, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=200)
    color: str = Field(default="#007bff", max_length=7)


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int
    category_id: int
    note: Optional[str] = Field(default=None, max_length=200)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: int
    limit_cents: int
    start_date: date
    end_date: date
    is_active: bool = True


class NotificationPreferenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enable_budget_warnings: bool = True
    budget_warning_threshold: int = Field(default=75, ge=1, le=100)
    enable_budget_exceeded_alerts: bool = True
    enable_budget_critical_alerts: bool = True
    enable_expense_notifications: bool = False
    enable_monthly_reports: bool = True
    enable_in_app_notifications: bool = True
    enable_email_notifications: bool = False
    enable_quiet_hours: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(8, 0)
