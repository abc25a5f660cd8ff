"""Data models for the patient financial engine."""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class PatientStatus(str, Enum):
    """Treatment status.

    Values are the labels stored by the clinic application, so warehouse rows
    load without translation. English aliases are accepted on input.
    """

    IN_TREATMENT = "בטיפול"
    WAITING = "בהמתנה לטיפול"
    DISCONTINUED = "הופסק"
    SUCCESSFULLY_ENDED = "הסתיים בהצלחה"
    TREATMENT_ENDED = "סיום טיפול"
    FROZEN = "מוקפא"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls) or value is None:
            return value
        text = str(value).strip()
        alias = text.lower().replace("-", "_").replace(" ", "_")
        if alias.upper() in cls.__members__:
            return cls[alias.upper()]
        return cls(text)


ENDING_STATUSES = frozenset(
    {
        PatientStatus.TREATMENT_ENDED,
        PatientStatus.DISCONTINUED,
        PatientStatus.SUCCESSFULLY_ENDED,
    }
)


class RateHistoryEntry(BaseModel):
    """Monthly rate in effect from start_date onwards."""

    start_date: date
    rate: float = Field(ge=0, allow_inf_nan=False)
    created_at: datetime | None = None
    created_by: str | None = None


class StatusHistoryEntry(BaseModel):
    """Status in effect from date onwards."""

    date: date
    status: PatientStatus
    changed_by: str = ""
    notes: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        return PatientStatus.coerce(value)


class Discount(BaseModel):
    """Discount request and, once decided, its approval state.

    Attributes:
        kind: 'percentage' (value is 0-100) or 'fixed_amount' (value is money)
        valid_from: First day of validity; applied at month granularity
        valid_until: Last day of validity; applied at month granularity
        status: Only 'approved' discounts reduce a month's charge
    """

    id: str
    request_date: date
    requester: str | None = None
    reason: str = ""
    kind: Literal["percentage", "fixed_amount"]
    value: float = Field(ge=0, allow_inf_nan=False)
    valid_from: date
    valid_until: date
    status: Literal["pending", "approved", "rejected"] = "pending"
    approver: str | None = None
    decision_date: date | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_window(self):
        if self.valid_until < self.valid_from:
            raise ValueError(
                f"discount {self.id}: valid_until {self.valid_until} is before valid_from {self.valid_from}"
            )
        if self.kind == "percentage" and self.value > 100:
            raise ValueError(f"discount {self.id}: percentage {self.value} exceeds 100")
        return self


class _TransactionBase(BaseModel):
    id: str
    date: date
    amount: float = Field(ge=0, allow_inf_nan=False)
    notes: str | None = None


class Payment(_TransactionBase):
    type: Literal["payment"] = "payment"
    for_months: str = ""
    method: str = ""
    collector: str = ""


class OneTimeCharge(_TransactionBase):
    type: Literal["charge"] = "charge"
    description: str = ""
    issued_by: str = ""


class Refund(_TransactionBase):
    type: Literal["refund"] = "refund"
    reason: str = ""
    processed_by: str = ""
    original_transaction_id: str | None = None


Transaction = Annotated[Union[Payment, OneTimeCharge, Refund], Field(discriminator="type")]


class BillingInfo(BaseModel):
    """Directed split: this patient pays split_percentage of their own base charge."""

    split_with_patient_id: str | None = None
    split_percentage: float | None = Field(default=None, ge=0, le=100, allow_inf_nan=False)

    @property
    def is_active(self) -> bool:
        return bool(self.split_with_patient_id) and self.split_percentage is not None


class Patient(BaseModel):
    """Patient aggregate with its financial history."""

    id: str
    first_name: str = ""
    last_name: str = ""
    therapist: str | None = None
    therapeutic_center: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    status: PatientStatus = PatientStatus.WAITING
    rate_history: list[RateHistoryEntry] = Field(default_factory=list)
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    discounts: list[Discount] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    billing_info: BillingInfo | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        return PatientStatus.coerce(value)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _blank_date_is_none(cls, value):
        # The clinic app stores unset dates as empty strings
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class DiscountApplication(BaseModel):
    """One step of the ordered discount evaluation for a month."""

    discount_id: str
    kind: str
    value: float
    charge_before: float
    charge_after: float


class MonthlyCharge(BaseModel):
    """Charge breakdown for one calendar month.

    Attributes:
        month: First day of the month
        days_charged: Eligible days that accrued a rate
        days_frozen: Eligible days skipped because the patient was frozen
        gross: Sum of daily pro-rata contributions before discounts
        discounts_applied: Discounts in evaluation order
        net: Charge after discounts
    """

    month: date
    days_charged: int = 0
    days_frozen: int = 0
    gross: float = 0.0
    discounts_applied: list[DiscountApplication] = Field(default_factory=list)
    net: float = 0.0


class SplitAnomaly(BaseModel):
    """A billing split relationship the calculator cannot resolve cleanly."""

    kind: Literal["self_reference", "cycle", "multiple_incoming", "dangling_reference"]
    patient_ids: list[str]
    detail: str


class FinancialSummary(BaseModel):
    """Totals for one patient. balance >= 0 means the patient is in good standing."""

    patient_id: str
    total_charged: float
    total_paid: float
    balance: float
    split_anomalies: list[SplitAnomaly] = Field(default_factory=list)
