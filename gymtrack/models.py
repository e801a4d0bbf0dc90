from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    BANK_TRANSFER = "bank-transfer"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class Weekday(str, Enum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"


@dataclass
class User:
    id: Optional[int]
    email: str
    role: str  # admin / trainer / member
    first_name: str
    last_name: str
    phone: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    password_hash: Optional[str] = None


@dataclass(frozen=True)
class PlanTerms:
    """Snapshot of plan terms embedded in a subscription."""

    name: str
    duration: int  # whole months
    price: int  # smallest currency unit


@dataclass
class Plan:
    id: Optional[int]
    name: str
    duration_months: int
    price: int
    created_at: Optional[str] = None

    def terms(self) -> PlanTerms:
        return PlanTerms(name=self.name, duration=self.duration_months, price=self.price)


@dataclass
class Member:
    id: Optional[int]
    user_id: int
    join_date: Optional[str] = None  # UTC ISO timestamp
    height: Optional[float] = None
    weight: Optional[float] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    goal: Optional[str] = None
    medical_conditions: Optional[str] = None
    assigned_trainer_id: Optional[int] = None
    current_subscription_id: Optional[int] = None
    subscription_history: List[int] = field(default_factory=list)
    version: int = 0


@dataclass
class MemberView:
    id: int
    user_id: int
    email: str
    first_name: str
    last_name: str
    phone: Optional[str]
    join_date: str
    assigned_trainer_id: Optional[int]
    current_subscription_id: Optional[int]
    current_status: Optional[str]  # status of the current subscription, if any


@dataclass
class Trainer:
    id: Optional[int]
    user_id: int
    specialization: List[str] = field(default_factory=list)
    experience: int = 0
    certifications: List[str] = field(default_factory=list)
    join_date: Optional[str] = None


@dataclass
class TrainerView:
    """Trainer joined with its identity record and derived roster."""

    id: int
    user_id: int
    email: str
    first_name: str
    last_name: str
    phone: Optional[str]
    specialization: List[str]
    experience: int
    certifications: List[str]
    join_date: str
    assigned_member_ids: List[int] = field(default_factory=list)


@dataclass
class Subscription:
    id: Optional[int]
    member_id: int
    plan: PlanTerms
    start_date: str  # UTC ISO timestamp
    end_date: str  # UTC ISO timestamp
    status: str = SubscriptionStatus.ACTIVE.value
    payment_id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class Payment:
    id: Optional[int]
    member_id: int
    amount: int
    method: str
    transaction_id: str
    invoice_number: str
    payment_date: str
    status: str = PaymentStatus.COMPLETED.value
    subscription_id: Optional[int] = None


@dataclass
class PurchaseResult:
    payment: Payment
    subscription: Subscription
    superseded_ids: List[int] = field(default_factory=list)


@dataclass
class Exercise:
    name: str
    sets: int
    reps: int
    weight: Optional[float] = None
    notes: Optional[str] = None
    completed: bool = False
    id: Optional[int] = None


@dataclass
class Routine:
    day: str  # Weekday value
    exercises: List[Exercise] = field(default_factory=list)


@dataclass
class Schedule:
    """A trainer-written workout plan for one member over a date range."""

    id: Optional[int]
    member_id: int
    trainer_id: Optional[int]  # None once the trainer is deleted
    start_date: str  # YYYY-MM-DD
    end_date: str  # YYYY-MM-DD
    routines: List[Routine] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
