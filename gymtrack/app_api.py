import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import config
from .auth import hash_password
from .database import DB_FILE, connect
from .database_manager import MEMBER_PROFILE_FIELDS, TRAINER_FIELDS, TRAINER_USER_FIELDS, DatabaseManager
from .errors import (
    ConcurrentModificationError,
    InvalidPlanError,
    MemberNotFoundError,
    NotFoundError,
    ScheduleNotFoundError,
    SubscriptionNotFoundError,
    TrainerNotFoundError,
    AuthorizationError,
    InvalidTransitionError,
    ValidationError,
)
from .ids import IdGenerator
from .lifecycle import (
    ACTIVE,
    CANCELLED,
    PAUSED,
    add_calendar_months,
    check_transition,
    to_timestamp,
    utc_now,
)
from .models import (
    Exercise,
    Gender,
    Member,
    MemberView,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Plan,
    PlanTerms,
    PurchaseResult,
    Routine,
    Schedule,
    Subscription,
    Trainer,
    TrainerView,
    User,
    Weekday,
)
from .plans import PLAN_TYPES, plan_types_as_dict, resolve_plan
from .reports import revenue_summary

SUBSCRIPTION_POLICIES = ("supersede", "reject")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_positive_int(value: Any) -> bool:
    return _is_int(value) and value > 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _percentage(part: int, whole: int) -> int:
    """part/whole as a whole percentage, halves rounded up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


# Expected JSON type per member profile field
PROFILE_FIELD_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "height": _is_number,
    "weight": _is_number,
    "age": _is_int,
    "gender": lambda value: isinstance(value, str) and value in {g.value for g in Gender},
    "goal": lambda value: isinstance(value, str),
    "medical_conditions": lambda value: isinstance(value, str),
}


class AppAPI:
    """
    Business layer of the gym subscription service.
    Sits between the HTTP API (or any other caller) and the DatabaseManager.
    """

    def __init__(
        self,
        connection: Optional[sqlite3.Connection] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_generator: Optional[IdGenerator] = None,
        policy: Optional[str] = None,
        max_retries: Optional[int] = None,
        plan_types: Mapping[str, PlanTerms] = PLAN_TYPES,
    ) -> None:
        """
        Initializes the AppAPI. Opens its own connection to DB_FILE unless one is given.
        clock returns naive UTC datetimes; tests pass a fixed clock.
        """
        if connection is None:
            connection = connect(DB_FILE)
        self.db_manager: DatabaseManager = DatabaseManager(connection=connection)
        self.clock: Callable[[], datetime] = clock or utc_now
        self.ids: IdGenerator = id_generator or IdGenerator(self.clock)
        self.policy: str = policy or config.ACTIVE_SUBSCRIPTION_POLICY
        if self.policy not in SUBSCRIPTION_POLICIES:
            raise ValueError(f"Unknown active subscription policy: {self.policy}")
        self.max_retries: int = max_retries or config.PURCHASE_MAX_RETRIES
        self.plan_types = plan_types

    def close(self) -> None:
        self.db_manager.close()

    # Plan resolution and catalog

    def resolve_plan(self, plan_id: Optional[int] = None, plan_type: Optional[str] = None) -> Optional[PlanTerms]:
        return resolve_plan(plan_id, plan_type, self.db_manager.get_plan_by_id, self.plan_types)

    def get_plan_types(self) -> Dict[str, Dict]:
        return plan_types_as_dict(self.plan_types)

    @staticmethod
    def _validate_plan_fields(name: Any, duration_months: Any, price: Any) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name, duration and price are required")
        if not _is_positive_int(duration_months):
            raise ValidationError("duration must be a positive whole number of months")
        if not _is_positive_int(price):
            raise ValidationError("price must be a positive integer")

    def add_plan(self, name: str, duration_months: int, price: int) -> Plan:
        self._validate_plan_fields(name, duration_months, price)
        return self.db_manager.add_plan(
            Plan(id=None, name=name.strip(), duration_months=duration_months, price=price)
        )

    def get_all_plans(self) -> List[Plan]:
        return self.db_manager.get_all_plans()

    def get_plan(self, plan_id: int) -> Plan:
        plan = self.db_manager.get_plan_by_id(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    def update_plan(self, plan_id: int, name: str, duration_months: int, price: int) -> Plan:
        self._validate_plan_fields(name, duration_months, price)
        plan = Plan(id=plan_id, name=name.strip(), duration_months=duration_months, price=price)
        if not self.db_manager.update_plan(plan):
            raise NotFoundError("Plan not found")
        return self.get_plan(plan_id)

    def delete_plan(self, plan_id: int) -> None:
        if not self.db_manager.delete_plan(plan_id):
            raise NotFoundError("Plan not found")

    # Subscription purchase

    @staticmethod
    def _validate_payment_method(method: Optional[str]) -> str:
        try:
            return PaymentMethod(method).value
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(f"Invalid payment method {method!r}; expected one of: {allowed}")

    def purchase_subscription(
        self,
        member_id: int,
        plan_id: Optional[int] = None,
        plan_type: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Creates a paid subscription for the member and makes it the current one.

        The plan is resolved and the member looked up before anything is written.
        The payment, the subscription, the payment back-link and the member
        pointer swap are committed together. If the member record changes while
        the purchase is being prepared the whole purchase is re-read and retried.

        Raises InvalidPlanError, ValidationError, MemberNotFoundError,
        ActiveSubscriptionError (reject policy), ConcurrentModificationError
        (retries exhausted) or StorageError.
        """
        if member_id is None:
            raise ValidationError("member_id is required")
        if not _is_int(member_id):
            raise ValidationError("member_id must be an integer")
        if plan_id is not None and plan_id != "" and not _is_int(plan_id):
            raise InvalidPlanError("Invalid plan")
        if plan_type is not None and not isinstance(plan_type, str):
            raise InvalidPlanError("Invalid plan")
        terms = self.resolve_plan(plan_id, plan_type)
        if terms is None:
            raise InvalidPlanError("Invalid plan")
        method = self._validate_payment_method(payment_method)

        for attempt in range(1, self.max_retries + 1):
            member = self.db_manager.get_member(member_id)
            if member is None:
                raise MemberNotFoundError("Member not found")

            now = self.clock()
            start = now
            end = add_calendar_months(start, terms.duration)
            payment = Payment(
                id=None,
                member_id=member.id,
                amount=terms.price,
                method=method,
                status=PaymentStatus.COMPLETED.value,
                transaction_id=self.ids.transaction_id(),
                invoice_number=self.ids.invoice_number(),
                payment_date=to_timestamp(now),
            )
            subscription = Subscription(
                id=None,
                member_id=member.id,
                plan=terms,
                start_date=to_timestamp(start),
                end_date=to_timestamp(end),
                status=ACTIVE,
                created_at=to_timestamp(now),
            )
            try:
                superseded = self.db_manager.record_purchase(
                    member, payment, subscription, policy=self.policy
                )
            except ConcurrentModificationError:
                logging.warning(
                    f"Member {member_id} changed during purchase of '{terms.name}' "
                    f"(attempt {attempt}/{self.max_retries}); retrying."
                )
                continue
            return PurchaseResult(payment=payment, subscription=subscription, superseded_ids=superseded)

        logging.error(f"Giving up purchase of '{terms.name}' for member {member_id} after {self.max_retries} attempts.")
        raise ConcurrentModificationError(
            f"Member {member_id} is being modified concurrently; try again."
        )

    def assign_plan_to_member(
        self,
        member_id: int,
        plan_id: Optional[int] = None,
        plan_type: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> PurchaseResult:
        """Administrative purchase; the payment method defaults to cash."""
        return self.purchase_subscription(
            member_id,
            plan_id=plan_id,
            plan_type=plan_type,
            payment_method=payment_method or PaymentMethod.CASH.value,
        )

    def member_for_user(self, user_id: int) -> Member:
        member = self.db_manager.get_member_by_user_id(user_id)
        if member is None:
            raise MemberNotFoundError("Member profile not found")
        return member

    def subscribe_me(
        self,
        user_id: int,
        plan_id: Optional[int] = None,
        plan_type: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> PurchaseResult:
        member = self.member_for_user(user_id)
        return self.purchase_subscription(member.id, plan_id, plan_type, payment_method)

    def pay_for_plan(self, user_id: int, plan_id: Optional[int], payment_method: Optional[str]) -> PurchaseResult:
        """Member checkout against the catalog only; symbolic plan keys are not accepted."""
        member = self.member_for_user(user_id)
        if plan_id is None:
            raise InvalidPlanError("Invalid plan")
        return self.purchase_subscription(member.id, plan_id=plan_id, payment_method=payment_method)

    # State machine

    def _transition(self, subscription_id: int, target: str, acting_member_id: Optional[int]) -> Subscription:
        subscription = self.db_manager.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError("Subscription not found")
        if acting_member_id is not None and subscription.member_id != acting_member_id:
            logging.warning(
                f"Member {acting_member_id} tried to set subscription {subscription_id} "
                f"of member {subscription.member_id} to {target}."
            )
            raise AuthorizationError("Subscription does not belong to this member")
        check_transition(subscription.status, target)

        changed = self.db_manager.update_subscription_status(
            subscription_id, subscription.status, target, member_id=acting_member_id
        )
        if not changed:
            latest = self.db_manager.get_subscription(subscription_id)
            if latest is None:
                raise SubscriptionNotFoundError("Subscription not found")
            raise InvalidTransitionError(latest.status, target)
        subscription.status = target
        return subscription

    def pause_subscription(self, subscription_id: int, acting_member_id: Optional[int] = None) -> Subscription:
        """active -> paused. The end date is not moved."""
        return self._transition(subscription_id, PAUSED, acting_member_id)

    def resume_subscription(self, subscription_id: int, acting_member_id: Optional[int] = None) -> Subscription:
        return self._transition(subscription_id, ACTIVE, acting_member_id)

    def cancel_subscription(self, subscription_id: int, acting_member_id: Optional[int] = None) -> Subscription:
        return self._transition(subscription_id, CANCELLED, acting_member_id)

    def delete_subscription(self, subscription_id: int) -> None:
        if not self.db_manager.delete_subscription_cascade(subscription_id):
            raise SubscriptionNotFoundError("Subscription not found")

    def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        expired = self.db_manager.expire_overdue_subscriptions(to_timestamp(now or self.clock()))
        logging.info(f"Checked subscriptions: {expired} expired")
        return {"expired_count": expired}

    # Subscription and payment queries

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self.db_manager.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError("Subscription not found")
        return subscription

    def get_all_subscriptions(self, status_filter: Optional[str] = None) -> List[Subscription]:
        return self.db_manager.get_all_subscriptions(status_filter)

    def get_member_subscriptions(self, member_id: int) -> List[Subscription]:
        return self.db_manager.get_subscriptions_for_member(member_id)

    def get_my_subscriptions(self, user_id: int) -> List[Subscription]:
        return self.db_manager.get_subscriptions_for_member(self.member_for_user(user_id).id)

    def get_my_current_subscription(self, user_id: int) -> Optional[Subscription]:
        member = self.db_manager.get_member_by_user_id(user_id)
        if member is None or member.current_subscription_id is None:
            return None
        return self.db_manager.get_subscription(member.current_subscription_id)

    def get_payments(self, member_id: Optional[int] = None) -> List[Payment]:
        return self.db_manager.get_payments(member_id)

    def get_my_payments(self, user_id: int) -> List[Payment]:
        return self.db_manager.get_payments(self.member_for_user(user_id).id)

    # Members

    @staticmethod
    def _validate_identity(email: Any, password: Any, first_name: Any, last_name: Any) -> None:
        if not isinstance(email, str) or "@" not in email:
            raise ValidationError("A valid email is required.")
        if not isinstance(password, str) or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters.")
        if not isinstance(first_name, str) or not isinstance(last_name, str):
            raise ValidationError("First and last name are required.")
        if not first_name.strip() or not last_name.strip():
            raise ValidationError("First and last name are required.")

    @staticmethod
    def _validate_profile(profile: Any) -> Dict[str, Any]:
        """Checks a member profile dict: known keys only, JSON-typed values, None allowed."""
        if profile is None:
            return {}
        if not isinstance(profile, dict):
            raise ValidationError("Profile must be an object.")
        unknown = set(profile) - set(MEMBER_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(map(str, unknown)))}")
        for name, value in profile.items():
            if value is None or PROFILE_FIELD_CHECKS[name](value):
                continue
            if name == "gender":
                raise ValidationError(f"Invalid gender {value!r}")
            raise ValidationError(f"Invalid value for {name}: {value!r}")
        return dict(profile)

    def _new_user(self, email: str, password: str, role: str, first_name: str, last_name: str, phone: Optional[str]) -> User:
        self._validate_identity(email, password, first_name, last_name)
        if phone is not None and not isinstance(phone, str):
            raise ValidationError("phone must be a string.")
        return User(
            id=None,
            email=email.strip().lower(),
            role=role,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            password_hash=hash_password(password, rounds=config.BCRYPT_ROUNDS),
        )

    def create_member(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> Member:
        profile = self._validate_profile(profile)
        user = self._new_user(email, password, "member", first_name, last_name, phone)
        return self.db_manager.add_member(user, Member(id=None, user_id=0, **profile))

    def get_member(self, member_id: int) -> Member:
        member = self.db_manager.get_member(member_id)
        if member is None:
            raise MemberNotFoundError("Member not found")
        return member

    def get_all_members_for_view(self) -> List[MemberView]:
        return self.db_manager.get_all_members_for_view()

    def update_member_profile(self, member_id: int, profile: Dict[str, Any]) -> Member:
        profile = self._validate_profile(profile)
        if not self.db_manager.update_member_profile(member_id, profile):
            raise MemberNotFoundError("Member not found")
        return self.get_member(member_id)

    def delete_member(self, member_id: int) -> None:
        if not self.db_manager.delete_member(member_id):
            raise MemberNotFoundError("Member not found")

    def member_aggregate_problems(self, member_id: int) -> List[str]:
        return self.db_manager.check_member_aggregate(member_id)

    # Trainers

    @staticmethod
    def _validate_trainer_fields(changes: Any) -> Dict[str, Any]:
        if not isinstance(changes, dict):
            raise ValidationError("Trainer data must be an object.")
        unknown = set(changes) - set(TRAINER_FIELDS) - set(TRAINER_USER_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown trainer fields: {', '.join(sorted(map(str, unknown)))}")
        for name in ("specialization", "certifications"):
            value = changes.get(name)
            if value is not None and (
                not isinstance(value, list) or not all(isinstance(item, str) for item in value)
            ):
                raise ValidationError(f"{name} must be a list of strings")
        experience = changes.get("experience")
        if experience is not None and (not _is_int(experience) or experience < 0):
            raise ValidationError("experience must be a non-negative integer")
        for name in ("first_name", "last_name"):
            value = changes.get(name)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise ValidationError(f"{name} must be a non-empty string")
        phone = changes.get("phone")
        if phone is not None and not isinstance(phone, str):
            raise ValidationError("phone must be a string.")
        return {name: value for name, value in changes.items() if value is not None}

    def create_trainer(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
        specialization: Optional[List[str]] = None,
        experience: int = 0,
        certifications: Optional[List[str]] = None,
    ) -> Trainer:
        self._validate_trainer_fields(
            {"specialization": specialization, "experience": experience, "certifications": certifications}
        )
        if experience is None:
            raise ValidationError("experience must be a non-negative integer")
        user = self._new_user(email, password, "trainer", first_name, last_name, phone)
        trainer = Trainer(
            id=None,
            user_id=0,
            specialization=list(specialization or []),
            experience=experience,
            certifications=list(certifications or []),
        )
        return self.db_manager.add_trainer(user, trainer)

    def get_trainer(self, trainer_id: int) -> Trainer:
        trainer = self.db_manager.get_trainer(trainer_id)
        if trainer is None:
            raise TrainerNotFoundError("Trainer not found")
        return trainer

    def trainer_for_user(self, user_id: int) -> Trainer:
        trainer = self.db_manager.get_trainer_by_user_id(user_id)
        if trainer is None:
            raise TrainerNotFoundError("Trainer profile not found")
        return trainer

    def get_all_trainers(self) -> List[TrainerView]:
        return self.db_manager.get_all_trainer_views()

    def get_trainer_view(self, trainer_id: int) -> TrainerView:
        view = self.db_manager.get_trainer_view(trainer_id)
        if view is None:
            raise TrainerNotFoundError("Trainer not found")
        return view

    def get_my_trainer_profile(self, user_id: int) -> TrainerView:
        view = self.db_manager.get_trainer_view_by_user_id(user_id)
        if view is None:
            raise TrainerNotFoundError("Trainer profile not found")
        return view

    def update_trainer(self, trainer_id: int, changes: Dict[str, Any]) -> TrainerView:
        """Applies trainer attributes and identity names/phone given in `changes`.
        Keys set to None are left untouched.
        """
        changes = self._validate_trainer_fields(changes)
        trainer_fields = {k: v for k, v in changes.items() if k in TRAINER_FIELDS}
        user_fields = {k: v.strip() if k != "phone" else v for k, v in changes.items() if k in TRAINER_USER_FIELDS}
        if not self.db_manager.update_trainer(trainer_id, trainer_fields, user_fields):
            raise TrainerNotFoundError("Trainer not found")
        return self.get_trainer_view(trainer_id)

    def assign_trainer(self, trainer_id: int, member_id: int) -> Member:
        self.get_trainer(trainer_id)
        self.get_member(member_id)
        self.db_manager.assign_member_to_trainer(trainer_id, member_id)
        return self.get_member(member_id)

    def unassign_trainer(self, trainer_id: int, member_id: int) -> Member:
        self.get_trainer(trainer_id)
        self.get_member(member_id)
        self.db_manager.unassign_member_from_trainer(trainer_id, member_id)
        return self.get_member(member_id)

    def get_trainer_members(self, trainer_id: int) -> List[Member]:
        self.get_trainer(trainer_id)
        return [self.get_member(mid) for mid in self.db_manager.get_assigned_member_ids(trainer_id)]

    def get_my_members(self, user_id: int) -> List[Member]:
        return self.get_trainer_members(self.trainer_for_user(user_id).id)

    def get_my_assigned_subscriptions(self, user_id: int) -> List[Subscription]:
        trainer = self.trainer_for_user(user_id)
        member_ids = self.db_manager.get_assigned_member_ids(trainer.id)
        return self.db_manager.get_subscriptions_for_members(member_ids)

    def delete_trainer(self, trainer_id: int) -> None:
        if not self.db_manager.delete_trainer(trainer_id):
            raise TrainerNotFoundError("Trainer not found")

    # Workout schedules

    @staticmethod
    def _parse_day(day: Any) -> str:
        try:
            return Weekday(day).value
        except ValueError:
            raise ValidationError(f"Invalid day {day!r}; expected one of: {', '.join(d.value for d in Weekday)}")

    @staticmethod
    def _parse_exercise(data: Any) -> Exercise:
        if not isinstance(data, dict):
            raise ValidationError("Each exercise must be an object.")
        unknown = set(data) - {"name", "sets", "reps", "weight", "notes", "completed"}
        if unknown:
            raise ValidationError(f"Unknown exercise fields: {', '.join(sorted(map(str, unknown)))}")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Exercise name is required.")
        if not _is_positive_int(data.get("sets")) or not _is_positive_int(data.get("reps")):
            raise ValidationError(f"sets and reps of '{name}' must be positive integers")
        weight = data.get("weight")
        if weight is not None and (not _is_number(weight) or weight < 0):
            raise ValidationError(f"weight of '{name}' must be a non-negative number")
        notes = data.get("notes")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError(f"notes of '{name}' must be a string")
        completed = data.get("completed", False)
        if not isinstance(completed, bool):
            raise ValidationError(f"completed of '{name}' must be true or false")
        return Exercise(
            name=name.strip(),
            sets=data["sets"],
            reps=data["reps"],
            weight=weight,
            notes=notes,
            completed=completed,
        )

    def _parse_routines(self, routines: Any) -> List[Routine]:
        if not isinstance(routines, list):
            raise ValidationError("routines must be a list.")
        parsed = []
        seen = set()
        for data in routines:
            if not isinstance(data, dict):
                raise ValidationError("Each routine must be an object.")
            day = self._parse_day(data.get("day"))
            if day in seen:
                raise ValidationError(f"Duplicate routine for {day}")
            seen.add(day)
            exercises = data.get("exercises", [])
            if not isinstance(exercises, list):
                raise ValidationError(f"exercises of {day} must be a list.")
            parsed.append(Routine(day=day, exercises=[self._parse_exercise(e) for e in exercises]))
        return parsed

    @staticmethod
    def _validate_schedule_dates(start_date: Any, end_date: Any) -> None:
        try:
            start = datetime.strptime(start_date, "%Y-%m-%d")
            end = datetime.strptime(end_date, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise ValidationError("start_date and end_date must be YYYY-MM-DD dates.")
        if end < start:
            raise ValidationError("end_date must not be before start_date.")

    def get_schedule(self, schedule_id: int) -> Schedule:
        schedule = self.db_manager.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError("Schedule not found")
        return schedule

    def _check_trainer_owns_member(self, trainer_id: int, member: Member) -> None:
        if member.assigned_trainer_id != trainer_id:
            logging.warning(f"Trainer {trainer_id} tried to manage the schedule of unassigned member {member.id}.")
            raise AuthorizationError("Member is not assigned to this trainer")

    def _check_schedule_access(
        self,
        schedule: Schedule,
        acting_member_id: Optional[int] = None,
        acting_trainer_id: Optional[int] = None,
    ) -> None:
        if acting_member_id is not None and schedule.member_id != acting_member_id:
            logging.warning(f"Member {acting_member_id} tried to use schedule {schedule.id} of member {schedule.member_id}.")
            raise AuthorizationError("Not authorized to update this schedule")
        if acting_trainer_id is not None:
            self._check_trainer_owns_member(acting_trainer_id, self.get_member(schedule.member_id))

    def create_schedule(
        self,
        member_id: int,
        start_date: str,
        end_date: str,
        routines: List[Dict[str, Any]],
        trainer_id: Optional[int] = None,
        acting_trainer_id: Optional[int] = None,
    ) -> Schedule:
        """
        Writes a workout schedule for a member.

        A trainer (acting_trainer_id) schedules only members assigned to them and
        is recorded as the author. An administrator names the trainer, or the
        member's assigned trainer is used.
        """
        if not _is_int(member_id):
            raise ValidationError("member_id is required")
        self._validate_schedule_dates(start_date, end_date)
        parsed = self._parse_routines(routines)
        member = self.get_member(member_id)
        if acting_trainer_id is not None:
            self._check_trainer_owns_member(acting_trainer_id, member)
            trainer_id = acting_trainer_id
        else:
            if trainer_id is None:
                trainer_id = member.assigned_trainer_id
            if trainer_id is None:
                raise ValidationError("trainer_id is required")
            if not _is_int(trainer_id):
                raise ValidationError("trainer_id must be an integer")
            self.get_trainer(trainer_id)
        schedule = Schedule(
            id=None,
            member_id=member.id,
            trainer_id=trainer_id,
            start_date=start_date,
            end_date=end_date,
            routines=parsed,
        )
        return self.db_manager.add_schedule(schedule)

    def get_member_schedules(self, member_id: int, acting_member_id: Optional[int] = None) -> List[Schedule]:
        """All schedules of the member, newest start date first."""
        if acting_member_id is not None and member_id != acting_member_id:
            raise AuthorizationError("Schedules of other members are not visible")
        self.get_member(member_id)
        return self.db_manager.get_schedules_for_member(member_id)

    def get_my_schedules(self, user_id: int) -> List[Schedule]:
        return self.db_manager.get_schedules_for_member(self.member_for_user(user_id).id)

    def update_schedule(
        self,
        schedule_id: int,
        changes: Dict[str, Any],
        acting_trainer_id: Optional[int] = None,
    ) -> Schedule:
        """Changes the date range and/or replaces the routines. Member and author stay fixed."""
        if not isinstance(changes, dict):
            raise ValidationError("Schedule data must be an object.")
        unknown = set(changes) - {"start_date", "end_date", "routines"}
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {', '.join(sorted(map(str, unknown)))}")
        schedule = self.get_schedule(schedule_id)
        self._check_schedule_access(schedule, acting_trainer_id=acting_trainer_id)
        start_date = changes.get("start_date") or schedule.start_date
        end_date = changes.get("end_date") or schedule.end_date
        self._validate_schedule_dates(start_date, end_date)
        routines = None
        if changes.get("routines") is not None:
            routines = self._parse_routines(changes["routines"])
        if not self.db_manager.update_schedule(schedule_id, start_date, end_date, routines):
            raise ScheduleNotFoundError("Schedule not found")
        return self.get_schedule(schedule_id)

    def set_exercise_status(
        self,
        schedule_id: int,
        day: str,
        exercise_index: int,
        completed: bool,
        acting_member_id: Optional[int] = None,
        acting_trainer_id: Optional[int] = None,
    ) -> Schedule:
        """Marks one exercise of a routine done or not done."""
        if not isinstance(completed, bool):
            raise ValidationError("completed must be true or false")
        if not _is_int(exercise_index) or exercise_index < 0:
            raise ValidationError("exercise_index must be a non-negative integer")
        if not isinstance(day, str):
            raise ValidationError("day is required")
        schedule = self.get_schedule(schedule_id)
        self._check_schedule_access(schedule, acting_member_id, acting_trainer_id)
        routine = next((r for r in schedule.routines if r.day == day), None)
        if routine is None:
            raise NotFoundError("Routine day not found")
        if exercise_index >= len(routine.exercises):
            raise NotFoundError("Exercise not found")
        if not self.db_manager.set_exercise_completed(schedule_id, day, exercise_index, completed):
            raise NotFoundError("Exercise not found")
        return self.get_schedule(schedule_id)

    def member_progress_stats(self, member_id: int, acting_member_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Completion figures from the member's most recently created schedule.

        weekly_completion has one entry per routine, Monday first, with the
        completed share of its exercises as a whole percentage.
        overall_consistency is the same share over every exercise.
        """
        if acting_member_id is not None and member_id != acting_member_id:
            raise AuthorizationError("Progress of other members is not visible")
        self.get_member(member_id)
        schedule = self.db_manager.get_latest_schedule_for_member(member_id)
        if schedule is None:
            return {"weekly_completion": [], "overall_consistency": 0}

        day_order = [d.value for d in Weekday]
        weekly = []
        for routine in sorted(schedule.routines, key=lambda r: day_order.index(r.day)):
            total = len(routine.exercises)
            completed = sum(1 for e in routine.exercises if e.completed)
            weekly.append(
                {
                    "day": routine.day,
                    "total": total,
                    "completed": completed,
                    "percentage": _percentage(completed, total),
                }
            )
        total_exercises = sum(day["total"] for day in weekly)
        total_completed = sum(day["completed"] for day in weekly)
        return {
            "schedule_id": schedule.id,
            "weekly_completion": weekly,
            "overall_consistency": _percentage(total_completed, total_exercises),
        }

    # Reports

    def generate_revenue_report(self, start_date: str, end_date: str) -> Dict[str, Any]:
        """Revenue between two YYYY-MM-DD dates, both inclusive."""
        try:
            start = datetime.strptime(start_date, "%Y-%m-%d")
            end = datetime.strptime(end_date, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise ValidationError("start_date and end_date must be YYYY-MM-DD dates.")
        if end < start:
            raise ValidationError("end_date must not be before start_date.")
        report = revenue_summary(
            self.db_manager,
            to_timestamp(start),
            to_timestamp(end.replace(hour=23, minute=59, second=59)),
        )
        report["start_date"] = start_date
        report["end_date"] = end_date
        return report
