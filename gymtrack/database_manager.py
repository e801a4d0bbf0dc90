import json
import logging
import sqlite3
from typing import Dict, List, Optional, Tuple

from . import config
from .errors import ActiveSubscriptionError, ConcurrentModificationError, StorageError, ValidationError
from .lifecycle import CANCELLED, EXPIRED, LIVE_STATUSES, to_timestamp, utc_now
from .models import (
    Exercise,
    Member,
    MemberView,
    Payment,
    Plan,
    PlanTerms,
    Routine,
    Schedule,
    Subscription,
    Trainer,
    TrainerView,
    User,
)

# Basic logging configuration (can be overridden by application's config)
logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

MEMBER_PROFILE_FIELDS = (
    "height",
    "weight",
    "age",
    "gender",
    "goal",
    "medical_conditions",
)

TRAINER_FIELDS = ("specialization", "experience", "certifications")
TRAINER_USER_FIELDS = ("first_name", "last_name", "phone")

SUBSCRIPTION_COLUMNS = """
    s.id, s.member_id, s.plan_name, s.plan_duration, s.plan_price,
    s.start_date, s.end_date, s.status, s.payment_id, s.created_at
"""

PAYMENT_COLUMNS = """
    p.id, p.member_id, p.subscription_id, p.amount, p.method, p.status,
    p.transaction_id, p.invoice_number, p.payment_date
"""


def _now_str() -> str:
    return to_timestamp(utc_now())


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        member_id=row["member_id"],
        plan=PlanTerms(
            name=row["plan_name"],
            duration=row["plan_duration"],
            price=row["plan_price"],
        ),
        start_date=row["start_date"],
        end_date=row["end_date"],
        status=row["status"],
        payment_id=row["payment_id"],
        created_at=row["created_at"],
    )


def _row_to_payment(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        member_id=row["member_id"],
        subscription_id=row["subscription_id"],
        amount=row["amount"],
        method=row["method"],
        status=row["status"],
        transaction_id=row["transaction_id"],
        invoice_number=row["invoice_number"],
        payment_date=row["payment_date"],
    )


def _row_to_trainer(row: sqlite3.Row) -> Trainer:
    return Trainer(
        id=row["id"],
        user_id=row["user_id"],
        specialization=json.loads(row["specialization"] or "[]"),
        experience=row["experience"],
        certifications=json.loads(row["certifications"] or "[]"),
        join_date=row["join_date"],
    )


class DatabaseManager:
    def __init__(self, connection: sqlite3.Connection):
        self.conn = connection
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON;")

    def close(self) -> None:
        self.conn.close()

    def _begin(self) -> None:
        # Take the write lock up front so read-then-write steps see a stable snapshot
        if not self.conn.in_transaction:
            self.conn.execute("BEGIN IMMEDIATE")

    # --- Users, members ---

    def _insert_user(self, cursor: sqlite3.Cursor, user: User) -> int:
        created_at = user.created_at or _now_str()
        try:
            cursor.execute(
                """
                INSERT INTO users (email, password_hash, role, first_name, last_name, phone, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.email,
                    user.password_hash,
                    user.role,
                    user.first_name,
                    user.last_name,
                    user.phone,
                    1 if user.is_active else 0,
                    created_at,
                ),
            )
        except sqlite3.IntegrityError as ie:
            logging.warning(f"Attempt to add user with existing email: {user.email}")
            raise ValidationError(f"Email {user.email} already exists.") from ie
        user.id = cursor.lastrowid
        user.created_at = created_at
        return user.id

    def get_user(self, user_id: int) -> Optional[User]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT id, email, role, first_name, last_name, phone, is_active, created_at, password_hash
                FROM users WHERE id = ?
                """,
                (user_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logging.error(f"Database error in get_user for ID {user_id}: {e}", exc_info=True)
            raise StorageError(f"Could not load user {user_id}.") from e
        if not row:
            return None
        user = User(**row)
        user.is_active = bool(row["is_active"])
        return user

    def add_member(self, user: User, member: Member) -> Member:
        """Creates the MEMBER-role identity and its member record in one transaction.
        Raises ValidationError if the email already exists.
        Returns the member object with id and user_id set.
        """
        cursor = self.conn.cursor()
        try:
            self._begin()
            user_id = self._insert_user(cursor, user)
            join_date = member.join_date or _now_str()
            cursor.execute(
                """
                INSERT INTO members (user_id, height, weight, age, gender, goal, medical_conditions, join_date, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    user_id,
                    member.height,
                    member.weight,
                    member.age,
                    member.gender,
                    member.goal,
                    member.medical_conditions,
                    join_date,
                ),
            )
            self.conn.commit()
            member.id = cursor.lastrowid
            member.user_id = user_id
            member.join_date = join_date
            logging.info(f"Member for '{user.email}' added with ID {member.id}.")
            return member
        except ValidationError:
            self.conn.rollback()
            raise
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in add_member for '{user.email}': {e}", exc_info=True)
            raise StorageError(f"Could not add member '{user.email}'.") from e

    def _load_history(self, cursor: sqlite3.Cursor, member_id: int) -> List[int]:
        cursor.execute(
            "SELECT subscription_id FROM member_subscription_history WHERE member_id = ? ORDER BY position ASC",
            (member_id,),
        )
        return [row["subscription_id"] for row in cursor.fetchall()]

    def _get_member_where(self, clause: str, value: int) -> Optional[Member]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT id, user_id, join_date, height, weight, age, gender, goal, medical_conditions,
                       assigned_trainer_id, current_subscription_id, version
                FROM members WHERE {clause} = ?
                """,
                (value,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            member = Member(**row)
            member.subscription_history = self._load_history(cursor, member.id)
            return member
        except sqlite3.Error as e:
            logging.error(f"Database error loading member by {clause}={value}: {e}", exc_info=True)
            raise StorageError("Could not load member.") from e

    def get_member(self, member_id: int) -> Optional[Member]:
        """Loads the member aggregate, history included."""
        return self._get_member_where("id", member_id)

    def get_member_by_user_id(self, user_id: int) -> Optional[Member]:
        return self._get_member_where("user_id", user_id)

    def get_all_members_for_view(self) -> List[MemberView]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT m.id, m.user_id, u.email, u.first_name, u.last_name, u.phone, m.join_date,
                       m.assigned_trainer_id, m.current_subscription_id, s.status AS current_status
                FROM members m
                JOIN users u ON u.id = m.user_id
                LEFT JOIN subscriptions s ON s.id = m.current_subscription_id
                ORDER BY u.last_name ASC, u.first_name ASC
                """
            )
            return [MemberView(**row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error in get_all_members_for_view: {e}", exc_info=True)
            raise StorageError("Could not list members.") from e

    def update_member_profile(self, member_id: int, fields: Dict) -> bool:
        """Updates profile attributes only. Subscription pointers are never touched here.
        Returns False if the member does not exist.
        """
        unknown = set(fields) - set(MEMBER_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        if not fields:
            logging.info(f"No fields provided to update for member ID {member_id}.")
            return self.get_member(member_id) is not None

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values()) + [member_id]
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"UPDATE members SET {assignments}, version = version + 1 WHERE id = ?",
                tuple(params),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            raise ValidationError(f"Invalid profile data for member {member_id}: {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in update_member_profile for ID {member_id}: {e}", exc_info=True)
            raise StorageError(f"Could not update member {member_id}.") from e
        if cursor.rowcount == 0:
            logging.warning(f"Member with ID {member_id} not found for update.")
            return False
        logging.info(f"Member ID {member_id} profile updated.")
        return True

    def delete_member(self, member_id: int) -> bool:
        """Deletes the member's identity record; the member row, its subscriptions,
        payments, history and workout schedules go with it through ON DELETE CASCADE.
        Returns True if deletion was successful, False if the member was not found.
        """
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute("SELECT user_id FROM members WHERE id = ?", (member_id,))
            row = cursor.fetchone()
            if not row:
                self.conn.rollback()
                logging.warning(f"No member found with ID {member_id} to delete.")
                return False
            cursor.execute("DELETE FROM members WHERE id = ?", (member_id,))
            cursor.execute("DELETE FROM users WHERE id = ?", (row["user_id"],))
            self.conn.commit()
            logging.info(f"Member ID {member_id} and user ID {row['user_id']} deleted.")
            return True
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in delete_member for ID {member_id}: {e}", exc_info=True)
            raise StorageError(f"Could not delete member {member_id}.") from e

    # --- Trainers ---

    def add_trainer(self, user: User, trainer: Trainer) -> Trainer:
        cursor = self.conn.cursor()
        try:
            self._begin()
            user_id = self._insert_user(cursor, user)
            join_date = trainer.join_date or _now_str()
            cursor.execute(
                """
                INSERT INTO trainers (user_id, specialization, experience, certifications, join_date)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    json.dumps(trainer.specialization),
                    trainer.experience,
                    json.dumps(trainer.certifications),
                    join_date,
                ),
            )
            self.conn.commit()
            trainer.id = cursor.lastrowid
            trainer.user_id = user_id
            trainer.join_date = join_date
            logging.info(f"Trainer for '{user.email}' added with ID {trainer.id}.")
            return trainer
        except ValidationError:
            self.conn.rollback()
            raise
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in add_trainer for '{user.email}': {e}", exc_info=True)
            raise StorageError(f"Could not add trainer '{user.email}'.") from e

    def get_trainer(self, trainer_id: int) -> Optional[Trainer]:
        return self._get_trainer_where("id", trainer_id)

    def get_trainer_by_user_id(self, user_id: int) -> Optional[Trainer]:
        return self._get_trainer_where("user_id", user_id)

    def _get_trainer_where(self, clause: str, value: int) -> Optional[Trainer]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT id, user_id, specialization, experience, certifications, join_date FROM trainers WHERE {clause} = ?",
                (value,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logging.error(f"Database error loading trainer by {clause}={value}: {e}", exc_info=True)
            raise StorageError("Could not load trainer.") from e
        return _row_to_trainer(row) if row else None

    def assign_member_to_trainer(self, trainer_id: int, member_id: int) -> bool:
        """Points the member at the trainer. Any previous trainer loses the member
        because the roster is derived from members.assigned_trainer_id.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE members SET assigned_trainer_id = ?, version = version + 1 WHERE id = ?",
                (trainer_id, member_id),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error assigning member {member_id} to trainer {trainer_id}: {e}",
                exc_info=True,
            )
            raise StorageError(f"Could not assign member {member_id}.") from e
        if cursor.rowcount == 0:
            return False
        logging.info(f"Member ID {member_id} assigned to trainer ID {trainer_id}.")
        return True

    def unassign_member_from_trainer(self, trainer_id: int, member_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                UPDATE members SET assigned_trainer_id = NULL, version = version + 1
                WHERE id = ? AND assigned_trainer_id = ?
                """,
                (member_id, trainer_id),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error unassigning member {member_id} from trainer {trainer_id}: {e}",
                exc_info=True,
            )
            raise StorageError(f"Could not unassign member {member_id}.") from e
        if cursor.rowcount == 0:
            logging.info(f"Member ID {member_id} was not assigned to trainer ID {trainer_id}.")
            return False
        logging.info(f"Member ID {member_id} unassigned from trainer ID {trainer_id}.")
        return True

    def get_assigned_member_ids(self, trainer_id: int) -> List[int]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id FROM members WHERE assigned_trainer_id = ? ORDER BY id ASC",
                (trainer_id,),
            )
            return [row["id"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error listing members of trainer {trainer_id}: {e}", exc_info=True)
            raise StorageError(f"Could not list members of trainer {trainer_id}.") from e

    def delete_trainer(self, trainer_id: int) -> bool:
        """Unassigns every member, then removes the trainer and its identity record."""
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute("SELECT user_id FROM trainers WHERE id = ?", (trainer_id,))
            row = cursor.fetchone()
            if not row:
                self.conn.rollback()
                logging.warning(f"No trainer found with ID {trainer_id} to delete.")
                return False
            cursor.execute(
                """
                UPDATE members SET assigned_trainer_id = NULL, version = version + 1
                WHERE assigned_trainer_id = ?
                """,
                (trainer_id,),
            )
            unassigned = cursor.rowcount
            cursor.execute("DELETE FROM trainers WHERE id = ?", (trainer_id,))
            cursor.execute("DELETE FROM users WHERE id = ?", (row["user_id"],))
            self.conn.commit()
            logging.info(f"Trainer ID {trainer_id} deleted; {unassigned} member(s) unassigned.")
            return True
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in delete_trainer for ID {trainer_id}: {e}", exc_info=True)
            raise StorageError(f"Could not delete trainer {trainer_id}.") from e

    def _get_trainer_views_where(self, clause: str = "", params: Tuple = ()) -> List[TrainerView]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT t.id, t.user_id, u.email, u.first_name, u.last_name, u.phone,
                       t.specialization, t.experience, t.certifications, t.join_date
                FROM trainers t
                JOIN users u ON u.id = t.user_id
                {clause}
                ORDER BY u.last_name ASC, u.first_name ASC, t.id ASC
                """,
                params,
            )
            views = []
            for row in cursor.fetchall():
                view = TrainerView(**row)
                view.specialization = json.loads(row["specialization"] or "[]")
                view.certifications = json.loads(row["certifications"] or "[]")
                views.append(view)
        except sqlite3.Error as e:
            logging.error(f"Database error listing trainers: {e}", exc_info=True)
            raise StorageError("Could not list trainers.") from e
        for view in views:
            view.assigned_member_ids = self.get_assigned_member_ids(view.id)
        return views

    def get_all_trainer_views(self) -> List[TrainerView]:
        return self._get_trainer_views_where()

    def get_trainer_view(self, trainer_id: int) -> Optional[TrainerView]:
        views = self._get_trainer_views_where("WHERE t.id = ?", (trainer_id,))
        return views[0] if views else None

    def get_trainer_view_by_user_id(self, user_id: int) -> Optional[TrainerView]:
        views = self._get_trainer_views_where("WHERE t.user_id = ?", (user_id,))
        return views[0] if views else None

    def update_trainer(self, trainer_id: int, trainer_fields: Dict, user_fields: Dict) -> bool:
        """Updates trainer attributes and the linked identity's names/phone together.
        Returns False if the trainer does not exist.
        """
        unknown = (set(trainer_fields) - set(TRAINER_FIELDS)) | (set(user_fields) - set(TRAINER_USER_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown trainer fields: {', '.join(sorted(unknown))}")
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute("SELECT user_id FROM trainers WHERE id = ?", (trainer_id,))
            row = cursor.fetchone()
            if not row:
                self.conn.rollback()
                logging.warning(f"Trainer with ID {trainer_id} not found for update.")
                return False
            if trainer_fields:
                values = {
                    name: json.dumps(value) if name in ("specialization", "certifications") else value
                    for name, value in trainer_fields.items()
                }
                assignments = ", ".join(f"{name} = ?" for name in values)
                cursor.execute(
                    f"UPDATE trainers SET {assignments} WHERE id = ?",
                    tuple(values.values()) + (trainer_id,),
                )
            if user_fields:
                assignments = ", ".join(f"{name} = ?" for name in user_fields)
                cursor.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?",
                    tuple(user_fields.values()) + (row["user_id"],),
                )
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            raise ValidationError(f"Invalid data for trainer {trainer_id}: {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in update_trainer for ID {trainer_id}: {e}", exc_info=True)
            raise StorageError(f"Could not update trainer {trainer_id}.") from e
        logging.info(f"Trainer ID {trainer_id} updated.")
        return True

    # --- Workout schedules ---

    def _insert_routines(self, cursor: sqlite3.Cursor, schedule_id: int, routines: List[Routine]) -> None:
        for routine_position, routine in enumerate(routines):
            cursor.execute(
                "INSERT INTO schedule_routines (schedule_id, day, position) VALUES (?, ?, ?)",
                (schedule_id, routine.day, routine_position),
            )
            routine_id = cursor.lastrowid
            for position, exercise in enumerate(routine.exercises):
                cursor.execute(
                    """
                    INSERT INTO schedule_exercises (routine_id, position, name, sets, reps, weight, notes, completed)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        routine_id,
                        position,
                        exercise.name,
                        exercise.sets,
                        exercise.reps,
                        exercise.weight,
                        exercise.notes,
                        1 if exercise.completed else 0,
                    ),
                )
                exercise.id = cursor.lastrowid

    def _load_routines(self, cursor: sqlite3.Cursor, schedule_id: int) -> List[Routine]:
        cursor.execute(
            """
            SELECT r.id AS routine_id, r.day, e.id, e.name, e.sets, e.reps, e.weight, e.notes, e.completed
            FROM schedule_routines r
            LEFT JOIN schedule_exercises e ON e.routine_id = r.id
            WHERE r.schedule_id = ?
            ORDER BY r.position ASC, e.position ASC
            """,
            (schedule_id,),
        )
        routines: Dict[int, Routine] = {}
        for row in cursor.fetchall():
            routine = routines.setdefault(row["routine_id"], Routine(day=row["day"]))
            if row["id"] is None:
                continue
            routine.exercises.append(
                Exercise(
                    id=row["id"],
                    name=row["name"],
                    sets=row["sets"],
                    reps=row["reps"],
                    weight=row["weight"],
                    notes=row["notes"],
                    completed=bool(row["completed"]),
                )
            )
        return list(routines.values())

    def _get_schedules_where(self, clause: str, params: Tuple, order: str, limit: Optional[int] = None) -> List[Schedule]:
        query = f"""
            SELECT id, member_id, trainer_id, start_date, end_date, created_at, updated_at
            FROM schedules WHERE {clause} ORDER BY {order}
        """
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        try:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            schedules = [Schedule(**row) for row in cursor.fetchall()]
            for schedule in schedules:
                schedule.routines = self._load_routines(cursor, schedule.id)
            return schedules
        except sqlite3.Error as e:
            logging.error(f"Database error loading schedules where {clause} {params}: {e}", exc_info=True)
            raise StorageError("Could not load schedules.") from e

    def add_schedule(self, schedule: Schedule) -> Schedule:
        """Stores the schedule with its routines and exercises in one transaction."""
        now = _now_str()
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute(
                """
                INSERT INTO schedules (member_id, trainer_id, start_date, end_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (schedule.member_id, schedule.trainer_id, schedule.start_date, schedule.end_date, now, now),
            )
            schedule.id = cursor.lastrowid
            self._insert_routines(cursor, schedule.id, schedule.routines)
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            schedule.id = None
            raise ValidationError(f"Invalid schedule for member {schedule.member_id}: {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            schedule.id = None
            logging.error(f"Database error in add_schedule for member {schedule.member_id}: {e}", exc_info=True)
            raise StorageError(f"Could not add schedule for member {schedule.member_id}.") from e
        schedule.created_at = schedule.updated_at = now
        logging.info(f"Schedule ID {schedule.id} added for member ID {schedule.member_id}.")
        return schedule

    def get_schedule(self, schedule_id: int) -> Optional[Schedule]:
        schedules = self._get_schedules_where("id = ?", (schedule_id,), "id ASC")
        return schedules[0] if schedules else None

    def get_schedules_for_member(self, member_id: int) -> List[Schedule]:
        """Newest start date first."""
        return self._get_schedules_where("member_id = ?", (member_id,), "start_date DESC, id DESC")

    def get_latest_schedule_for_member(self, member_id: int) -> Optional[Schedule]:
        """The most recently created schedule of the member."""
        schedules = self._get_schedules_where("member_id = ?", (member_id,), "created_at DESC, id DESC", limit=1)
        return schedules[0] if schedules else None

    def update_schedule(
        self,
        schedule_id: int,
        start_date: str,
        end_date: str,
        routines: Optional[List[Routine]] = None,
    ) -> bool:
        """Sets the date range and, when routines is given, replaces every routine.
        Returns False if the schedule does not exist.
        """
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute(
                "UPDATE schedules SET start_date = ?, end_date = ?, updated_at = ? WHERE id = ?",
                (start_date, end_date, _now_str(), schedule_id),
            )
            if cursor.rowcount == 0:
                self.conn.rollback()
                logging.warning(f"Schedule with ID {schedule_id} not found for update.")
                return False
            if routines is not None:
                cursor.execute("DELETE FROM schedule_routines WHERE schedule_id = ?", (schedule_id,))
                self._insert_routines(cursor, schedule_id, routines)
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            raise ValidationError(f"Invalid schedule data for schedule {schedule_id}: {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in update_schedule for ID {schedule_id}: {e}", exc_info=True)
            raise StorageError(f"Could not update schedule {schedule_id}.") from e
        logging.info(f"Schedule ID {schedule_id} updated.")
        return True

    def set_exercise_completed(self, schedule_id: int, day: str, position: int, completed: bool) -> bool:
        """Flags one exercise of the routine for `day`. Returns False if no such exercise."""
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute(
                """
                UPDATE schedule_exercises SET completed = ?
                WHERE position = ? AND routine_id = (
                    SELECT id FROM schedule_routines WHERE schedule_id = ? AND day = ?
                )
                """,
                (1 if completed else 0, position, schedule_id, day),
            )
            if cursor.rowcount == 0:
                self.conn.rollback()
                return False
            cursor.execute(
                "UPDATE schedules SET updated_at = ? WHERE id = ?",
                (_now_str(), schedule_id),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error setting exercise {day}/{position} of schedule {schedule_id}: {e}",
                exc_info=True,
            )
            raise StorageError(f"Could not update schedule {schedule_id}.") from e
        logging.info(f"Schedule ID {schedule_id}: {day} exercise {position} completed={completed}.")
        return True

    # --- Plan catalog ---

    def add_plan(self, plan: Plan) -> Plan:
        cursor = self.conn.cursor()
        created_at = plan.created_at or _now_str()
        try:
            cursor.execute(
                "INSERT INTO plans (name, duration_months, price, created_at) VALUES (?, ?, ?, ?)",
                (plan.name, plan.duration_months, plan.price, created_at),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            raise ValidationError(f"Invalid plan '{plan.name}': {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in add_plan for '{plan.name}': {e}", exc_info=True)
            raise StorageError(f"Could not add plan '{plan.name}'.") from e
        plan.id = cursor.lastrowid
        plan.created_at = created_at
        logging.info(f"Plan '{plan.name}' added with ID {plan.id}.")
        return plan

    def get_plan_by_id(self, plan_id: int) -> Optional[Plan]:
        """Retrieves details for a specific plan by its ID."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id, name, duration_months, price, created_at FROM plans WHERE id = ?",
                (plan_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logging.error(f"Database error in get_plan_by_id for plan_id {plan_id}: {e}", exc_info=True)
            raise StorageError(f"Could not load plan {plan_id}.") from e
        return Plan(**row) if row else None

    def get_all_plans(self) -> List[Plan]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id, name, duration_months, price, created_at FROM plans ORDER BY price ASC, id ASC"
            )
            return [Plan(**row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error in get_all_plans: {e}", exc_info=True)
            raise StorageError("Could not list plans.") from e

    def update_plan(self, plan: Plan) -> bool:
        """Updates catalog terms. Issued subscriptions keep their snapshot.
        Returns False if the plan does not exist.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE plans SET name = ?, duration_months = ?, price = ? WHERE id = ?",
                (plan.name, plan.duration_months, plan.price, plan.id),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as ie:
            self.conn.rollback()
            raise ValidationError(f"Invalid plan '{plan.name}': {ie}") from ie
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in update_plan for ID {plan.id}: {e}", exc_info=True)
            raise StorageError(f"Could not update plan {plan.id}.") from e
        if cursor.rowcount == 0:
            logging.warning(f"Plan with ID {plan.id} not found for update.")
            return False
        logging.info(f"Plan ID {plan.id} updated successfully.")
        return True

    def delete_plan(self, plan_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM plans WHERE id = ?", (plan_id,))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error in delete_plan for ID {plan_id}: {e}", exc_info=True)
            raise StorageError(f"Could not delete plan {plan_id}.") from e
        if cursor.rowcount == 0:
            logging.warning(f"No plan found with ID {plan_id} to delete.")
            return False
        logging.info(f"Plan ID {plan_id} deleted successfully.")
        return True

    # --- Subscriptions ---

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions s WHERE s.id = ?",
                (subscription_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logging.error(f"Database error in get_subscription for ID {subscription_id}: {e}", exc_info=True)
            raise StorageError(f"Could not load subscription {subscription_id}.") from e
        return _row_to_subscription(row) if row else None

    def get_subscriptions_for_members(self, member_ids: List[int]) -> List[Subscription]:
        """Newest first."""
        if not member_ids:
            return []
        placeholders = ", ".join("?" for _ in member_ids)
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions s
                WHERE s.member_id IN ({placeholders})
                ORDER BY s.created_at DESC, s.id DESC
                """,
                tuple(member_ids),
            )
            return [_row_to_subscription(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error listing subscriptions for members {member_ids}: {e}", exc_info=True)
            raise StorageError("Could not list subscriptions.") from e

    def get_subscriptions_for_member(self, member_id: int) -> List[Subscription]:
        return self.get_subscriptions_for_members([member_id])

    def get_all_subscriptions(self, status_filter: Optional[str] = None) -> List[Subscription]:
        sql_select = f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions s"
        params: Tuple = ()
        if status_filter:
            sql_select += " WHERE s.status = ?"
            params = (status_filter,)
        sql_select += " ORDER BY s.created_at DESC, s.id DESC"
        try:
            cursor = self.conn.cursor()
            cursor.execute(sql_select, params)
            return [_row_to_subscription(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error in get_all_subscriptions: {e}", exc_info=True)
            raise StorageError("Could not list subscriptions.") from e

    def _insert_payment(self, cursor: sqlite3.Cursor, payment: Payment) -> int:
        cursor.execute(
            """
            INSERT INTO payments (member_id, subscription_id, amount, method, status,
                                  transaction_id, invoice_number, payment_date)
            VALUES (?, NULL, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment.member_id,
                payment.amount,
                payment.method,
                payment.status,
                payment.transaction_id,
                payment.invoice_number,
                payment.payment_date,
            ),
        )
        return cursor.lastrowid

    def _insert_subscription(self, cursor: sqlite3.Cursor, subscription: Subscription) -> int:
        cursor.execute(
            """
            INSERT INTO subscriptions (member_id, plan_name, plan_duration, plan_price,
                                       start_date, end_date, status, payment_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription.member_id,
                subscription.plan.name,
                subscription.plan.duration,
                subscription.plan.price,
                subscription.start_date,
                subscription.end_date,
                subscription.status,
                subscription.payment_id,
                subscription.created_at,
            ),
        )
        return cursor.lastrowid

    def _link_payment(self, cursor: sqlite3.Cursor, payment_id: int, subscription_id: int) -> None:
        cursor.execute(
            "UPDATE payments SET subscription_id = ? WHERE id = ? AND subscription_id IS NULL",
            (subscription_id, payment_id),
        )

    def _supersede_live_subscriptions(
        self, cursor: sqlite3.Cursor, member_id: int, policy: str
    ) -> List[int]:
        placeholders = ", ".join("?" for _ in LIVE_STATUSES)
        cursor.execute(
            f"SELECT id FROM subscriptions WHERE member_id = ? AND status IN ({placeholders}) ORDER BY id",
            (member_id, *LIVE_STATUSES),
        )
        live_ids = [row["id"] for row in cursor.fetchall()]
        if not live_ids:
            return []
        if policy == "reject":
            raise ActiveSubscriptionError(
                f"Member {member_id} already holds subscription(s) {live_ids}."
            )
        cursor.execute(
            f"UPDATE subscriptions SET status = ? WHERE member_id = ? AND status IN ({placeholders})",
            (CANCELLED, member_id, *LIVE_STATUSES),
        )
        return live_ids

    def _swap_current_subscription(
        self,
        cursor: sqlite3.Cursor,
        member_id: int,
        expected_version: int,
        previous_id: Optional[int],
        new_id: int,
    ) -> None:
        cursor.execute(
            """
            UPDATE members SET current_subscription_id = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            (new_id, member_id, expected_version),
        )
        if cursor.rowcount == 0:
            raise ConcurrentModificationError(
                f"Member {member_id} changed since version {expected_version}."
            )
        if previous_id is not None and previous_id != new_id:
            cursor.execute(
                """
                INSERT OR IGNORE INTO member_subscription_history (member_id, subscription_id, position)
                SELECT ?, ?, COALESCE(MAX(position), 0) + 1
                FROM member_subscription_history WHERE member_id = ?
                """,
                (member_id, previous_id, member_id),
            )

    def record_purchase(
        self,
        member: Member,
        payment: Payment,
        subscription: Subscription,
        policy: str = "supersede",
    ) -> List[int]:
        """Writes payment, subscription, back-link and member pointers as one transaction.

        Steps: insert payment, insert subscription (referencing the payment),
        back-link the payment, supersede live subscriptions, move the previous
        current subscription into history and point the member at the new one.
        The member update is conditional on member.version.

        Fills in payment.id, subscription.id and the links on the passed objects.
        Returns the ids of subscriptions that were superseded.
        Raises ActiveSubscriptionError (policy "reject"), ConcurrentModificationError
        or StorageError; every one of them leaves the database untouched.
        """
        cursor = self.conn.cursor()
        try:
            self._begin()
            superseded = self._supersede_live_subscriptions(cursor, member.id, policy)
            payment_id = self._insert_payment(cursor, payment)
            subscription.payment_id = payment_id
            subscription_id = self._insert_subscription(cursor, subscription)
            self._link_payment(cursor, payment_id, subscription_id)
            self._swap_current_subscription(
                cursor,
                member.id,
                member.version,
                member.current_subscription_id,
                subscription_id,
            )
            self.conn.commit()
        except (ActiveSubscriptionError, ConcurrentModificationError):
            self.conn.rollback()
            raise
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Purchase transaction failed for member {member.id}, plan '{subscription.plan.name}' "
                f"(price {subscription.plan.price}): {e}",
                exc_info=True,
            )
            raise StorageError("Could not record the subscription purchase.") from e

        payment.id = payment_id
        payment.subscription_id = subscription_id
        subscription.id = subscription_id
        logging.info(
            f"Subscription {subscription_id} (payment {payment_id}, {payment.transaction_id}) "
            f"created for member {member.id}; superseded {superseded}."
        )
        return superseded

    def update_subscription_status(
        self,
        subscription_id: int,
        from_status: str,
        to_status: str,
        member_id: Optional[int] = None,
    ) -> bool:
        """Compare-and-set on the status. When member_id is given the update is
        scoped to that owner as well. Returns True if a row changed.
        """
        sql_update = "UPDATE subscriptions SET status = ? WHERE id = ? AND status = ?"
        params = [to_status, subscription_id, from_status]
        if member_id is not None:
            sql_update += " AND member_id = ?"
            params.append(member_id)
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql_update, tuple(params))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error moving subscription {subscription_id} from {from_status} to {to_status}: {e}",
                exc_info=True,
            )
            raise StorageError(f"Could not update subscription {subscription_id}.") from e
        changed = cursor.rowcount == 1
        if changed:
            logging.info(f"Subscription {subscription_id}: {from_status} -> {to_status}.")
        return changed

    def delete_subscription_cascade(self, subscription_id: int) -> bool:
        """Deletes the subscription and its payment and cleans the owner's pointers.
        Returns False if the subscription does not exist.
        """
        cursor = self.conn.cursor()
        try:
            self._begin()
            cursor.execute(
                "SELECT member_id, payment_id FROM subscriptions WHERE id = ?",
                (subscription_id,),
            )
            row = cursor.fetchone()
            if not row:
                self.conn.rollback()
                logging.warning(f"No subscription found with ID {subscription_id} to delete.")
                return False
            member_id = row["member_id"]
            cursor.execute(
                """
                UPDATE members SET
                    current_subscription_id = CASE
                        WHEN current_subscription_id = ? THEN NULL
                        ELSE current_subscription_id
                    END,
                    version = version + 1
                WHERE id = ?
                """,
                (subscription_id, member_id),
            )
            cursor.execute(
                "DELETE FROM member_subscription_history WHERE member_id = ? AND subscription_id = ?",
                (member_id, subscription_id),
            )
            cursor.execute(
                "DELETE FROM payments WHERE subscription_id = ? OR id = ?",
                (subscription_id, row["payment_id"]),
            )
            deleted_payments = cursor.rowcount
            cursor.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
            self.conn.commit()
            logging.info(
                f"Subscription {subscription_id} deleted with {deleted_payments} payment(s); "
                f"member {member_id} pointers cleaned."
            )
            return True
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error while deleting subscription {subscription_id}: {e}",
                exc_info=True,
            )
            raise StorageError(f"Could not delete subscription {subscription_id}.") from e

    def expire_overdue_subscriptions(self, now: str) -> int:
        """Moves every active subscription whose end date is before now to expired.
        Paused and cancelled subscriptions are left alone.
        Returns the number of subscriptions expired.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE subscriptions SET status = ? WHERE status = 'active' AND end_date < ?",
                (EXPIRED, now),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error while expiring subscriptions: {e}", exc_info=True)
            raise StorageError("Could not expire subscriptions.") from e
        return cursor.rowcount

    def check_member_aggregate(self, member_id: int) -> List[str]:
        """Returns a description of every broken current/history invariant (empty if consistent)."""
        member = self.get_member(member_id)
        if member is None:
            return [f"member {member_id} does not exist"]
        problems = []
        history = member.subscription_history
        if len(history) != len(set(history)):
            problems.append(f"duplicate ids in history: {history}")
        if member.current_subscription_id is not None and member.current_subscription_id in history:
            problems.append(f"current subscription {member.current_subscription_id} also in history")
        owned = {s.id for s in self.get_subscriptions_for_member(member_id)}
        referenced = set(history)
        if member.current_subscription_id is not None:
            referenced.add(member.current_subscription_id)
        for sub_id in sorted(referenced - owned):
            problems.append(f"subscription {sub_id} is referenced but not owned by the member")
        for sub_id in sorted(owned - referenced):
            problems.append(f"subscription {sub_id} is neither current nor in history")
        return problems

    # --- Payments ---

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(f"SELECT {PAYMENT_COLUMNS} FROM payments p WHERE p.id = ?", (payment_id,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logging.error(f"Database error in get_payment for ID {payment_id}: {e}", exc_info=True)
            raise StorageError(f"Could not load payment {payment_id}.") from e
        return _row_to_payment(row) if row else None

    def get_payments(self, member_id: Optional[int] = None) -> List[Payment]:
        """All payments, or one member's, newest first."""
        sql_select = f"SELECT {PAYMENT_COLUMNS} FROM payments p"
        params: Tuple = ()
        if member_id is not None:
            sql_select += " WHERE p.member_id = ?"
            params = (member_id,)
        sql_select += " ORDER BY p.payment_date DESC, p.id DESC"
        try:
            cursor = self.conn.cursor()
            cursor.execute(sql_select, params)
            return [_row_to_payment(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error while fetching payments: {e}", exc_info=True)
            raise StorageError("Could not list payments.") from e

    def get_payment_rows_for_report(self, start_date: str, end_date: str) -> List[Dict]:
        """
        Fetches completed payments between two timestamps (inclusive), joined with
        the plan snapshot of the subscription they paid for.
        Returns a list of dictionaries, one per payment.
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT p.payment_date, p.amount, p.method, p.member_id,
                       s.plan_name
                FROM payments p
                LEFT JOIN subscriptions s ON s.id = p.subscription_id
                WHERE p.status = 'completed' AND p.payment_date BETWEEN ? AND ?
                ORDER BY p.payment_date ASC
                """,
                (start_date, end_date),
            )
            column_names = [description[0] for description in cursor.description]
            return [dict(zip(column_names, row)) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(
                f"Database error while fetching report data for {start_date} to {end_date}: {e}",
                exc_info=True,
            )
            raise StorageError("Could not fetch report data.") from e
