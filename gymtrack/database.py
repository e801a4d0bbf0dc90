import logging
import os
import sqlite3
from datetime import datetime, timezone

from . import config

DB_FILE = config.DB_FILE

DEFAULT_PLANS = [
    ("Basic Plan", 1, 999),
    ("Standard Plan", 3, 2499),
    ("Premium Plan", 6, 4499),
    ("Annual Plan", 12, 7999),
]

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('admin', 'trainer', 'member')),
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        phone TEXT,
        is_active BOOLEAN NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS trainers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,
        specialization TEXT,
        experience INTEGER NOT NULL DEFAULT 0,
        certifications TEXT,
        join_date TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS plans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        duration_months INTEGER NOT NULL CHECK(duration_months > 0),
        price INTEGER NOT NULL CHECK(price > 0),
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,
        height REAL,
        weight REAL,
        age INTEGER,
        gender TEXT CHECK(gender IN ('male', 'female', 'other')),
        goal TEXT,
        medical_conditions TEXT,
        assigned_trainer_id INTEGER,
        current_subscription_id INTEGER,
        join_date TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY (assigned_trainer_id) REFERENCES trainers(id) ON DELETE SET NULL,
        FOREIGN KEY (current_subscription_id) REFERENCES subscriptions(id)
            DEFERRABLE INITIALLY DEFERRED
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL,
        plan_name TEXT NOT NULL,
        plan_duration INTEGER NOT NULL CHECK(plan_duration > 0),
        plan_price INTEGER NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK(status IN ('active', 'paused', 'expired', 'cancelled')),
        payment_id INTEGER,
        created_at TEXT NOT NULL,
        CHECK (end_date > start_date),
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY (payment_id) REFERENCES payments(id) DEFERRABLE INITIALLY DEFERRED
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL,
        subscription_id INTEGER,
        amount INTEGER NOT NULL,
        method TEXT NOT NULL CHECK(method IN ('cash', 'card', 'upi', 'bank-transfer')),
        status TEXT NOT NULL DEFAULT 'completed'
            CHECK(status IN ('pending', 'completed', 'failed')),
        transaction_id TEXT NOT NULL UNIQUE,
        invoice_number TEXT NOT NULL UNIQUE,
        payment_date TEXT NOT NULL,
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY (subscription_id) REFERENCES subscriptions(id)
            DEFERRABLE INITIALLY DEFERRED
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS member_subscription_history (
        member_id INTEGER NOT NULL,
        subscription_id INTEGER NOT NULL,
        position INTEGER NOT NULL,
        UNIQUE (member_id, subscription_id),
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY (subscription_id) REFERENCES subscriptions(id)
            ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS schedules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL,
        trainer_id INTEGER,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (end_date >= start_date),
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY (trainer_id) REFERENCES trainers(id) ON DELETE SET NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS schedule_routines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        schedule_id INTEGER NOT NULL,
        day TEXT NOT NULL CHECK(day IN ('Monday', 'Tuesday', 'Wednesday', 'Thursday',
                                        'Friday', 'Saturday', 'Sunday')),
        position INTEGER NOT NULL,
        UNIQUE (schedule_id, day),
        FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS schedule_exercises (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        routine_id INTEGER NOT NULL,
        position INTEGER NOT NULL,
        name TEXT NOT NULL,
        sets INTEGER NOT NULL CHECK(sets > 0),
        reps INTEGER NOT NULL CHECK(reps > 0),
        weight REAL,
        notes TEXT,
        completed BOOLEAN NOT NULL DEFAULT 0,
        UNIQUE (routine_id, position),
        FOREIGN KEY (routine_id) REFERENCES schedule_routines(id) ON DELETE CASCADE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_status_end ON subscriptions(status, end_date);",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_member ON subscriptions(member_id);",
    "CREATE INDEX IF NOT EXISTS idx_payments_member ON payments(member_id);",
    "CREATE INDEX IF NOT EXISTS idx_schedules_member ON schedules(member_id);",
]


def connect(db_name: str) -> sqlite3.Connection:
    """Opens a connection with row access by name and foreign keys enforced."""
    conn = sqlite3.connect(db_name, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_database(db_name: str):
    """
    Connects to an SQLite database and creates the necessary tables if they don't exist.
    Args:
        db_name (str): The name of the database file (e.g., 'gym_data.db' or ':memory:').
    Returns the open connection, or None if the schema could not be created.
    """
    conn = None
    try:
        conn = connect(db_name)
        cursor = conn.cursor()
        for statement in SCHEMA:
            cursor.execute(statement)
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Failed to create database schema in {db_name}: {e}", exc_info=True)
        if conn:
            conn.close()
        return None
    return conn


def seed_default_plans(conn: sqlite3.Connection) -> int:
    """Inserts the default catalog when no plan exists yet. Returns the number inserted."""
    cursor = conn.cursor()
    cursor.execute("SELECT COUNT(*) FROM plans")
    if cursor.fetchone()[0] > 0:
        logging.info("Plans already exist, skipping seed.")
        return 0
    now = datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds")
    cursor.executemany(
        "INSERT INTO plans (name, duration_months, price, created_at) VALUES (?, ?, ?, ?)",
        [(name, duration, price, now) for name, duration, price in DEFAULT_PLANS],
    )
    conn.commit()
    logging.info(f"Seeded {len(DEFAULT_PLANS)} default plans.")
    return len(DEFAULT_PLANS)


def initialize_database(db_path: str = DB_FILE) -> None:
    """Creates the data directory, the schema and the default plans."""
    data_dir = os.path.dirname(db_path)
    if data_dir and not os.path.exists(data_dir):
        os.makedirs(data_dir)
        logging.info(f"Created data directory: {data_dir}")
    conn = create_database(db_path)
    if conn is None:
        raise RuntimeError(f"Could not initialize database at {db_path}")
    try:
        seed_default_plans(conn)
    finally:
        conn.close()
