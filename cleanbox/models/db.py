"""
SQLite helpers and schema definitions for CleanBox.

This module handles the database plumbing and the simple tables:
- Creating database tables
- Managing database connections (cached on Flask's `g` inside an app context)
- CRUD helpers for email accounts, emails, promo codes and scan jobs

Package events and packages live in `models.packages`; they share the
connection helpers defined here.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from flask import g

from cleanbox.config import DB_PATH

logger = logging.getLogger(__name__)


class ScanStatus(str, Enum):
    """Lifecycle of a scan job: PENDING -> IN_PROGRESS -> COMPLETED | FAILED."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Key for storing database connection in Flask's g object
_CONNECTION_KEY = "cleanbox_db_conn"

_db_path: str = str(DB_PATH)

DDL_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS email_accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT,
        google_user_id TEXT,
        provider TEXT DEFAULT 'google',
        access_token TEXT,
        refresh_token TEXT,
        token_expiry TEXT,
        auto_delete_emails INTEGER DEFAULT 0,
        auto_scan_enabled INTEGER DEFAULT 0,
        last_auto_scan_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS emails (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_account_id INTEGER NOT NULL,
        gmail_message_id TEXT NOT NULL UNIQUE,
        subject TEXT,
        sender TEXT,
        recipient TEXT,
        sent_at TEXT,
        snippet TEXT,
        body TEXT,
        size INTEGER,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (email_account_id) REFERENCES email_accounts(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS promo_codes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_id INTEGER NOT NULL,
        code TEXT,
        discount_raw TEXT,
        brand TEXT,
        summary TEXT,
        category TEXT DEFAULT 'Other',
        url TEXT,
        expires_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS packages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_id INTEGER,
        order_number TEXT NOT NULL UNIQUE,
        tracking_number TEXT NOT NULL,
        tracking_numbers TEXT,
        tracking_url TEXT,
        carrier TEXT,
        carrier_raw TEXT,
        status TEXT NOT NULL DEFAULT 'unknown',
        brand TEXT,
        item_name TEXT,
        items TEXT,
        order_date TEXT,
        estimated_delivery TEXT,
        actual_delivery TEXT,
        current_location TEXT,
        destination_city TEXT,
        destination_state TEXT,
        destination_zip TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS package_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        package_id INTEGER,
        email_id INTEGER UNIQUE,
        order_number TEXT,
        tracking_number TEXT,
        status TEXT NOT NULL DEFAULT 'unknown',
        location TEXT,
        description TEXT,
        event_timestamp TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (package_id) REFERENCES packages(id) ON DELETE SET NULL,
        FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scan_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_account_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        emails_scanned INTEGER,
        error TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (email_account_id) REFERENCES email_accounts(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(email_account_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_package ON package_events(package_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_order ON package_events(order_number)",
    "CREATE INDEX IF NOT EXISTS idx_scan_jobs_account ON scan_jobs(email_account_id, status)",
]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def configure(path: str) -> None:
    """Point the module at a database file. Called once by `init_app`."""
    global _db_path
    _db_path = path


def _create_connection() -> sqlite3.Connection:
    """Create a new SQLite connection with proper settings for concurrency."""
    conn = sqlite3.connect(_db_path, timeout=20.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    # WAL allows multiple readers and one writer (scan workers read while writing)
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.OperationalError:
        pass
    return conn


def get_connection() -> sqlite3.Connection:
    """
    Return a cached SQLite connection stored on the Flask `g` object.

    Inside an app context (request, CLI command, queue worker) the connection is
    reused for the whole context. Outside one, a fresh connection is returned.
    """
    try:
        conn = getattr(g, _CONNECTION_KEY, None)
    except RuntimeError:
        # No Flask application context
        return _create_connection()

    if conn is None:
        conn = _create_connection()
        setattr(g, _CONNECTION_KEY, conn)
    return conn


def close_connection(_: Optional[BaseException] = None) -> None:
    """Close the cached SQLite connection if it exists."""
    try:
        conn = getattr(g, _CONNECTION_KEY, None)
    except RuntimeError:
        return
    if conn is not None:
        conn.close()
        if hasattr(g, _CONNECTION_KEY):
            delattr(g, _CONNECTION_KEY)


@contextmanager
def cursor() -> Iterator[sqlite3.Cursor]:
    """
    Context manager yielding a SQLite cursor with automatic commit.

    Each `with cursor()` block is one transaction: committed on success,
    rolled back on error. Opening the transaction is retried with a short
    backoff while another writer holds the lock.

    Usage:
        with cursor() as cur:
            cur.execute("UPDATE packages SET status = ? WHERE id = ?", (...))
    """
    max_retries = 3
    conn = get_connection()
    for attempt in range(1, max_retries + 1):
        if conn.in_transaction:
            break
        try:
            conn.execute("BEGIN IMMEDIATE")
            break
        except sqlite3.OperationalError as exc:
            if "database is locked" in str(exc).lower() and attempt < max_retries:
                time.sleep(0.1 * attempt)  # 0.1s, 0.2s
                continue
            raise

    cur = conn.cursor()
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


def create_tables() -> None:
    """Create all tables defined in `DDL_STATEMENTS`. Safe to call repeatedly."""
    conn = get_connection()
    for statement in DDL_STATEMENTS:
        conn.execute(statement)
    conn.commit()


def ensure_tables() -> None:
    """Create tables immediately."""
    create_tables()


def init_app(app) -> None:
    """Point at the configured database and close connections on teardown."""
    configure(app.config["DATABASE_PATH"])

    @app.teardown_appcontext
    def teardown(exception):  # type: ignore[unused-ignore]
        close_connection(exception)


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Email account helpers
# ---------------------------------------------------------------------------

def create_email_account(
    email: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    token_expiry: Optional[str] = None,
    google_user_id: Optional[str] = None,
    auto_delete_emails: bool = False,
    auto_scan_enabled: bool = False,
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO email_accounts (
                email, google_user_id, access_token, refresh_token, token_expiry,
                auto_delete_emails, auto_scan_enabled, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email,
                google_user_id,
                access_token,
                refresh_token,
                token_expiry,
                int(auto_delete_emails),
                int(auto_scan_enabled),
                utcnow_iso(),
            ),
        )
        account_id = cur.lastrowid
    return get_email_account(account_id)  # type: ignore[return-value]


def get_email_account(account_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM email_accounts WHERE id = ?", (account_id,)).fetchone()
    return _row(row)


def fetch_auto_scan_accounts() -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM email_accounts WHERE auto_scan_enabled = 1 ORDER BY id"
    ).fetchall()
    return [dict(row) for row in rows]


def update_account_tokens(
    account_id: int,
    access_token: str,
    refresh_token: Optional[str],
    token_expiry: Optional[str],
) -> None:
    """Persist refreshed OAuth tokens. A missing refresh token keeps the stored one."""
    with cursor() as cur:
        cur.execute(
            """
            UPDATE email_accounts
            SET access_token = ?,
                refresh_token = COALESCE(?, refresh_token),
                token_expiry = ?
            WHERE id = ?
            """,
            (access_token, refresh_token, token_expiry, account_id),
        )


def mark_auto_scanned(account_id: int) -> None:
    with cursor() as cur:
        cur.execute(
            "UPDATE email_accounts SET last_auto_scan_at = ? WHERE id = ?",
            (utcnow_iso(), account_id),
        )


# ---------------------------------------------------------------------------
# Email helpers
# ---------------------------------------------------------------------------

def create_email(
    email_account_id: int,
    gmail_message_id: str,
    subject: Optional[str],
    sender: Optional[str],
    recipient: Optional[str],
    sent_at: Optional[str],
    snippet: Optional[str],
    body: Optional[str],
    size: Optional[int] = None,
) -> Dict[str, Any]:
    """Insert an email; an existing gmail_message_id is left untouched."""
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO emails (
                email_account_id, gmail_message_id, subject, sender, recipient,
                sent_at, snippet, body, size, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(gmail_message_id) DO NOTHING
            """,
            (
                email_account_id,
                gmail_message_id,
                subject,
                sender,
                recipient,
                sent_at,
                snippet,
                body,
                size,
                utcnow_iso(),
            ),
        )
    return get_email_by_message_id(gmail_message_id)  # type: ignore[return-value]


def get_email_by_id(email_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
    return _row(row)


def get_email_by_message_id(gmail_message_id: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM emails WHERE gmail_message_id = ?",
        (gmail_message_id,),
    ).fetchone()
    return _row(row)


def get_existing_message_ids(message_ids: List[str]) -> List[str]:
    """Return the subset of message ids that are already stored.

    SQLite supports up to 999 parameters per query, so the lookup is chunked.
    """
    if not message_ids:
        return []

    conn = get_connection()
    existing: List[str] = []
    chunk_size = 999
    for i in range(0, len(message_ids), chunk_size):
        chunk = message_ids[i:i + chunk_size]
        placeholders = ",".join("?" * len(chunk))
        rows = conn.execute(
            f"SELECT gmail_message_id FROM emails WHERE gmail_message_id IN ({placeholders})",
            tuple(chunk),
        ).fetchall()
        existing.extend(row["gmail_message_id"] for row in rows)
    return existing


def update_email_body(email_id: int, body: Optional[str], size: Optional[int]) -> None:
    """Backfill the body of an already stored email (the only mutable column)."""
    with cursor() as cur:
        cur.execute(
            "UPDATE emails SET body = ?, size = COALESCE(?, size) WHERE id = ?",
            (body, size, email_id),
        )


def delete_email(email_id: int) -> None:
    """Delete a stored email. Its promo codes are deleted with it (ON DELETE CASCADE)."""
    with cursor() as cur:
        cur.execute("DELETE FROM emails WHERE id = ?", (email_id,))


# ---------------------------------------------------------------------------
# Promo code helpers
# ---------------------------------------------------------------------------

def create_promo_code(
    email_id: int,
    code: Optional[str],
    discount_raw: Optional[str],
    brand: Optional[str],
    summary: Optional[str],
    category: Optional[str],
    url: Optional[str],
    expires_at: Optional[str],
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO promo_codes (
                email_id, code, discount_raw, brand, summary, category, url, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email_id,
                code,
                discount_raw,
                brand,
                summary,
                category or "Other",
                url,
                expires_at,
                utcnow_iso(),
            ),
        )
        promo_id = cur.lastrowid
    conn = get_connection()
    return dict(conn.execute("SELECT * FROM promo_codes WHERE id = ?", (promo_id,)).fetchone())


def fetch_promo_codes_for_email(email_id: int) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM promo_codes WHERE email_id = ? ORDER BY id",
        (email_id,),
    ).fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Scan job helpers
# ---------------------------------------------------------------------------

def create_scan_job(email_account_id: int) -> Dict[str, Any]:
    now = utcnow_iso()
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO scan_jobs (email_account_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (email_account_id, ScanStatus.PENDING.value, now, now),
        )
        job_id = cur.lastrowid
    return get_scan_job(job_id)  # type: ignore[return-value]


def get_scan_job(scan_job_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM scan_jobs WHERE id = ?", (scan_job_id,)).fetchone()
    return _row(row)


def get_active_scan_job(email_account_id: int) -> Optional[Dict[str, Any]]:
    """Return a PENDING or IN_PROGRESS job for the account, if any."""
    conn = get_connection()
    row = conn.execute(
        """
        SELECT * FROM scan_jobs
        WHERE email_account_id = ? AND status IN (?, ?)
        ORDER BY id DESC
        LIMIT 1
        """,
        (email_account_id, ScanStatus.PENDING.value, ScanStatus.IN_PROGRESS.value),
    ).fetchone()
    return _row(row)


def update_scan_job(
    scan_job_id: int,
    status: ScanStatus,
    emails_scanned: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    with cursor() as cur:
        cur.execute(
            """
            UPDATE scan_jobs
            SET status = ?, emails_scanned = COALESCE(?, emails_scanned), error = ?, updated_at = ?
            WHERE id = ?
            """,
            (status.value, emails_scanned, error, utcnow_iso(), scan_job_id),
        )


def dump_json(value: Any) -> Optional[str]:
    """Serialize a JSON column; None stays NULL."""
    if value is None:
        return None
    return json.dumps(value)


def load_json(value: Optional[str]) -> Any:
    """Deserialize a JSON column written by `dump_json`."""
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed JSON column value: {value[:80]}")
        return None
