"""
Package event and package persistence.

Events are raw, per-email status snapshots. Packages are the canonical
per-order records built from them by the aggregator; nothing else writes them.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from cleanbox.models.db import (
    _row,
    cursor,
    dump_json,
    get_connection,
    load_json,
    utcnow_iso,
)

# Columns the aggregator may set on a package (everything except keys/timestamps)
PACKAGE_COLUMNS = (
    "email_id",
    "order_number",
    "tracking_number",
    "tracking_numbers",
    "tracking_url",
    "carrier",
    "carrier_raw",
    "status",
    "brand",
    "item_name",
    "items",
    "order_date",
    "estimated_delivery",
    "actual_delivery",
    "current_location",
    "destination_city",
    "destination_state",
    "destination_zip",
)

_JSON_COLUMNS = ("items", "tracking_numbers")


def _decode_package(row) -> Optional[Dict[str, Any]]:
    record = _row(row)
    if record is None:
        return None
    for column in _JSON_COLUMNS:
        record[column] = load_json(record.get(column))
    if record.get("tracking_numbers") is None:
        record["tracking_numbers"] = []
    return record


def _encode_package(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(data) - set(PACKAGE_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown package columns: {sorted(unknown)}")
    encoded = dict(data)
    for column in _JSON_COLUMNS:
        if column in encoded:
            encoded[column] = dump_json(encoded[column])
    return encoded


# ---------------------------------------------------------------------------
# Package event helpers
# ---------------------------------------------------------------------------

def create_package_event(
    email_id: Optional[int],
    order_number: Optional[str],
    tracking_number: Optional[str],
    status: str,
    location: Optional[str],
    description: Optional[str],
    event_timestamp: str,
    package_id: Optional[int] = None,
) -> Dict[str, Any]:
    with cursor() as cur:
        cur.execute(
            """
            INSERT INTO package_events (
                package_id, email_id, order_number, tracking_number, status,
                location, description, event_timestamp, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                package_id,
                email_id,
                order_number,
                tracking_number,
                status,
                location,
                description,
                event_timestamp,
                utcnow_iso(),
            ),
        )
        event_id = cur.lastrowid
    return get_package_event(event_id)  # type: ignore[return-value]


def update_package_event(
    event_id: int,
    order_number: Optional[str],
    tracking_number: Optional[str],
    status: str,
    location: Optional[str],
    description: Optional[str],
    event_timestamp: str,
) -> Dict[str, Any]:
    """Overwrite an event's extracted data; its package link is kept."""
    with cursor() as cur:
        cur.execute(
            """
            UPDATE package_events
            SET order_number = ?, tracking_number = ?, status = ?, location = ?,
                description = ?, event_timestamp = ?
            WHERE id = ?
            """,
            (order_number, tracking_number, status, location, description, event_timestamp, event_id),
        )
    return get_package_event(event_id)  # type: ignore[return-value]


def get_package_event(event_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM package_events WHERE id = ?", (event_id,)).fetchone()
    return _row(row)


def get_event_by_email_id(email_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM package_events WHERE email_id = ? LIMIT 1",
        (email_id,),
    ).fetchone()
    return _row(row)


def fetch_orphan_events(email_account_id: int) -> List[Dict[str, Any]]:
    """Events not yet linked to a package whose email belongs to the account."""
    conn = get_connection()
    rows = conn.execute(
        """
        SELECT package_events.*
        FROM package_events
        JOIN emails ON emails.id = package_events.email_id
        WHERE package_events.package_id IS NULL
          AND emails.email_account_id = ?
        ORDER BY package_events.id
        """,
        (email_account_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_events_for_account(email_account_id: int) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        """
        SELECT package_events.*
        FROM package_events
        JOIN emails ON emails.id = package_events.email_id
        WHERE emails.email_account_id = ?
        ORDER BY package_events.id
        """,
        (email_account_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_events_for_package(package_id: int) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM package_events WHERE package_id = ? ORDER BY event_timestamp, id",
        (package_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def link_events_to_package(event_ids: Iterable[int], package_id: int) -> None:
    ids = list(event_ids)
    if not ids:
        return
    placeholders = ",".join("?" * len(ids))
    with cursor() as cur:
        cur.execute(
            f"UPDATE package_events SET package_id = ? WHERE id IN ({placeholders})",
            (package_id, *ids),
        )


def reset_event_links(email_account_id: int) -> int:
    """Orphan every event of the account again. Returns how many were reset."""
    with cursor() as cur:
        cur.execute(
            """
            UPDATE package_events SET package_id = NULL
            WHERE email_id IN (SELECT id FROM emails WHERE email_account_id = ?)
            """,
            (email_account_id,),
        )
        return cur.rowcount


# ---------------------------------------------------------------------------
# Package helpers
# ---------------------------------------------------------------------------

def create_package(data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a package. Raises sqlite3.IntegrityError if the order number exists."""
    encoded = _encode_package(data)
    now = utcnow_iso()
    columns = list(encoded) + ["created_at", "updated_at"]
    values = list(encoded.values()) + [now, now]
    placeholders = ",".join("?" * len(columns))
    with cursor() as cur:
        cur.execute(
            f"INSERT INTO packages ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        package_id = cur.lastrowid
    return get_package_by_id(package_id)  # type: ignore[return-value]


def update_package(package_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    encoded = _encode_package(data)
    if encoded:
        assignments = ", ".join(f"{column} = ?" for column in encoded)
        with cursor() as cur:
            cur.execute(
                f"UPDATE packages SET {assignments}, updated_at = ? WHERE id = ?",
                (*encoded.values(), utcnow_iso(), package_id),
            )
    return get_package_by_id(package_id)  # type: ignore[return-value]


def get_package_by_id(package_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM packages WHERE id = ?", (package_id,)).fetchone()
    return _decode_package(row)


def get_package_by_order_number(order_number: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM packages WHERE order_number = ?",
        (order_number,),
    ).fetchone()
    return _decode_package(row)


def fetch_packages_for_account(email_account_id: int) -> List[Dict[str, Any]]:
    """Packages reachable from the account's emails, newest activity first."""
    conn = get_connection()
    rows = conn.execute(
        """
        SELECT DISTINCT packages.*
        FROM packages
        LEFT JOIN package_events ON package_events.package_id = packages.id
        LEFT JOIN emails ON emails.id = COALESCE(package_events.email_id, packages.email_id)
        WHERE emails.email_account_id = ?
        ORDER BY packages.updated_at DESC, packages.id DESC
        """,
        (email_account_id,),
    ).fetchall()
    return [_decode_package(row) for row in rows]  # type: ignore[misc]


def delete_packages_for_account(email_account_id: int) -> int:
    """Delete the account's packages; their events fall back to orphans (SET NULL)."""
    with cursor() as cur:
        cur.execute(
            """
            DELETE FROM packages
            WHERE id IN (
                SELECT package_events.package_id
                FROM package_events
                JOIN emails ON emails.id = package_events.email_id
                WHERE emails.email_account_id = ? AND package_events.package_id IS NOT NULL
            )
            OR email_id IN (SELECT id FROM emails WHERE email_account_id = ?)
            """,
            (email_account_id, email_account_id),
        )
        return cur.rowcount
