"""PostgreSQL database connection and email storage."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List

import psycopg2
from psycopg2.extras import Json, execute_values

from ..config import get_database_url
from .models import Email


@contextmanager
def get_connection() -> Generator:
    """Get a database connection context manager (commit on success, rollback on error)."""
    conn = psycopg2.connect(get_database_url())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Initialize database schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    with open(schema_path) as f:
        schema_sql = f.read()

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)


def upsert_emails(user_id: str, emails: List[Email]) -> int:
    """Bulk insert or update fetched emails for a user. Returns count written."""
    if not emails:
        return 0

    sql = """
    INSERT INTO emails (
        gmail_id, user_id, thread_id,
        subject, sender, recipient,
        snippet, body, date, labels
    ) VALUES %s
    ON CONFLICT (gmail_id, user_id) DO UPDATE SET
        thread_id = EXCLUDED.thread_id,
        subject = EXCLUDED.subject,
        sender = EXCLUDED.sender,
        recipient = EXCLUDED.recipient,
        snippet = EXCLUDED.snippet,
        body = EXCLUDED.body,
        date = EXCLUDED.date,
        labels = EXCLUDED.labels,
        updated_at = NOW()
    """

    values = [
        (
            e.gmail_id, user_id, e.thread_id,
            e.subject, e.sender, e.recipient,
            e.snippet, e.body, e.date, Json(e.labels),
        )
        for e in emails
    ]

    with get_connection() as conn:
        with conn.cursor() as cur:
            execute_values(cur, sql, values)
            return len(emails)


def get_email_count(user_id: str) -> int:
    """Get stored email count for a user."""
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM emails WHERE user_id = %s", (user_id,))
            return cur.fetchone()[0]
