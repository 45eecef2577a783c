"""Tests for email persistence helpers (psycopg2 mocked)."""
from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from mailflow.db import connection
from mailflow.db.models import Email


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def mock_connection(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor

    @contextmanager
    def fake_get_connection():
        yield conn

    with patch.object(connection, "get_connection", fake_get_connection):
        yield conn


class TestGetConnection:

    def test_commits_and_closes(self):
        conn = MagicMock()
        with patch("mailflow.db.connection.psycopg2.connect", return_value=conn):
            with connection.get_connection() as c:
                assert c is conn

        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_rolls_back_on_error(self):
        conn = MagicMock()
        with patch("mailflow.db.connection.psycopg2.connect", return_value=conn):
            with pytest.raises(RuntimeError):
                with connection.get_connection():
                    raise RuntimeError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()


class TestUpsertEmails:

    def test_upserts_batch(self, mock_connection, cursor):
        emails = [
            Email(gmail_id="a", thread_id="t1", subject="Hi", labels=["INBOX"],
                  date=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            Email(gmail_id="b", thread_id="t2"),
        ]

        with patch("mailflow.db.connection.execute_values") as mock_ev:
            count = connection.upsert_emails("user-1", emails)

        assert count == 2
        cur_arg, sql, values = mock_ev.call_args.args
        assert cur_arg is cursor
        assert "ON CONFLICT (gmail_id, user_id) DO UPDATE" in sql
        assert values[0][:4] == ("a", "user-1", "t1", "Hi")
        assert values[0][9].adapted == ["INBOX"]

    def test_empty_batch_skips_database(self, mock_connection):
        assert connection.upsert_emails("user-1", []) == 0
        mock_connection.cursor.assert_not_called()

    def test_email_count(self, mock_connection, cursor):
        cursor.fetchone.return_value = (42,)

        assert connection.get_email_count("user-1") == 42
        assert cursor.execute.call_args.args[1] == ("user-1",)
