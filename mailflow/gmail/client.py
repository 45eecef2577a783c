"""
Gmail API client.

Thin async wrapper over the Gmail REST API (aiohttp). It performs exactly one
HTTP request per call and raises GmailApiError on non-2xx responses; retries
and concurrency are the caller's business (see mailflow.utils.retry and
mailflow.gmail.background_sync).
"""

import base64
import json
import logging
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

import aiohttp
from pydantic import BaseModel, Field

from ..db.models import Email
from .html_to_text import html_to_text

logger = logging.getLogger(__name__)


class GmailApiError(Exception):
    """Non-2xx response from the Gmail API.

    Carries the HTTP status as .status so the retry predicates can classify it.
    """

    def __init__(self, status: int, message: str, reason: Optional[str] = None):
        super().__init__(f"Gmail API error {status}: {message}")
        self.status = status
        self.reason = reason


class MessagePage(BaseModel):
    """One page of message ids from users.messages.list."""

    ids: List[str] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class GmailClient:
    """Client for listing and fetching a user's Gmail messages."""

    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

    # (connect_timeout, read_timeout) in seconds
    DEFAULT_TIMEOUT = (10, 30)

    # Gmail's maximum page size for messages.list
    MAX_PAGE_SIZE = 500

    def __init__(self, access_token: Optional[str] = None, timeout: tuple = None):
        self.access_token = access_token or os.getenv("GMAIL_ACCESS_TOKEN")
        if not self.access_token:
            raise ValueError("GMAIL_ACCESS_TOKEN not set")

        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with auth headers and timeouts."""
        timeout = aiohttp.ClientTimeout(
            connect=self.timeout[0],
            sock_read=self.timeout[1],
            total=self.timeout[0] + self.timeout[1],
        )
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        return aiohttp.ClientSession(timeout=timeout, headers=headers)

    @property
    def session(self) -> aiohttp.ClientSession:
        """Shared session, created lazily so the client can be built outside a loop."""
        if self._session is None or self._session.closed:
            self._session = self._get_aiohttp_session()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "GmailClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    def _error_details(body: str) -> tuple:
        """Extract (message, reason) from a Gmail error body, if it is JSON."""
        try:
            error = json.loads(body).get("error", {})
        except (ValueError, AttributeError):
            return body[:200], None
        if not isinstance(error, dict):
            return str(error), None
        errors = error.get("errors") or [{}]
        return error.get("message", ""), errors[0].get("reason")

    async def _get(self, endpoint: str, params: Optional[list] = None) -> dict:
        url = f"{self.BASE_URL}{endpoint}"
        async with self.session.get(url, params=params) as response:
            remaining = response.headers.get("X-RateLimit-Remaining")
            if remaining is not None:
                try:
                    if int(remaining) < 100:
                        logger.warning(f"Rate limit low: {remaining} requests remaining on {endpoint}")
                except (ValueError, TypeError):
                    pass  # Ignore invalid header values

            if response.status >= 400:
                message, reason = self._error_details(await response.text())
                raise GmailApiError(response.status, message or str(response.reason), reason)
            return await response.json()

    async def list_message_ids(
        self,
        query: Optional[str] = None,
        page_token: Optional[str] = None,
        max_results: Optional[int] = None,
        label_ids: Optional[List[str]] = None,
    ) -> MessagePage:
        """
        List one page of message ids.

        Args:
            query: Gmail search query (e.g. "after:1700000000 -in:spam")
            page_token: Token from the previous page, None for the first page
            max_results: Page size, capped at MAX_PAGE_SIZE
            label_ids: Only messages carrying all of these labels

        Returns:
            MessagePage with ids and the token for the next page (None at the end)
        """
        page_size = min(max_results or self.MAX_PAGE_SIZE, self.MAX_PAGE_SIZE)
        params = [("maxResults", str(page_size))]
        if query:
            params.append(("q", query))
        if page_token:
            params.append(("pageToken", page_token))
        for label_id in label_ids or []:
            params.append(("labelIds", label_id))

        data = await self._get("/messages", params=params)
        return MessagePage(
            ids=[m["id"] for m in data.get("messages", []) if m.get("id")],
            next_page_token=data.get("nextPageToken") or None,
        )

    async def get_message(self, message_id: str) -> Email:
        """Fetch a single message in full format and parse it."""
        data = await self._get(f"/messages/{message_id}", params=[("format", "full")])
        return self.parse_message(data)

    @staticmethod
    def _decode_body(data: str) -> str:
        """Decode a base64url message part body."""
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @classmethod
    def extract_body(cls, payload: Optional[dict]) -> str:
        """
        Extract the readable body from a message payload.

        Single-part bodies are returned as is. For multipart messages
        text/plain wins over text/html (converted to text); nested parts are
        searched when neither is present at the top level.
        """
        if not payload:
            return ""

        body_data = (payload.get("body") or {}).get("data")
        if body_data:
            text = cls._decode_body(body_data)
            if payload.get("mimeType") == "text/html":
                return html_to_text(text)
            return text

        text_body = ""
        html_body = ""
        for part in payload.get("parts") or []:
            part_data = (part.get("body") or {}).get("data")
            mime_type = part.get("mimeType")
            if mime_type == "text/plain" and part_data:
                text_body = cls._decode_body(part_data)
            elif mime_type == "text/html" and part_data:
                html_body = cls._decode_body(part_data)
            elif part.get("parts"):
                nested = cls.extract_body(part)
                if nested and not text_body:
                    text_body = nested

        if text_body:
            return text_body
        if html_body:
            return html_to_text(html_body)
        return ""

    @staticmethod
    def _parse_date(value: str) -> datetime:
        if value:
            try:
                parsed = parsedate_to_datetime(value)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (ValueError, TypeError):
                logger.debug(f"Unparseable Date header: {value!r}")
        return datetime.now(timezone.utc)

    @classmethod
    def parse_message(cls, message: dict) -> Email:
        """Parse a raw users.messages.get response into an Email."""
        if not message.get("id") or not message.get("threadId"):
            raise ValueError("Gmail message is missing id or threadId")

        payload = message.get("payload") or {}
        headers: dict = {}
        for header in payload.get("headers") or []:
            # First occurrence wins (e.g. the outermost Subject)
            headers.setdefault((header.get("name") or "").lower(), header.get("value") or "")

        return Email(
            gmail_id=message["id"],
            thread_id=message["threadId"],
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            recipient=headers.get("to", ""),
            snippet=message.get("snippet", ""),
            body=cls.extract_body(payload),
            date=cls._parse_date(headers.get("date", "")),
            labels=message.get("labelIds") or [],
        )
