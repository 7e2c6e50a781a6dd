"""IMAP implementation of the provider connector."""

from __future__ import annotations

import imaplib
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timedelta
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from types import TracebackType
from typing import TypeVar

from ..core.config import ImapSettings
from ..core.datetime_utils import ensure_utc, to_utc
from ..core.interfaces import ProviderAuthError, ProviderConnector, ProviderError
from ..core.models import Account, MessageRef, RawMessage

LOGGER = logging.getLogger(__name__)

FETCH_CHUNK_SIZE = 200

T = TypeVar("T")

_UID_PATTERN = re.compile(rb"UID (\d+)")
_INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "([^"]+)"')

ImapConnection = imaplib.IMAP4 | imaplib.IMAP4_SSL


class ImapError(ProviderError):
    """Wrap low level IMAP errors with additional context."""


class ImapConnector(ProviderConnector):
    """Provider connector speaking IMAP, one session per account.

    imaplib sessions are not thread-safe, so every command issued for an
    account runs under that account's lock. Sessions dropped by the server
    are discarded and reopened once before the operation is reported failed.
    """

    def __init__(
        self,
        settings: ImapSettings,
        *,
        connection_factory: Callable[[ImapSettings], ImapConnection] | None = None,
    ) -> None:
        """Initialise the connector with configuration settings."""
        self._settings = settings
        self._factory = connection_factory or _open_connection
        self._connections: dict[str, ImapConnection] = {}
        self._account_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapConnector:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure every open session is released on context exit."""
        self.close()

    # ProviderConnector API ----------------------------------------------------
    def refresh_token_if_needed(self, account: Account) -> Account:
        """Validate credentials, replacing a session the server has dropped."""
        with self._account_lock(account.id):
            existing = self._connections.get(account.id)
            if existing is not None:
                try:
                    existing.noop()
                    return account
                except (imaplib.IMAP4.error, OSError) as exc:
                    LOGGER.info(
                        "IMAP session for account %s went stale (%s); reconnecting",
                        account.id,
                        exc,
                    )
                    self._discard(account.id)
            self._require_connection(account)
        return account

    def list_message_ids_since(
        self, account: Account, since: datetime | None, until: datetime | None
    ) -> list[MessageRef]:
        """Return messages whose internal date falls in ``[since, until)``."""
        criteria = _search_criteria(since, until)
        lower = ensure_utc(since)
        upper = ensure_utc(until)

        def _search(connection: ImapConnection) -> list[MessageRef]:
            LOGGER.debug("Searching mailbox with criteria %s", criteria)
            search_args: tuple = (None, criteria)
            status, data = connection.uid("SEARCH", *search_args)
            if status != "OK":
                raise ImapError("Failed to search for message UIDs")

            raw_ids = data[0].split() if data and data[0] else []
            refs: list[MessageRef] = []
            for chunk in _chunked(raw_ids, FETCH_CHUNK_SIZE):
                uid_set = b",".join(chunk).decode()
                status_fetch, fetch_data = connection.uid(
                    "FETCH", uid_set, "(UID INTERNALDATE)"
                )
                if status_fetch != "OK":
                    raise ImapError("Failed to fetch internal dates")
                for native_id, received_at in _parse_internaldates(fetch_data):
                    if lower is not None and received_at < lower:
                        continue
                    if upper is not None and received_at >= upper:
                        continue
                    refs.append(
                        MessageRef(native_id=native_id, received_at=received_at)
                    )
            return refs

        return self._execute(account, "search", _search)

    def fetch_raw(self, account: Account, native_id: str) -> RawMessage:
        """Return the RFC822 payload for ``native_id``."""

        def _fetch(connection: ImapConnection) -> bytes:
            LOGGER.debug("Fetching RFC822 payload for UID %s", native_id)
            status, fetch_data = connection.uid("FETCH", native_id, "(RFC822)")
            if status != "OK":
                raise ImapError(f"Failed to fetch message UID {native_id}")
            payload = _extract_rfc822(fetch_data)
            if payload is None:
                raise ImapError(f"No RFC822 payload returned for UID {native_id}")
            return payload

        payload = self._execute(account, f"fetch of UID {native_id}", _fetch)
        return RawMessage(native_id=native_id, raw=payload)

    def trash(self, account: Account, native_id: str) -> None:
        """Move a message to the trash folder."""
        self._move(account, native_id, self._settings.trash_folder)

    def archive(self, account: Account, native_id: str) -> None:
        """Move a message out of the inbox into the archive folder."""
        self._move(account, native_id, self._settings.archive_folder)

    def mark_read(self, account: Account, native_id: str) -> None:
        """Set the ``\\Seen`` flag."""
        self._add_flag(account, native_id, r"(\Seen)")

    def star(self, account: Account, native_id: str) -> None:
        """Set the ``\\Flagged`` flag."""
        self._add_flag(account, native_id, r"(\Flagged)")

    def create_draft(self, account: Account, native_id: str, content: str) -> None:
        """Append a reply draft for ``native_id`` to the drafts folder."""
        original = BytesParser(policy=policy.default).parsebytes(
            self.fetch_raw(account, native_id).raw
        )
        draft = _build_reply(original, account.email_address, content)

        def _append(connection: ImapConnection) -> None:
            status, _ = connection.append(
                _quote(self._settings.drafts_folder),
                r"(\Draft)",
                imaplib.Time2Internaldate(time.time()),
                draft.as_bytes(),
            )
            if status != "OK":
                raise ImapError(f"Failed to save draft for UID {native_id}")

        self._execute(account, f"saving draft for UID {native_id}", _append)

    def close(self) -> None:
        """Terminate every open IMAP session."""
        with self._lock:
            sessions = list(self._connections.items())
            self._connections.clear()
        for account_id, connection in sessions:
            LOGGER.debug("Closing IMAP session for account %s", account_id)
            try:
                connection.close()
            except (imaplib.IMAP4.error, OSError):
                LOGGER.debug("IMAP close raised; continuing with logout")
            finally:
                try:
                    connection.logout()
                except (imaplib.IMAP4.error, OSError):
                    LOGGER.debug("IMAP logout raised; suppressing during shutdown")

    # Internal helpers ---------------------------------------------------------
    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            return self._account_locks.setdefault(account_id, threading.Lock())

    def _execute(
        self,
        account: Account,
        description: str,
        operation: Callable[[ImapConnection], T],
    ) -> T:
        """Run ``operation`` on the account session, reconnecting once if dropped."""
        with self._account_lock(account.id):
            for attempt in range(2):
                connection = self._require_connection(account)
                try:
                    return operation(connection)
                except (imaplib.IMAP4.abort, OSError) as exc:
                    self._discard(account.id)
                    if attempt:
                        raise ImapError(
                            f"IMAP session lost during {description}"
                        ) from exc
                    LOGGER.warning(
                        "IMAP session for account %s dropped during %s; reconnecting",
                        account.id,
                        description,
                    )
                except imaplib.IMAP4.error as exc:
                    raise ImapError(f"IMAP error during {description}") from exc
        raise ImapError(f"IMAP session lost during {description}")

    def _require_connection(self, account: Account) -> ImapConnection:
        """Return the account session, logging in when none is open.

        Callers hold the account lock.
        """
        with self._lock:
            existing = self._connections.get(account.id)
        if existing is not None:
            return existing

        username, password = self._credentials(account)
        try:
            connection = self._factory(self._settings)
            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
        except imaplib.IMAP4.error as exc:
            raise ProviderAuthError(f"IMAP login failed for {username}") from exc
        except OSError as exc:
            raise ImapError("Failed to connect to IMAP server") from exc

        status, _ = connection.select(self._settings.mailbox)
        if status != "OK":
            raise ImapError(f"Unable to select mailbox '{self._settings.mailbox}'")
        with self._lock:
            self._connections[account.id] = connection
        return connection

    def _credentials(self, account: Account) -> tuple[str, str]:
        password = self._settings.account_passwords.get(account.id.lower())
        if password:
            return account.email_address, password
        username = self._settings.username or account.email_address
        password = self._settings.app_password
        if not username or not password:
            raise ProviderAuthError(
                f"IMAP credentials are not configured for account {account.id}"
            )
        return username, password

    def _discard(self, account_id: str) -> None:
        with self._lock:
            connection = self._connections.pop(account_id, None)
        if connection is None:
            return
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("Logout of dropped session for %s failed", account_id)

    def _move(self, account: Account, native_id: str, folder: str) -> None:
        def _uid_move(connection: ImapConnection) -> None:
            LOGGER.debug("Moving UID %s to folder '%s'", native_id, folder)
            status, _ = connection.uid("MOVE", native_id, _quote(folder))
            if status != "OK":
                raise ImapError(f"Failed to move message UID {native_id} to {folder}")

        self._execute(account, f"moving UID {native_id}", _uid_move)

    def _add_flag(self, account: Account, native_id: str, flags: str) -> None:
        def _store(connection: ImapConnection) -> None:
            status, _ = connection.uid("STORE", native_id, "+FLAGS.SILENT", flags)
            if status != "OK":
                raise ImapError(f"Failed to set {flags} on message UID {native_id}")

        self._execute(account, f"flagging UID {native_id}", _store)


def _open_connection(settings: ImapSettings) -> ImapConnection:
    if settings.use_ssl:
        LOGGER.debug(
            "Connecting to IMAP host %s:%s via SSL", settings.host, settings.port
        )
        return imaplib.IMAP4_SSL(settings.host, settings.port)
    LOGGER.debug(
        "Connecting to IMAP host %s:%s without SSL", settings.host, settings.port
    )
    return imaplib.IMAP4(settings.host, settings.port)


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y")


def _search_criteria(since: datetime | None, until: datetime | None) -> str:
    """Build day-granular SEARCH criteria covering ``[since, until)``."""
    parts: list[str] = []
    lower = ensure_utc(since)
    upper = ensure_utc(until)
    if lower is not None:
        # SINCE compares dates in the server timezone; widen by a day.
        parts.append(f"SINCE {_imap_date(lower - timedelta(days=1))}")
    if upper is not None:
        parts.append(f"BEFORE {_imap_date(upper + timedelta(days=2))}")
    return f"({' '.join(parts)})" if parts else "ALL"


def _parse_internaldates(
    fetch_data: Iterable[tuple[bytes, bytes] | bytes | None],
) -> Iterator[tuple[str, datetime]]:
    for entry in fetch_data:
        line = entry[0] if isinstance(entry, tuple) else entry
        if not isinstance(line, bytes):
            continue
        uid_match = _UID_PATTERN.search(line)
        date_match = _INTERNALDATE_PATTERN.search(line)
        if uid_match is None or date_match is None:
            continue
        stamp = date_match.group(1).decode().strip()
        received_at = datetime.strptime(stamp, "%d-%b-%Y %H:%M:%S %z")
        yield uid_match.group(1).decode(), to_utc(received_at)


def _build_reply(original: EmailMessage, sender: str, content: str) -> EmailMessage:
    reply = EmailMessage()
    subject = str(original.get("Subject", "") or "")
    if not subject.lower().startswith("re:"):
        subject = f"Re: {subject}".strip()
    reply["Subject"] = subject
    reply["From"] = sender
    reply_to = original.get("Reply-To") or original.get("From")
    if reply_to:
        reply["To"] = str(reply_to)
    message_id = original.get("Message-ID")
    if message_id:
        reply["In-Reply-To"] = str(message_id)
        references = str(original.get("References", "") or "")
        reply["References"] = f"{references} {message_id}".strip()
    reply.set_content(content)
    return reply


def _quote(folder: str) -> str:
    return f'"{folder}"'


def _chunked(items: Iterable[bytes], size: int) -> Iterator[list[bytes]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[bytes] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = ["ImapConnector", "ImapError"]
