"""IMAP session lifecycle for the sync pipeline.

The connection manager opens TLS-only IMAP sessions per sync job, caps the
number of concurrent sessions across the whole process, and translates
``imapclient`` failures into the mailsync error taxonomy:

* login rejections become ``AuthenticationError`` (never retried)
* socket, TLS, timeout and abort failures become ``ImapConnectionError``
  (retried by the job queue)
* protocol ``NO``/``BAD`` answers for a folder become ``FolderSyncError``

Sessions never stay open between jobs; every ``session()`` block logs out and
releases its slot, whatever happens inside it.
"""

from __future__ import annotations

import logging
import random
import socket
import ssl
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from mailsync.configuration.settings import ImapSettings
from mailsync.errors import AuthenticationError, FolderSyncError, ImapConnectionError

if TYPE_CHECKING:
    from .accounts import EmailAccount
    from .sync_state import FolderCursor


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fetch results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FolderInfo:
    """A selectable folder as reported by LIST + STATUS."""

    name: str
    uidvalidity: Optional[int]
    uidnext: Optional[int]
    messages: int = 0
    flags: Tuple[str, ...] = ()

    def has_flag(self, flag: str) -> bool:
        return flag.lower() in {f.lower() for f in self.flags}


@dataclass
class FetchPlan:
    """UIDs to fetch from one folder, ascending."""

    folder: str
    uidvalidity: int
    uids: List[int]
    epoch_reset: bool = False
    full: bool = False
    high_water_uid: int = 0


@dataclass
class FetchedPart:
    """A single MIME part fetched (or only located) through BODYSTRUCTURE."""

    section: str
    content_type: str
    size: int = 0
    charset: Optional[str] = None
    transfer_encoding: Optional[str] = None
    filename: Optional[str] = None
    disposition: Optional[str] = None
    data: Optional[bytes] = None


@dataclass
class FetchedMessage:
    """Raw material for the parser.

    Small messages carry the complete RFC 5322 bytes in ``raw``. Large
    messages carry ``header`` plus the text parts and the attachment parts;
    attachment parts above the eager limit have ``data=None``.
    """

    uid: int
    folder: str
    uidvalidity: int
    size: int = 0
    internal_date: Optional[datetime] = None
    flags: Tuple[str, ...] = ()
    raw: Optional[bytes] = None
    header: Optional[bytes] = None
    text_parts: List[FetchedPart] = field(default_factory=list)
    attachment_parts: List[FetchedPart] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.raw is None

    @property
    def seen(self) -> bool:
        return "\\seen" in {flag.lower() for flag in self.flags}

    @property
    def flagged(self) -> bool:
        return "\\flagged" in {flag.lower() for flag in self.flags}


# ---------------------------------------------------------------------------
# Error translation and retry strategy
# ---------------------------------------------------------------------------


@contextmanager
def translate_imap_errors(account_id: str, operation: str, folder: Optional[str] = None) -> Iterator[None]:
    """Map imapclient/socket failures onto the mailsync error taxonomy."""

    details = {"account_id": account_id, "operation": operation}
    if folder is not None:
        details["folder"] = folder
    try:
        yield
    except LoginError as exc:
        raise AuthenticationError(details=details) from exc
    except IMAPClient.AbortError as exc:
        raise ImapConnectionError(f"IMAP connection aborted during {operation}", details=details) from exc
    except IMAPClient.Error as exc:
        if "AUTHENTICATIONFAILED" in str(exc).upper():
            raise AuthenticationError(details=details) from exc
        if folder is None:
            raise ImapConnectionError(f"IMAP protocol error during {operation}", details=details) from exc
        raise FolderSyncError(f"IMAP server refused {operation}", details=details) from exc
    except (socket.timeout, TimeoutError, ssl.SSLError, OSError) as exc:
        raise ImapConnectionError(f"IMAP network failure during {operation}", details=details) from exc


@dataclass
class RetryStrategy:
    """Exponential backoff for establishing a connection within one job."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, retry_count: int, exc: Exception) -> bool:
        if retry_count >= self.max_retries:
            return False
        return isinstance(exc, ImapConnectionError)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def _flag_text(flag: Any) -> str:
    return flag.decode("ascii", "replace") if isinstance(flag, bytes) else str(flag)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _params(raw: Any) -> Dict[str, str]:
    """Turn a BODYSTRUCTURE parameter list into a lower-cased dict."""
    if not isinstance(raw, (list, tuple)):
        return {}
    items = [_text(item) or "" for item in raw]
    return {items[i].lower(): items[i + 1] for i in range(0, len(items) - 1, 2)}


def _disposition(part: Sequence[Any]) -> Tuple[Optional[str], Dict[str, str]]:
    # Extension data position depends on the media type, so look for the
    # (disposition, params) pair instead of indexing.
    for item in part[7:]:
        if isinstance(item, tuple) and len(item) == 2 and isinstance(item[0], (bytes, str)):
            kind = (_text(item[0]) or "").lower()
            if kind in {"attachment", "inline"}:
                return kind, _params(item[1])
    return None, {}


def walk_bodystructure(body: Any, prefix: str = "") -> Iterator[FetchedPart]:
    """Yield leaf parts of an imapclient BODYSTRUCTURE with their sections."""

    if getattr(body, "is_multipart", False):
        for index, child in enumerate(body[0], start=1):
            section = f"{prefix}.{index}" if prefix else str(index)
            yield from walk_bodystructure(child, section)
        return

    maintype = (_text(body[0]) or "application").lower()
    subtype = (_text(body[1]) or "octet-stream").lower()
    params = _params(body[2])
    disposition, disp_params = _disposition(body)
    filename = disp_params.get("filename") or params.get("name")
    yield FetchedPart(
        section=prefix or "1",
        content_type=f"{maintype}/{subtype}",
        size=int(body[6] or 0),
        charset=params.get("charset"),
        transfer_encoding=(_text(body[5]) or "7bit").lower(),
        filename=filename,
        disposition=disposition,
    )


def is_attachment_part(part: FetchedPart) -> bool:
    if part.disposition == "attachment" or part.filename:
        return True
    return part.content_type not in {"text/plain", "text/html"}


class ImapSession:
    """Operations the sync pipeline needs from one logged-in connection."""

    def __init__(
        self,
        client: IMAPClient,
        *,
        account_id: str,
        large_message_bytes: int = 2_000_000,
        max_eager_bytes: int = 10_000_000,
    ) -> None:
        self._client = client
        self._account_id = account_id
        self._large_message_bytes = large_message_bytes
        self._max_eager_bytes = max_eager_bytes
        self._selected: Optional[Tuple[str, int]] = None

    @property
    def account_id(self) -> str:
        return self._account_id

    def list_folders(self) -> List[FolderInfo]:
        with translate_imap_errors(self._account_id, "list"):
            listing = self._client.list_folders()

        folders: List[FolderInfo] = []
        for flags, _delimiter, name in listing:
            flag_names = tuple(_flag_text(flag) for flag in flags)
            if any(flag.lower() in {"\\noselect", "\\nonexistent"} for flag in flag_names):
                continue
            name = _text(name) or ""
            try:
                with translate_imap_errors(self._account_id, "status", folder=name):
                    status = self._client.folder_status(name, ["MESSAGES", "UIDNEXT", "UIDVALIDITY"])
            except FolderSyncError:
                logger.warning(
                    "Folder status unavailable",
                    extra={"account_id": self._account_id, "folder": name},
                )
                status = {}
            folders.append(
                FolderInfo(
                    name=name,
                    uidvalidity=_int_or_none(status.get(b"UIDVALIDITY")),
                    uidnext=_int_or_none(status.get(b"UIDNEXT")),
                    messages=int(status.get(b"MESSAGES") or 0),
                    flags=flag_names,
                )
            )
        return folders

    def select(self, folder: str) -> Dict[bytes, Any]:
        with translate_imap_errors(self._account_id, "select", folder=folder):
            info = self._client.select_folder(folder, readonly=True)
        uidvalidity = _int_or_none(info.get(b"UIDVALIDITY"))
        if uidvalidity is None:
            raise FolderSyncError(
                "Server did not report UIDVALIDITY",
                details={"account_id": self._account_id, "folder": folder},
            )
        self._selected = (folder, uidvalidity)
        return info

    def plan_fetch(
        self,
        folder: str,
        cursor: Optional["FolderCursor"],
        *,
        full: bool = False,
        limit: int = 500,
        since: Optional[date] = None,
    ) -> FetchPlan:
        """Decide which UIDs of ``folder`` still need to be fetched.

        A cursor from the current UIDVALIDITY epoch yields an incremental
        ``UID last+1:*`` search. Anything else (no cursor, epoch change or an
        explicit full sync) yields a bounded full fetch of the most recent
        ``limit`` UIDs.
        """
        info = self.select(folder)
        uidvalidity = int(info[b"UIDVALIDITY"])
        uidnext = _int_or_none(info.get(b"UIDNEXT"))
        high_water = uidnext - 1 if uidnext else 0

        cursor_epoch = cursor.uidvalidity if cursor is not None else None
        if not full and cursor_epoch == uidvalidity:
            last = cursor.last_seen_uid
            if uidnext and last >= high_water:
                uids: List[int] = []
            else:
                with translate_imap_errors(self._account_id, "search", folder=folder):
                    found = self._client.search(["UID", f"{last + 1}:*"])
                # "n:*" always matches the highest UID, even when it is below n
                uids = sorted(uid for uid in found if uid > last)
            return FetchPlan(
                folder=folder,
                uidvalidity=uidvalidity,
                uids=uids,
                high_water_uid=high_water,
            )

        criteria: List[Any] = ["SINCE", since] if since else ["ALL"]
        with translate_imap_errors(self._account_id, "search", folder=folder):
            found = self._client.search(criteria)
        uids = sorted(found)[-limit:] if limit else sorted(found)
        epoch_reset = cursor_epoch is not None and cursor_epoch != uidvalidity
        if epoch_reset:
            logger.warning(
                "UIDVALIDITY changed, resyncing folder",
                extra={
                    "account_id": self._account_id,
                    "folder": folder,
                    "old_uidvalidity": cursor_epoch,
                    "new_uidvalidity": uidvalidity,
                },
            )
        return FetchPlan(
            folder=folder,
            uidvalidity=uidvalidity,
            uids=uids,
            epoch_reset=epoch_reset,
            full=True,
            high_water_uid=high_water,
        )

    def fetch_batch(self, folder: str, uidvalidity: int, uids: Sequence[int]) -> List[FetchedMessage]:
        """Fetch one batch, whole messages when small, structured when large."""
        if not uids:
            return []
        self._ensure_selected(folder, uidvalidity)

        with translate_imap_errors(self._account_id, "fetch", folder=folder):
            sizes = self._client.fetch(list(uids), ["RFC822.SIZE"])
        small = [uid for uid in uids if uid in sizes and _size_of(sizes[uid]) <= self._large_message_bytes]
        large = [uid for uid in uids if uid in sizes and uid not in small]

        messages: Dict[int, FetchedMessage] = {}
        if small:
            with translate_imap_errors(self._account_id, "fetch", folder=folder):
                response = self._client.fetch(small, ["BODY.PEEK[]", "INTERNALDATE", "FLAGS", "RFC822.SIZE"])
            for uid, data in response.items():
                messages[uid] = FetchedMessage(
                    uid=uid,
                    folder=folder,
                    uidvalidity=uidvalidity,
                    size=_size_of(data),
                    internal_date=_utc_internal_date(data.get(b"INTERNALDATE")),
                    flags=tuple(_flag_text(flag) for flag in data.get(b"FLAGS", ())),
                    raw=data.get(b"BODY[]"),
                )
        for uid in large:
            fetched = self._fetch_structured(folder, uidvalidity, uid)
            if fetched is not None:
                messages[uid] = fetched

        # UIDs expunged between SEARCH and FETCH are simply absent
        return [messages[uid] for uid in sorted(messages)]

    def fetch_part(self, folder: str, uidvalidity: int, uid: int, section: str) -> bytes:
        """Fetch one MIME section still encoded with its transfer encoding."""
        self._ensure_selected(folder, uidvalidity)
        key = f"BODY[{section}]".encode("ascii")
        with translate_imap_errors(self._account_id, "fetch_part", folder=folder):
            response = self._client.fetch([uid], [f"BODY.PEEK[{section}]"])
        data = response.get(uid, {}).get(key)
        if data is None:
            raise FolderSyncError(
                "Message part no longer available",
                details={"account_id": self._account_id, "folder": folder, "uid": uid, "section": section},
            )
        return data

    def _ensure_selected(self, folder: str, uidvalidity: int) -> None:
        if self._selected is None or self._selected[0] != folder:
            self.select(folder)
        if self._selected[1] != uidvalidity:
            raise FolderSyncError(
                "UIDVALIDITY changed while fetching",
                details={"account_id": self._account_id, "folder": folder},
            )

    def _fetch_structured(self, folder: str, uidvalidity: int, uid: int) -> Optional[FetchedMessage]:
        with translate_imap_errors(self._account_id, "fetch", folder=folder):
            response = self._client.fetch(
                [uid], ["BODY.PEEK[HEADER]", "BODYSTRUCTURE", "INTERNALDATE", "FLAGS", "RFC822.SIZE"]
            )
        data = response.get(uid)
        if data is None:
            return None

        text_parts: List[FetchedPart] = []
        attachment_parts: List[FetchedPart] = []
        for part in walk_bodystructure(data[b"BODYSTRUCTURE"]):
            if is_attachment_part(part):
                attachment_parts.append(part)
            else:
                text_parts.append(part)

        wanted = list(text_parts)
        wanted += [part for part in attachment_parts if part.size <= self._max_eager_bytes]
        if wanted:
            with translate_imap_errors(self._account_id, "fetch", folder=folder):
                bodies = self._client.fetch([uid], [f"BODY.PEEK[{part.section}]" for part in wanted])
            body_data = bodies.get(uid, {})
            for part in wanted:
                part.data = body_data.get(f"BODY[{part.section}]".encode("ascii"))

        return FetchedMessage(
            uid=uid,
            folder=folder,
            uidvalidity=uidvalidity,
            size=_size_of(data),
            internal_date=_utc_internal_date(data.get(b"INTERNALDATE")),
            flags=tuple(_flag_text(flag) for flag in data.get(b"FLAGS", ())),
            header=data.get(b"BODY[HEADER]"),
            text_parts=text_parts,
            attachment_parts=attachment_parts,
        )


def _utc_internal_date(value: Optional[datetime]) -> Optional[datetime]:
    # imapclient hands back INTERNALDATE as naive local time
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _int_or_none(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _size_of(data: Dict[bytes, Any]) -> int:
    return int(data.get(b"RFC822.SIZE") or 0)


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class ImapConnectionManager:
    """Opens per-job IMAP sessions under a process-wide concurrency cap."""

    def __init__(
        self,
        settings: ImapSettings,
        *,
        large_message_bytes: int = 2_000_000,
        max_eager_bytes: int = 10_000_000,
        client_factory: Callable[..., IMAPClient] = IMAPClient,
        retry_strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._large_message_bytes = large_message_bytes
        self._max_eager_bytes = max_eager_bytes
        self._client_factory = client_factory
        self._retry_strategy = retry_strategy or RetryStrategy(
            max_retries=settings.connect_retries,
            base_delay=settings.connect_retry_delay,
        )
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(settings.max_sessions)
        self._active: Dict[str, IMAPClient] = {}
        self._active_lock = threading.Lock()

    @property
    def active_sessions(self) -> int:
        with self._active_lock:
            return len(self._active)

    @contextmanager
    def session(self, account: "EmailAccount", password: str) -> Iterator[ImapSession]:
        """Open a logged-in session; always logs out and frees the slot."""

        if not self._slots.acquire(timeout=self._settings.socket_timeout):
            raise ImapConnectionError(
                "No IMAP session slot available",
                details={"account_id": account.id, "max_sessions": self._settings.max_sessions},
            )
        client: Optional[IMAPClient] = None
        try:
            client = self._connect_with_retry(account, password)
            with self._active_lock:
                self._active[account.id] = client
            yield ImapSession(
                client,
                account_id=account.id,
                large_message_bytes=self._large_message_bytes,
                max_eager_bytes=self._max_eager_bytes,
            )
        finally:
            with self._active_lock:
                if client is not None and self._active.get(account.id) is client:
                    del self._active[account.id]
            if client is not None:
                self._logout(client, account.id)
            self._slots.release()

    def abort(self, account_id: str) -> bool:
        """Force-close the socket of the account's running session, if any."""
        with self._active_lock:
            client = self._active.get(account_id)
        if client is None:
            return False
        try:
            client.shutdown()
        except OSError as exc:
            logger.debug("Shutdown of aborted session failed", extra={"account_id": account_id}, exc_info=exc)
        logger.warning("Aborted IMAP session", extra={"account_id": account_id})
        return True

    def _connect_with_retry(self, account: "EmailAccount", password: str) -> IMAPClient:
        retry_count = 0
        while True:
            try:
                return self._connect(account, password)
            except ImapConnectionError as exc:
                if not self._retry_strategy.should_retry(retry_count, exc):
                    raise
                delay = self._retry_strategy.calculate_delay(retry_count)
                retry_count += 1
                logger.info(
                    "Retrying IMAP connect",
                    extra={"account_id": account.id, "retry": retry_count, "delay_seconds": round(delay, 2)},
                )
                self._sleep(delay)

    def _connect(self, account: "EmailAccount", password: str) -> IMAPClient:
        start = time.perf_counter()
        with translate_imap_errors(account.id, "connect"):
            client = self._client_factory(
                host=account.imap_host,
                port=account.imap_port,
                ssl=True,
                ssl_context=self._create_ssl_context(),
                timeout=self._settings.socket_timeout,
                use_uid=True,
            )
        try:
            with translate_imap_errors(account.id, "login"):
                client.login(account.imap_username, password)
        except BaseException:
            self._close_quietly(client, account.id)
            raise
        logger.info(
            "IMAP session opened",
            extra={"account_id": account.id, "elapsed": round(time.perf_counter() - start, 3)},
        )
        return client

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    def _logout(self, client: IMAPClient, account_id: str) -> None:
        try:
            client.logout()
        except (IMAPClient.Error, OSError) as exc:
            logger.debug("Error during logout", extra={"account_id": account_id}, exc_info=exc)
            self._close_quietly(client, account_id)

    def _close_quietly(self, client: IMAPClient, account_id: str) -> None:
        try:
            client.shutdown()
        except (IMAPClient.Error, OSError) as exc:
            logger.debug("Socket already closed", extra={"account_id": account_id}, exc_info=exc)


__all__ = [
    "FetchPlan",
    "FetchedMessage",
    "FetchedPart",
    "FolderInfo",
    "ImapConnectionManager",
    "ImapSession",
    "RetryStrategy",
    "translate_imap_errors",
    "walk_bodystructure",
]
