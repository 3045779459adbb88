"""MIME parsing of fetched IMAP messages.

``MessageParser.parse`` turns one ``FetchedMessage`` into either a
``ParsedMessage`` or a ``ParseFailure``; it never raises, so one broken
message cannot fail the batch it arrived in. A failure still carries any
Message-ID recoverable from the raw header block, which lets the thread
resolver use it as an anchor for replies.

Fallbacks:
- Missing headers default to empty values
- An unparsable Date falls back to the IMAP internal date
- Undecodable text is decoded as UTF-8 with replacement characters
- HTML-only bodies get a plain-text rendition through html2text

All datetimes are naive UTC.
"""

from __future__ import annotations

import base64
import binascii
import logging
import quopri
import re
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import Message
from email.parser import BytesParser
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from hashlib import sha256
from typing import Annotated, Iterator, List, Literal, Optional, Tuple, Union

import html2text
from pydantic import BaseModel, Field, TypeAdapter, field_validator

from mailsync.errors import MessageParseError
from mailsync.storage.database import utcnow

from .attachment_models import AttachmentPart
from .connection_manager import FetchedMessage, FetchedPart
from .thread_models import normalize_subject

logger = logging.getLogger(__name__)

_MESSAGE_ID_HEADER = re.compile(rb"^message-id:[ \t]*(.+(?:\r?\n[ \t]+.+)*)", re.IGNORECASE | re.MULTILINE)
_ANGLE_ID = re.compile(r"<([^<>\s]+)>")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(default=None, description="Display name")

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.lower()

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> List["EmailAddress"]:
        """Parse every valid address of a header value, skipping junk."""
        if not header_value or not str(header_value).strip():
            return []

        result = []
        for display_name, addr in getaddresses([str(header_value)]):
            if not addr or addr.count("@") != 1:
                continue
            result.append(
                cls(
                    address=addr.strip().lower(),
                    display_name=display_name.strip() or None,
                )
            )
        return result


class ParsedMessage(BaseModel):
    """A successfully parsed message, ready for dedup and threading."""

    kind: Literal["parsed"] = "parsed"

    # IMAP identity
    uid: int
    folder: str
    uidvalidity: int

    # Threading headers
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)

    # Headers
    subject: str = ""
    normalized_subject: str = ""
    from_address: Optional[EmailAddress] = None
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    date: datetime

    # Content
    body_plain: Optional[str] = None
    body_html: Optional[str] = None
    snippet: str = ""
    importance: str = "normal"
    attachments: List[AttachmentPart] = Field(default_factory=list)

    # Metadata
    size: int = Field(default=0, ge=0)
    is_read: bool = False
    is_starred: bool = False
    dedup_hash: str

    @property
    def ancestors(self) -> List[str]:
        """References then In-Reply-To, oldest to newest, without repeats."""
        chain: List[str] = []
        for ref in [*self.references, self.in_reply_to]:
            if ref and ref != self.message_id and ref not in chain:
                chain.append(ref)
        return chain

    @property
    def participants(self) -> List[str]:
        found: List[str] = []
        for addr in [self.from_address, *self.to_addresses, *self.cc_addresses]:
            if addr is not None and addr.address not in found:
                found.append(addr.address)
        return found

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class ParseFailure(BaseModel):
    """A message that could not be parsed; its UID is still consumed."""

    kind: Literal["failed"] = "failed"
    uid: int
    folder: str
    uidvalidity: int
    message_id: Optional[str] = None
    error: str


ParseOutcome = Annotated[Union[ParsedMessage, ParseFailure], Field(discriminator="kind")]
ParseOutcomeAdapter = TypeAdapter(ParseOutcome)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def clean_message_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = str(value).strip()
    match = _ANGLE_ID.search(value)
    if match:
        return match.group(1)
    value = value.strip("<>").strip()
    return value or None


def parse_id_list(value: Optional[str]) -> List[str]:
    """Parse a References/In-Reply-To value into Message-IDs in order."""
    if not value:
        return []
    value = str(value)
    ids = _ANGLE_ID.findall(value)
    if not ids:
        ids = [token.strip("<>") for token in value.split()]
    ordered: List[str] = []
    for message_id in ids:
        if message_id and message_id not in ordered:
            ordered.append(message_id)
    return ordered


def recover_message_id(raw: Optional[bytes]) -> Optional[str]:
    """Best-effort Message-ID from a raw header block that failed to parse."""
    if not raw:
        return None
    header_block = re.split(rb"\r?\n\r?\n", raw, maxsplit=1)[0]
    match = _MESSAGE_ID_HEADER.search(header_block)
    if not match:
        return None
    return clean_message_id(match.group(1).decode("utf-8", "replace"))


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def decode_transfer(data: bytes, encoding: Optional[str]) -> bytes:
    encoding = (encoding or "").lower()
    if encoding == "base64":
        try:
            return base64.b64decode(data)
        except (binascii.Error, ValueError):
            cleaned = re.sub(rb"[^A-Za-z0-9+/]", b"", data)
            return base64.b64decode(cleaned + b"=" * (-len(cleaned) % 4))
    if encoding == "quoted-printable":
        return quopri.decodestring(data)
    return data


def decode_text(data: Optional[bytes], charset: Optional[str]) -> str:
    if data is None:
        return ""
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def compute_dedup_hash(message_id: Optional[str], size: int, body: str) -> str:
    if message_id:
        return sha256(message_id.encode("utf-8")).hexdigest()
    return sha256(f"{size}:{body[:2000]}".encode("utf-8")).hexdigest()


def _importance(msg: Message) -> str:
    priority = str(msg.get("X-Priority", "") or "").strip()
    if priority[:1] in {"1", "2"}:
        return "high"
    if priority[:1] in {"4", "5"}:
        return "low"
    importance = str(msg.get("Importance", "") or msg.get("Priority", "") or "").strip().lower()
    if importance in {"high", "urgent"}:
        return "high"
    if importance in {"low", "non-urgent"}:
        return "low"
    return "normal"


def _walk_sections(msg: Message, prefix: str = "") -> Iterator[Tuple[str, Message]]:
    """Yield leaf parts with their IMAP section numbers."""
    payload = msg.get_payload()
    if msg.get_content_maintype() == "multipart" and isinstance(payload, list):
        for index, child in enumerate(payload, start=1):
            section = f"{prefix}.{index}" if prefix else str(index)
            yield from _walk_sections(child, section)
        return
    yield prefix or "1", msg


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class MessageParser:
    """Parse fetched messages into ``ParsedMessage`` or ``ParseFailure``."""

    def __init__(self, *, snippet_length: int = 200) -> None:
        self.snippet_length = snippet_length

        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = False
        self.html_converter.body_width = 0

    def parse(self, fetched: FetchedMessage) -> Union[ParsedMessage, ParseFailure]:
        try:
            if fetched.raw is not None:
                return self._parse_whole(fetched)
            if fetched.header is not None:
                return self._parse_structured(fetched)
            raise MessageParseError("Server returned neither message nor header")
        except Exception as exc:  # noqa: BLE001 - a bad message becomes a ParseFailure
            message_id = recover_message_id(fetched.raw if fetched.raw is not None else fetched.header)
            logger.warning(
                "Failed to parse message",
                extra={
                    "folder": fetched.folder,
                    "uid": fetched.uid,
                    "error_type": type(exc).__name__,
                },
            )
            return ParseFailure(
                uid=fetched.uid,
                folder=fetched.folder,
                uidvalidity=fetched.uidvalidity,
                message_id=message_id,
                error=f"{type(exc).__name__}: {exc}",
            )

    # ------------------------------------------------------------------
    # Whole-message path
    # ------------------------------------------------------------------

    def _parse_whole(self, fetched: FetchedMessage) -> ParsedMessage:
        msg = message_from_bytes(fetched.raw, policy=email_policy)
        if not msg.keys():
            raise MessageParseError("Message has no header fields")

        plain: Optional[str] = None
        html: Optional[str] = None
        attachments: List[AttachmentPart] = []
        for section, part in _walk_sections(msg):
            content_type = part.get_content_type()
            disposition = part.get_content_disposition()
            filename = part.get_filename()
            is_body = content_type in {"text/plain", "text/html"} and disposition != "attachment" and not filename
            if is_body:
                text = decode_text(part.get_payload(decode=True), part.get_content_charset())
                if content_type == "text/plain" and plain is None:
                    plain = text
                elif content_type == "text/html" and html is None:
                    html = text
                continue
            if content_type == "message/rfc822":
                payload = part.as_bytes()
            else:
                payload = part.get_payload(decode=True) or b""
            attachments.append(
                AttachmentPart(
                    filename=filename or _default_filename(content_type, section),
                    content_type=content_type,
                    size=len(payload),
                    section=section,
                    content_id=clean_message_id(part.get("Content-ID")),
                    is_inline=disposition == "inline",
                    transfer_encoding=part.get("Content-Transfer-Encoding"),
                    payload=payload,
                )
            )

        return self._build(fetched, msg, plain, html, attachments, size=fetched.size or len(fetched.raw))

    # ------------------------------------------------------------------
    # Structured (large message) path
    # ------------------------------------------------------------------

    def _parse_structured(self, fetched: FetchedMessage) -> ParsedMessage:
        msg = BytesParser(policy=email_policy).parsebytes(fetched.header, headersonly=True)
        if not msg.keys():
            raise MessageParseError("Message has no header fields")

        plain: Optional[str] = None
        html: Optional[str] = None
        for part in fetched.text_parts:
            if part.data is None:
                continue
            text = decode_text(decode_transfer(part.data, part.transfer_encoding), part.charset)
            if part.content_type == "text/plain" and plain is None:
                plain = text
            elif part.content_type == "text/html" and html is None:
                html = text

        attachments = [self._structured_attachment(part) for part in fetched.attachment_parts]
        return self._build(fetched, msg, plain, html, attachments, size=fetched.size)

    def _structured_attachment(self, part: FetchedPart) -> AttachmentPart:
        payload = None
        if part.data is not None:
            payload = decode_transfer(part.data, part.transfer_encoding)
        return AttachmentPart(
            filename=part.filename or _default_filename(part.content_type, part.section),
            content_type=part.content_type,
            size=len(payload) if payload is not None else part.size,
            section=part.section,
            transfer_encoding=part.transfer_encoding,
            is_inline=part.disposition == "inline",
            payload=payload,
        )

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _build(
        self,
        fetched: FetchedMessage,
        msg: Message,
        plain: Optional[str],
        html: Optional[str],
        attachments: List[AttachmentPart],
        *,
        size: int,
    ) -> ParsedMessage:
        message_id = clean_message_id(msg.get("Message-ID"))
        in_reply_to_ids = parse_id_list(msg.get("In-Reply-To"))
        references = parse_id_list(msg.get("References"))
        subject = str(msg.get("Subject", "") or "").strip()

        from_addresses = EmailAddress.from_header(msg.get("From"))
        text = self._plain_text(plain, html)

        return ParsedMessage(
            uid=fetched.uid,
            folder=fetched.folder,
            uidvalidity=fetched.uidvalidity,
            message_id=message_id,
            in_reply_to=in_reply_to_ids[-1] if in_reply_to_ids else None,
            references=references,
            subject=subject,
            normalized_subject=normalize_subject(subject),
            from_address=from_addresses[0] if from_addresses else None,
            to_addresses=EmailAddress.from_header(msg.get("To")),
            cc_addresses=EmailAddress.from_header(msg.get("Cc")),
            date=self._date(msg, fetched),
            body_plain=plain if plain is not None else (text if html is not None else None),
            body_html=html,
            snippet=self._snippet(text),
            importance=_importance(msg),
            attachments=attachments,
            size=size,
            is_read=fetched.seen,
            is_starred=fetched.flagged,
            dedup_hash=compute_dedup_hash(message_id, size, text),
        )

    def _date(self, msg: Message, fetched: FetchedMessage) -> datetime:
        try:
            header = msg.get("Date")
            if header:
                return to_utc_naive(parsedate_to_datetime(str(header)))
        except (TypeError, ValueError, IndexError, OverflowError):
            logger.debug("Unparsable Date header", extra={"folder": fetched.folder, "uid": fetched.uid})
        if fetched.internal_date is not None:
            return to_utc_naive(fetched.internal_date)
        return utcnow()

    def _plain_text(self, plain: Optional[str], html: Optional[str]) -> str:
        if plain is not None:
            return plain.strip()
        if html is not None:
            return self.html_converter.handle(html).strip()
        return ""

    def _snippet(self, text: str) -> str:
        return re.sub(r"\s+", " ", text).strip()[: self.snippet_length]


def _default_filename(content_type: str, section: str) -> str:
    if content_type == "message/rfc822":
        return f"message-{section}.eml"
    return f"part-{section}"


__all__ = [
    "EmailAddress",
    "MessageParser",
    "ParseFailure",
    "ParseOutcome",
    "ParseOutcomeAdapter",
    "ParsedMessage",
    "clean_message_id",
    "compute_dedup_hash",
    "parse_id_list",
    "recover_message_id",
]
