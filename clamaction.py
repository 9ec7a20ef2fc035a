#!/usr/bin/env python3
"""ClamAction quarantine handler for messages flagged by a scanning MTA."""

from __future__ import annotations

import argparse
import enum
import fcntl
import json
import logging
import os
import re
import secrets
import shutil
import smtplib
import sys
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from email import errors as email_errors
from email import policy
from email.header import decode_header, make_header
from email.parser import BytesParser
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping


ENV_EMAIL = "EMAIL"
ENV_VIRUS = "VIRUS"
ENV_RECIPIENTS = "RECIPIENTS"
ENV_SENDER = "SENDER"
ENV_EMAIL_ADMIN = "EMAIL_ADMIN"
ENV_EMAIL_SERVICE = "EMAIL_SERVICE"
ENV_QUARANTINE_FOLDER = "QUARANTINE_FOLDER"
ENV_SMTP_HOST = "SMTP_HOST"
ENV_SMTP_PORT = "SMTP_PORT"
ENV_DEBUG = "DEBUG"
DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25
SMTP_TIMEOUT_SECONDS = 10.0
HEADER_FOLD_WIDTH = 76
QUARANTINE_PREFIX = "virus."
METADATA_SUFFIX = ".json"
LOCK_SUFFIX = ".lock"
RELEASED_SUFFIX = ".released"
DEFAULT_ATTACHMENT_NAME = "attachment"
QUARANTINE_ID_PATTERN = re.compile(r"[A-Za-z]{6}")
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
SUBJECT_QUARANTINED = "[QUARANTINED] Potentially Infected Email"
RECIPIENT_HEADER_KEYS = ("Message-ID", "Message-Id", "Sender", "From", "To", "Date", "Subject")
FOLDED_LINE_PATTERN = re.compile(r"[ \t]*\r?\n[ \t]+")
BARE_LF_PATTERN = re.compile(rb"(?<!\r)\n")
BOUNDARY_PATTERN = re.compile(r"[0-9A-Za-z'()+_,\-./:=? ]{0,69}[0-9A-Za-z'()+_,\-./:=?]")
TSPECIALS = set('()<>@,;:\\"/[]?= ')
FATAL_PARSE_DEFECTS = (
    email_errors.MissingHeaderBodySeparatorDefect,
    email_errors.FirstHeaderLineIsContinuationDefect,
    email_errors.NoBoundaryInMultipartDefect,
    email_errors.StartBoundaryNotFoundDefect,
)
ADMIN_EMAIL_TEMPLATE = """\
* * * * * * * * * * * * * Virus ALERT * * * * * * * * * *

A potentially infected email sent to one or more of your users was detected.

Sender: {sender}
Virus: {virus}
Recipients: {recipients}

----- Forwarded headers from {forwarded_from} -----

{headers}
"""
RECIPIENT_EMAIL_TEMPLATE = """\
* * * * * * * * * * * * * Virus ALERT * * * * * * * * * *

A potentially infected email was sent to you. The email has been quarantined for your safety.

Contact your admin {admin} if you need assistance.

Sender: {sender}
Virus: {virus}
Quarantine ID: {quarantine_id}

Mail-Info:
--8<--

{headers}
--8<--
"""

SMTPFactory = Callable[..., smtplib.SMTP]


class ClamActionError(Exception):
    """Base class for failures that abort an action or release run."""


class ConfigError(ClamActionError):
    pass


class FileIOError(ClamActionError):
    pass


class MetadataError(ClamActionError):
    pass


class ParseError(ClamActionError):
    pass


class AlreadyReleasedError(ClamActionError):
    pass


class DeliveryError(ClamActionError):
    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"SMTP {step} failed: {cause}")
        self.step = step
        self.cause = cause


class ActionStageError(ClamActionError):
    def __init__(self, stage: str, cause: ClamActionError) -> None:
        super().__init__(f"Failed to {stage}: {cause}")
        self.stage = stage
        self.cause = cause


@dataclass(frozen=True)
class SMTPSettings:
    host: str
    port: int


@dataclass(frozen=True)
class ActionConfig:
    email: Path
    virus: str
    recipients: tuple[str, ...]
    sender: str
    email_admin: str
    email_service: str
    smtp: SMTPSettings
    quarantine_folder: Path
    quarantine_file: Path
    debug: bool


@dataclass(frozen=True)
class ReleaseConfig:
    email_service: str
    smtp: SMTPSettings
    quarantine_folder: Path
    debug: bool


@dataclass(frozen=True)
class Header:
    key: str
    value: str


@dataclass(frozen=True)
class QuarantineMetadata:
    envelope_sender: str
    envelope_recipients: tuple[str, ...]
    virus_name: str
    quarantine_time: str


@dataclass(frozen=True)
class MimePart:
    headers: tuple[tuple[str, str], ...]
    body: bytes


@dataclass(frozen=True)
class MultipartBody:
    boundary: str
    parts: tuple[MimePart, ...]


@dataclass(frozen=True)
class OutboundMessage:
    headers: tuple[tuple[str, str], ...]
    body: str | MultipartBody


class SessionState(enum.Enum):
    CLOSED = "closed"
    CONNECTED = "connected"
    SENDER_SET = "sender set"
    RECIPIENT_SET = "recipient set"
    DATA_SENT = "data sent"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "ClamAction quarantines a message flagged by clamsmtpd and notifies the "
            "administrator and every original recipient. All inputs are read from "
            f"environment variables ({ENV_EMAIL}, {ENV_VIRUS}, {ENV_RECIPIENTS}, "
            f"{ENV_SENDER}, {ENV_EMAIL_ADMIN}, {ENV_EMAIL_SERVICE}, "
            f"{ENV_QUARANTINE_FOLDER}, optional {ENV_SMTP_HOST}, {ENV_SMTP_PORT}, {ENV_DEBUG})."
        )
    )
    return parser.parse_args(argv)


def configure_logging(name: str, debug: bool) -> logging.Logger:
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    return logger


def require_env(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name, "")
    if not value:
        raise ConfigError(f"missing required environment variable: {name}")
    return value


def parse_recipients(raw_value: str) -> tuple[str, ...]:
    return tuple(line.strip() for line in raw_value.split("\n") if line.strip())


def parse_smtp_settings(environ: Mapping[str, str]) -> SMTPSettings:
    host = environ.get(ENV_SMTP_HOST, "").strip() or DEFAULT_SMTP_HOST
    raw_port = environ.get(ENV_SMTP_PORT, "").strip()
    if not raw_port:
        return SMTPSettings(host=host, port=DEFAULT_SMTP_PORT)
    try:
        port = int(raw_port)
    except ValueError as error:
        raise ConfigError(f"{ENV_SMTP_PORT} must be an integer, got {raw_port!r}.") from error
    if not 0 < port < 65536:
        raise ConfigError(f"{ENV_SMTP_PORT} must be between 1 and 65535, got {port}.")
    return SMTPSettings(host=host, port=port)


def parse_quarantine_folder(environ: Mapping[str, str]) -> Path:
    raw_folder = require_env(environ, ENV_QUARANTINE_FOLDER)
    return Path(raw_folder.rstrip("/") or "/")


def parse_debug_flag(environ: Mapping[str, str]) -> bool:
    return environ.get(ENV_DEBUG, "") == "true"


def load_action_config(environ: Mapping[str, str] | None = None) -> ActionConfig:
    env = os.environ if environ is None else environ
    email_path = Path(require_env(env, ENV_EMAIL))
    virus = require_env(env, ENV_VIRUS)
    recipients = parse_recipients(require_env(env, ENV_RECIPIENTS))
    sender = require_env(env, ENV_SENDER)
    smtp_settings = parse_smtp_settings(env)
    email_admin = require_env(env, ENV_EMAIL_ADMIN)
    email_service = require_env(env, ENV_EMAIL_SERVICE)
    quarantine_folder = parse_quarantine_folder(env)
    return ActionConfig(
        email=email_path,
        virus=virus,
        recipients=recipients,
        sender=sender,
        email_admin=email_admin,
        email_service=email_service,
        smtp=smtp_settings,
        quarantine_folder=quarantine_folder,
        quarantine_file=quarantine_file_path(quarantine_folder, email_path),
        debug=parse_debug_flag(env),
    )


def load_release_config(environ: Mapping[str, str] | None = None) -> ReleaseConfig:
    env = os.environ if environ is None else environ
    email_service = require_env(env, ENV_EMAIL_SERVICE)
    quarantine_folder = parse_quarantine_folder(env)
    return ReleaseConfig(
        email_service=email_service,
        smtp=parse_smtp_settings(env),
        quarantine_folder=quarantine_folder,
        debug=parse_debug_flag(env),
    )


def quarantine_file_path(quarantine_folder: Path, email_path: Path) -> Path:
    base_name = Path(email_path).name
    if not base_name.startswith(QUARANTINE_PREFIX):
        base_name = QUARANTINE_PREFIX + base_name
    return quarantine_folder / base_name


def metadata_path_for(quarantine_file: Path) -> Path:
    return quarantine_file.with_name(quarantine_file.name + METADATA_SUFFIX)


def quarantine_file_for_metadata(metadata_path: Path) -> Path:
    name = metadata_path.name
    if not name.endswith(METADATA_SUFFIX):
        raise MetadataError(f"{metadata_path} is not a metadata sidecar.")
    return metadata_path.with_name(name[: -len(METADATA_SUFFIX)])


def release_paths(quarantine_folder: Path, quarantine_id: str) -> tuple[Path, Path]:
    quarantine_file = quarantine_folder / f"{QUARANTINE_PREFIX}{quarantine_id}"
    return quarantine_file, metadata_path_for(quarantine_file)


def released_marker_for(quarantine_file: Path) -> Path:
    return quarantine_file.with_name(quarantine_file.name + RELEASED_SUFFIX)


def quarantine_id_for(quarantine_file: Path) -> str:
    return Path(quarantine_file).name.rpartition(".")[2]


def is_valid_quarantine_id(value: str) -> bool:
    return QUARANTINE_ID_PATTERN.fullmatch(value) is not None


@contextmanager
def quarantine_lock(quarantine_file: Path, log: logging.Logger) -> Iterator[None]:
    """Hold an exclusive advisory lock for one quarantine identifier."""
    lock_path = quarantine_file.with_name(quarantine_file.name + LOCK_SUFFIX)
    log.debug("Acquiring quarantine lock: %s", lock_path)
    try:
        handle = lock_path.open("a", encoding="utf-8")
    except OSError as error:
        raise FileIOError(f"failed to open quarantine lock {lock_path}: {error}") from error
    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError as error:
            raise FileIOError(f"failed to lock {lock_path}: {error}") from error
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            log.debug("Released quarantine lock: %s", lock_path)


def store_quarantine(source: Path, destination: Path, log: logging.Logger) -> None:
    log.debug("Opening source email file: %s", source)
    try:
        source_file = source.open("rb")
    except OSError as error:
        raise FileIOError(f"failed to open source file: {error}") from error

    with source_file:
        log.debug("Creating quarantine file: %s", destination)
        try:
            destination_file = destination.open("wb")
        except OSError as error:
            raise FileIOError(f"failed to create quarantine file: {error}") from error

        with destination_file:
            log.debug("Copying source file to quarantine")
            try:
                shutil.copyfileobj(source_file, destination_file)
            except OSError as error:
                raise FileIOError(f"failed to copy file to quarantine: {error}") from error

            log.debug("Syncing quarantine file to disk")
            try:
                destination_file.flush()
                os.fsync(destination_file.fileno())
            except OSError as error:
                raise FileIOError(f"failed to sync quarantine file: {error}") from error

    log.debug("Deleting original email file: %s", source)
    try:
        source.unlink()
    except OSError as error:
        raise FileIOError(f"failed to delete original file after quarantine: {error}") from error


def read_quarantine_file(quarantine_file: Path, log: logging.Logger) -> bytes:
    log.debug("Reading quarantine file: %s", quarantine_file)
    try:
        return quarantine_file.read_bytes()
    except OSError as error:
        raise FileIOError(f"failed to read quarantine file {quarantine_file}: {error}") from error


def new_metadata(
    sender: str,
    recipients: Iterable[str],
    virus: str,
    now: datetime | None = None,
) -> QuarantineMetadata:
    moment = now or datetime.now().astimezone()
    return QuarantineMetadata(
        envelope_sender=sender,
        envelope_recipients=tuple(recipients),
        virus_name=virus,
        quarantine_time=moment.isoformat(timespec="seconds"),
    )


def save_metadata(path: Path, metadata: QuarantineMetadata, log: logging.Logger) -> None:
    payload = asdict(metadata)
    payload["envelope_recipients"] = list(metadata.envelope_recipients)
    try:
        text = json.dumps(payload, indent=2) + "\n"
    except (TypeError, ValueError) as error:
        raise MetadataError(f"failed to serialize metadata: {error}") from error

    temp_path = path.with_name(f".{path.name}.tmp")
    log.debug("Writing metadata file: %s", path)
    try:
        with temp_path.open("w", encoding="utf-8") as file:
            file.write(text)
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_path, path)
    except OSError as error:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as cleanup_error:
            log.debug("failed to remove temporary metadata file %s: %s", temp_path, cleanup_error)
        raise MetadataError(f"failed to write metadata JSON file {path}: {error}") from error


def load_metadata(path: Path) -> QuarantineMetadata:
    try:
        with path.open("r", encoding="utf-8") as file:
            raw = json.load(file)
    except OSError as error:
        raise MetadataError(f"failed to read metadata JSON file {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise MetadataError(f"failed to parse metadata JSON file {path}: {error}") from error

    if not isinstance(raw, dict):
        raise MetadataError(f"Metadata file {path} must contain a JSON object.")

    for field_name in ("envelope_sender", "virus_name", "quarantine_time"):
        if not isinstance(raw.get(field_name), str):
            raise MetadataError(f"Metadata file {path} has missing or invalid {field_name}.")
    recipients = raw.get("envelope_recipients")
    if not isinstance(recipients, list) or not all(isinstance(item, str) for item in recipients):
        raise MetadataError(f"Metadata file {path} has missing or invalid envelope_recipients.")

    return QuarantineMetadata(
        envelope_sender=raw["envelope_sender"],
        envelope_recipients=tuple(recipients),
        virus_name=raw["virus_name"],
        quarantine_time=raw["quarantine_time"],
    )


def has_header_separator(raw: bytes) -> bool:
    if raw.startswith((b"\r\n", b"\n")):
        return True
    return b"\n\n" in raw or b"\n\r\n" in raw


def unfold_header_value(raw_value: str) -> str:
    return FOLDED_LINE_PATTERN.sub(" ", raw_value).strip()


def decode_header_value(raw_value: str, log: logging.Logger) -> str:
    value = unfold_header_value(raw_value)
    # The bytes parser keeps undecoded 8-bit octets as surrogate escapes.
    raw_octets = value.encode("utf-8", errors="surrogateescape")
    value = raw_octets.decode("utf-8", errors="replace")
    try:
        return str(make_header(decode_header(value)))
    except (email_errors.HeaderParseError, LookupError, UnicodeError) as error:
        log.debug("failed to decode header value %r: %s", value, error)
        return value


def parse_headers(raw: bytes, log: logging.Logger) -> list[Header]:
    log.debug("Reading email message for header parsing")
    if not raw:
        raise ParseError("failed to read message: message is empty")
    if not has_header_separator(raw):
        raise ParseError("failed to read message: no blank line after the header section")

    message = BytesParser(policy=policy.compat32).parsebytes(raw)
    fatal = [defect for defect in message.defects if isinstance(defect, FATAL_PARSE_DEFECTS)]
    if fatal:
        names = ", ".join(type(defect).__name__ for defect in fatal)
        raise ParseError(f"failed to read message: {names}")
    for part in message.walk():
        if part is not message and part.defects:
            log.debug(
                "Ignoring defects in nested MIME part: %s",
                ", ".join(type(defect).__name__ for defect in part.defects),
            )

    log.debug("Parsing email headers")
    headers: list[Header] = []
    for key, raw_value in message.raw_items():
        log.debug("Decoding header: %s", key)
        headers.append(Header(key=key, value=decode_header_value(str(raw_value), log)))

    log.debug("Completed parsing %d headers", len(headers))
    return headers


def split_long_line(line: str, max_length: int = HEADER_FOLD_WIDTH) -> list[str]:
    lines: list[str] = []
    while len(line) > max_length:
        index = max(line.rfind(" ", 0, max_length), line.rfind("\t", 0, max_length))
        if index <= 0:
            index = max_length
        lines.append(line[:index])
        line = line[index:].strip()
    if line:
        lines.append(line)
    return lines


def format_headers(headers: Iterable[Header]) -> str:
    output: list[str] = []
    for header in headers:
        for index, line in enumerate(split_long_line(f"{header.key}: {header.value}")):
            output.append(f"{line}\n" if index == 0 else f"\t{line}\n")
    return "".join(output)


def format_selected_headers(headers: Iterable[Header], allowed_keys: Iterable[str]) -> str:
    wanted = set(allowed_keys)
    return "".join(
        f"{header.key}: {header.value}\n"
        for header in headers
        if header.key in wanted
    )


def new_boundary() -> str:
    return secrets.token_hex(30)


def format_boundary_parameter(boundary: str) -> str:
    if not BOUNDARY_PATTERN.fullmatch(boundary):
        raise ValueError(f"Invalid MIME boundary: {boundary!r}")
    if any(char in TSPECIALS for char in boundary):
        return f'"{boundary}"'
    return boundary


def quote_parameter(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def envelope_headers(sender: str, recipient: str, subject: str, content_type: str) -> tuple[tuple[str, str], ...]:
    return (
        ("From", sender),
        ("To", recipient),
        ("Subject", subject),
        ("MIME-Version", "1.0"),
        ("Content-Type", content_type),
    )


def build_plain_message(sender: str, recipient: str, subject: str, text: str) -> OutboundMessage:
    return OutboundMessage(
        headers=envelope_headers(sender, recipient, subject, "text/plain; charset=UTF-8"),
        body=text,
    )


def build_message_with_attachment(
    sender: str,
    recipient: str,
    subject: str,
    text: str,
    attachment: bytes,
    attachment_name: str,
    boundary: str | None = None,
) -> OutboundMessage:
    boundary = boundary or new_boundary()
    filename = f"{attachment_name or DEFAULT_ATTACHMENT_NAME}.eml"
    text_part = MimePart(
        headers=(("Content-Type", "text/plain; charset=UTF-8"),),
        body=text.encode("utf-8"),
    )
    attachment_part = MimePart(
        headers=(
            ("Content-Type", "message/rfc822"),
            ("Content-Disposition", f"attachment; filename={quote_parameter(filename)}"),
        ),
        body=bytes(attachment),
    )
    return OutboundMessage(
        headers=envelope_headers(
            sender,
            recipient,
            subject,
            f"multipart/mixed; boundary={format_boundary_parameter(boundary)}",
        ),
        body=MultipartBody(boundary=boundary, parts=(text_part, attachment_part)),
    )


def serialize_header_block(headers: Iterable[tuple[str, str]]) -> bytes:
    return "".join(f"{name}: {value}\r\n" for name, value in headers).encode("utf-8")


def serialize_multipart(body: MultipartBody) -> bytes:
    delimiter = f"--{body.boundary}".encode("ascii")
    chunks: list[bytes] = []
    for index, part in enumerate(body.parts):
        if index:
            chunks.append(b"\r\n")
        chunks.append(delimiter + b"\r\n")
        chunks.append(serialize_header_block(part.headers))
        chunks.append(b"\r\n")
        chunks.append(part.body)
    chunks.append(b"\r\n" + delimiter + b"--\r\n")
    return b"".join(chunks)


def serialize_message(message: OutboundMessage) -> bytes:
    head = serialize_header_block(message.headers) + b"\r\n"
    if isinstance(message.body, MultipartBody):
        return head + serialize_multipart(message.body)
    return head + message.body.encode("utf-8")


def normalize_line_endings(message: bytes) -> bytes:
    # smtplib only dot-stuffs bytes payloads; bare LF must still become CRLF.
    return BARE_LF_PATTERN.sub(b"\r\n", message)


class SMTPSession:
    """Minimal SMTP client dialogue for a single envelope recipient.

    Operations must run in order: connect, mail, rcpt, data. ``close`` is
    valid in every state and always releases the socket. All steps share one
    deadline measured from session creation.
    """

    def __init__(
        self,
        host: str,
        port: int,
        log: logging.Logger,
        timeout: float = SMTP_TIMEOUT_SECONDS,
        smtp_factory: SMTPFactory | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.log = log
        self.state = SessionState.CLOSED
        self._deadline = time.monotonic() + timeout
        self._factory = smtp_factory or smtplib.SMTP
        self._client: smtplib.SMTP | None = None

    def remaining(self) -> float:
        return self._deadline - time.monotonic()

    def _require(self, expected: SessionState, step: str) -> None:
        if self.state is not expected:
            raise RuntimeError(
                f"SMTP {step} requires state {expected.value!r}, session is {self.state.value!r}"
            )

    def _time_left(self, step: str) -> float:
        remaining = self.remaining()
        if remaining <= 0:
            raise DeliveryError(step, TimeoutError("SMTP session deadline exceeded"))
        if self._client is not None and getattr(self._client, "sock", None) is not None:
            self._client.sock.settimeout(remaining)
        return remaining

    def connect(self) -> None:
        self._require(SessionState.CLOSED, "connect")
        if self._client is not None:
            raise RuntimeError("SMTP session cannot be reused after close")
        self.log.debug("Connecting to SMTP server: %s:%s", self.host, self.port)
        remaining = self._time_left("connect")
        try:
            self._client = self._factory(timeout=remaining)
            code, reply = self._client.connect(self.host, self.port)
            if code != 220:
                raise smtplib.SMTPConnectError(code, reply)
        except (smtplib.SMTPException, OSError) as error:
            raise DeliveryError("connect", error) from error

        self._time_left("handshake")
        try:
            self._client.ehlo_or_helo_if_needed()
        except (smtplib.SMTPException, OSError) as error:
            raise DeliveryError("handshake", error) from error
        self.state = SessionState.CONNECTED

    def mail(self, sender: str) -> None:
        self._require(SessionState.CONNECTED, "MAIL FROM")
        self.log.debug("Setting SMTP sender: %s", sender)
        self._command("MAIL FROM", self._client.mail, sender, accepted=(250,))
        self.state = SessionState.SENDER_SET

    def rcpt(self, recipient: str) -> None:
        self._require(SessionState.SENDER_SET, "RCPT TO")
        self.log.debug("Setting SMTP recipient: %s", recipient)
        self._command("RCPT TO", self._client.rcpt, recipient, accepted=(250, 251))
        self.state = SessionState.RECIPIENT_SET

    def data(self, message: bytes) -> None:
        self._require(SessionState.RECIPIENT_SET, "DATA")
        self.log.debug("Writing %d bytes of email data to SMTP server", len(message))
        self._command("DATA", self._client.data, normalize_line_endings(message), accepted=(250,))
        self.state = SessionState.DATA_SENT

    def _command(self, step: str, operation, argument, accepted: tuple[int, ...]) -> None:
        self._time_left(step)
        try:
            code, reply = operation(argument)
        except (smtplib.SMTPException, OSError) as error:
            raise DeliveryError(step, error) from error
        if code not in accepted:
            error = smtplib.SMTPResponseException(code, reply)
            raise DeliveryError(step, error) from error

    def close(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            if self.state is not SessionState.CLOSED:
                try:
                    client.quit()
                except (smtplib.SMTPException, OSError) as error:
                    self.log.debug("failed to quit SMTP client: %s", error)
        finally:
            client.close()
            self.state = SessionState.CLOSED


def send_message(
    host: str,
    port: int,
    envelope_sender: str,
    envelope_recipient: str,
    message: bytes,
    log: logging.Logger,
    smtp_factory: SMTPFactory | None = None,
) -> None:
    session = SMTPSession(host, port, log, smtp_factory=smtp_factory)
    try:
        session.connect()
        session.mail(envelope_sender)
        session.rcpt(envelope_recipient)
        session.data(message)
    finally:
        session.close()
    log.debug("Email sent successfully to %s", envelope_recipient)


def defang_address(address: str) -> str:
    return address.replace("@", "[at]").replace(".", "[dot]")


def compose_admin_notice(metadata: QuarantineMetadata, formatted_headers: str) -> str:
    return ADMIN_EMAIL_TEMPLATE.format(
        sender=metadata.envelope_sender,
        virus=metadata.virus_name,
        recipients=", ".join(metadata.envelope_recipients),
        forwarded_from=metadata.envelope_sender,
        headers=formatted_headers,
    )


def compose_recipient_notice(
    admin_address: str,
    sanitized_sender: str,
    virus_name: str,
    quarantine_id: str,
    formatted_headers: str,
) -> str:
    return RECIPIENT_EMAIL_TEMPLATE.format(
        admin=admin_address,
        sender=sanitized_sender,
        virus=virus_name,
        quarantine_id=quarantine_id,
        headers=formatted_headers,
    )


def notify_admin(
    config: ActionConfig,
    metadata: QuarantineMetadata,
    raw_message: bytes,
    headers: list[Header],
    log: logging.Logger,
    smtp_factory: SMTPFactory | None = None,
) -> None:
    log.debug("Creating admin email content")
    content = compose_admin_notice(metadata, format_headers(headers))
    message = build_message_with_attachment(
        config.email_service,
        config.email_admin,
        SUBJECT_QUARANTINED,
        content,
        raw_message,
        config.quarantine_file.name,
    )
    log.debug("Sending admin notification to %s", config.email_admin)
    send_message(
        config.smtp.host,
        config.smtp.port,
        config.email_service,
        config.email_admin,
        serialize_message(message),
        log,
        smtp_factory=smtp_factory,
    )
    log.info("Notified admin %s", config.email_admin)


def notify_recipient(
    config: ActionConfig,
    recipient: str,
    headers: list[Header],
    log: logging.Logger,
    smtp_factory: SMTPFactory | None = None,
) -> None:
    log.debug("Creating recipient email content for %s", recipient)
    content = compose_recipient_notice(
        config.email_admin,
        defang_address(config.sender),
        config.virus,
        quarantine_id_for(config.quarantine_file),
        format_selected_headers(headers, RECIPIENT_HEADER_KEYS),
    )
    message = build_plain_message(config.email_service, recipient, SUBJECT_QUARANTINED, content)
    send_message(
        config.smtp.host,
        config.smtp.port,
        config.email_service,
        recipient,
        serialize_message(message),
        log,
        smtp_factory=smtp_factory,
    )
    log.info("Notified recipient %s", recipient)


def run_action(
    config: ActionConfig,
    log: logging.Logger,
    smtp_factory: SMTPFactory | None = None,
) -> None:
    stage = "quarantine virus"
    try:
        with quarantine_lock(config.quarantine_file, log):
            store_quarantine(config.email, config.quarantine_file, log)
            log.info("Virus quarantined to %s", config.quarantine_file)
            stage = "save email metadata"
            metadata = new_metadata(config.sender, config.recipients, config.virus)
            save_metadata(metadata_path_for(config.quarantine_file), metadata, log)

        stage = "read quarantine file"
        raw_message = read_quarantine_file(config.quarantine_file, log)

        stage = "parse headers"
        headers = parse_headers(raw_message, log)

        stage = "notify admin"
        notify_admin(config, metadata, raw_message, headers, log, smtp_factory=smtp_factory)

        for recipient in config.recipients:
            stage = f"notify recipient {recipient}"
            notify_recipient(config, recipient, headers, log, smtp_factory=smtp_factory)
    except ClamActionError as error:
        raise ActionStageError(stage, error) from error


def main(argv: list[str] | None = None) -> int:
    parse_args(argv)
    log = configure_logging("clamaction", debug=False)

    try:
        config = load_action_config()
    except ConfigError as error:
        log.error("Failed to load configuration: %s", error)
        return 2

    log = configure_logging("clamaction", debug=config.debug)
    log.debug("Starting virus quarantine process")
    try:
        run_action(config, log)
    except ActionStageError as error:
        log.error("%s", error)
        return 1

    log.debug("Completed processing")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
