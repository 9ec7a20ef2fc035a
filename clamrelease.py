#!/usr/bin/env python3
"""Resend a quarantined message to its original envelope recipients."""

from __future__ import annotations

import argparse
import logging
import uuid
from datetime import datetime
from email.utils import format_datetime
from pathlib import Path

from clamaction import (
    AlreadyReleasedError,
    ClamActionError,
    ConfigError,
    DeliveryError,
    FileIOError,
    MetadataError,
    ReleaseConfig,
    SMTPFactory,
    configure_logging,
    is_valid_quarantine_id,
    load_metadata,
    load_release_config,
    quarantine_lock,
    read_quarantine_file,
    release_paths,
    released_marker_for,
    send_message,
    serialize_header_block,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Release a quarantined message by resending it to its original recipients. "
            "Reads EMAIL_SERVICE, QUARANTINE_FOLDER and optional SMTP_HOST, SMTP_PORT, "
            "DEBUG from the environment."
        )
    )
    parser.add_argument(
        "quarantine_id",
        help="Six-letter quarantine ID from the recipient notification.",
    )
    return parser.parse_args(argv)


def generate_message_id(service_address: str) -> str | None:
    _local, _separator, domain = service_address.partition("@")
    if not domain:
        return None
    return f"<{uuid.uuid4()}@{domain}>"


def build_resent_headers(
    service_address: str,
    recipient: str,
    log: logging.Logger,
    now: datetime | None = None,
) -> list[tuple[str, str]]:
    moment = now or datetime.now().astimezone()
    headers = [
        ("Resent-From", f"<{service_address}>"),
        ("Resent-To", f"<{recipient}>"),
        ("Resent-Date", format_datetime(moment)),
    ]
    message_id = generate_message_id(service_address)
    if message_id is None:
        log.debug("Skipping Resent-Message-ID: %s has no domain", service_address)
    else:
        headers.append(("Resent-Message-ID", message_id))
    return headers


def build_resent_message(headers: list[tuple[str, str]], raw_message: bytes) -> bytes:
    return serialize_header_block(headers) + raw_message


def mark_released(marker_path: Path, log: logging.Logger) -> None:
    log.debug("Writing release marker: %s", marker_path)
    try:
        marker_path.write_text(
            datetime.now().astimezone().isoformat(timespec="seconds") + "\n",
            encoding="utf-8",
        )
    except OSError as error:
        raise FileIOError(f"failed to write release marker {marker_path}: {error}") from error


def release_message(
    config: ReleaseConfig,
    quarantine_id: str,
    log: logging.Logger,
    smtp_factory: SMTPFactory | None = None,
) -> list[str]:
    quarantine_file, metadata_file = release_paths(config.quarantine_folder, quarantine_id)
    marker_path = released_marker_for(quarantine_file)
    failed_recipients: list[str] = []

    if not quarantine_file.exists():
        raise FileIOError(f"quarantine file {quarantine_file} does not exist")
    if not metadata_file.exists():
        raise MetadataError(f"metadata file {metadata_file} does not exist")

    with quarantine_lock(quarantine_file, log):
        if marker_path.exists():
            raise AlreadyReleasedError(
                f"quarantine ID {quarantine_id} was already released (see {marker_path})"
            )

        log.debug("Loading metadata: %s", metadata_file)
        metadata = load_metadata(metadata_file)
        raw_message = read_quarantine_file(quarantine_file, log)

        for recipient in metadata.envelope_recipients:
            headers = build_resent_headers(config.email_service, recipient, log)
            try:
                send_message(
                    config.smtp.host,
                    config.smtp.port,
                    metadata.envelope_sender,
                    recipient,
                    build_resent_message(headers, raw_message),
                    log,
                    smtp_factory=smtp_factory,
                )
            except DeliveryError as error:
                log.error("Failed to send email to %s: %s", recipient, error)
                failed_recipients.append(recipient)
                continue
            log.info("Released %s to %s", quarantine_id, recipient)

        if not failed_recipients:
            mark_released(marker_path, log)

    return failed_recipients


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log = configure_logging("clamrelease", debug=False)

    quarantine_id = args.quarantine_id
    if not is_valid_quarantine_id(quarantine_id):
        log.error("Invalid quarantine ID format. Must be exactly 6 letters.")
        return 2

    try:
        config = load_release_config()
    except ConfigError as error:
        log.error("Error loading configuration: %s", error)
        return 2

    log = configure_logging("clamrelease", debug=config.debug)
    try:
        failed_recipients = release_message(config, quarantine_id, log)
    except ClamActionError as error:
        log.error("Failed to release %s: %s", quarantine_id, error)
        return 1

    if failed_recipients:
        log.error(
            "Release of %s failed for %d recipient(s): %s",
            quarantine_id,
            len(failed_recipients),
            ", ".join(failed_recipients),
        )
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
