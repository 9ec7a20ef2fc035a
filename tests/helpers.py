from __future__ import annotations

import logging
import smtplib
import socket
import threading
from pathlib import Path

import clamaction as app


FIXTURE_DIR = Path(__file__).parent / "fixtures" / "eml"
TEST_LOG = logging.getLogger("tests.clamaction")


def fixture_bytes(name: str) -> bytes:
    return (FIXTURE_DIR / name).read_bytes()


def make_action_config(
    tmp_path: Path,
    *,
    email_name: str = "virus.kPqRsT",
    sender: str = "alice@x.com",
    recipients: tuple[str, ...] = ("bob@y.com", "carol@y.com"),
    virus: str = "Eicar-Test-Signature",
) -> app.ActionConfig:
    spool = tmp_path / "spool"
    quarantine = tmp_path / "quarantine"
    spool.mkdir(exist_ok=True)
    quarantine.mkdir(exist_ok=True)
    email_path = spool / email_name
    return app.ActionConfig(
        email=email_path,
        virus=virus,
        recipients=recipients,
        sender=sender,
        email_admin="admin@z.com",
        email_service="clamav@z.com",
        smtp=app.SMTPSettings(host="mail.test", port=2525),
        quarantine_folder=quarantine,
        quarantine_file=app.quarantine_file_path(quarantine, email_path),
        debug=True,
    )


def make_release_config(tmp_path: Path, email_service: str = "clamav@z.com") -> app.ReleaseConfig:
    quarantine = tmp_path / "quarantine"
    quarantine.mkdir(exist_ok=True)
    return app.ReleaseConfig(
        email_service=email_service,
        smtp=app.SMTPSettings(host="mail.test", port=2525),
        quarantine_folder=quarantine,
        debug=True,
    )


def split_multipart(data: bytes, boundary: str) -> list[tuple[bytes, bytes]]:
    delimiter = b"--" + boundary.encode("ascii")
    _preamble, _separator, rest = data.partition(delimiter + b"\r\n")
    body, _separator, _epilogue = rest.rpartition(b"\r\n" + delimiter + b"--")
    parts = []
    for chunk in body.split(b"\r\n" + delimiter + b"\r\n"):
        head, _separator, part_body = chunk.partition(b"\r\n\r\n")
        parts.append((head, part_body))
    return parts


class FakeSMTPServer:
    """Stands in for ``smtplib.SMTP``; every call opens a new recorded session."""

    def __init__(
        self,
        *,
        refused_connections: set[int] | None = None,
        rejected_recipients: set[str] | None = None,
        quit_error: bool = False,
    ) -> None:
        self.refused_connections = refused_connections or set()
        self.rejected_recipients = rejected_recipients or set()
        self.quit_error = quit_error
        self.sessions: list[FakeSMTPClient] = []
        self.delivered: list[tuple[str, str, bytes]] = []

    def __call__(self, timeout: float | None = None) -> "FakeSMTPClient":
        client = FakeSMTPClient(self, len(self.sessions) + 1, timeout)
        self.sessions.append(client)
        return client


class FakeSMTPClient:
    sock = None

    def __init__(self, server: FakeSMTPServer, number: int, timeout: float | None) -> None:
        self.server = server
        self.number = number
        self.timeout = timeout
        self.commands: list[str] = []
        self.closed = False
        self.mail_from = ""
        self.rcpt_to = ""

    def connect(self, host: str, port: int):
        self.commands.append(f"CONNECT {host}:{port}")
        if self.number in self.server.refused_connections:
            raise ConnectionRefusedError(111, "Connection refused")
        return 220, b"mail.test ESMTP ready"

    def ehlo_or_helo_if_needed(self) -> None:
        self.commands.append("EHLO")

    def mail(self, sender: str):
        self.commands.append(f"MAIL FROM:<{sender}>")
        self.mail_from = sender
        return 250, b"2.1.0 Ok"

    def rcpt(self, recipient: str):
        self.commands.append(f"RCPT TO:<{recipient}>")
        if recipient in self.server.rejected_recipients:
            return 550, b"5.1.1 User unknown"
        self.rcpt_to = recipient
        return 250, b"2.1.5 Ok"

    def data(self, message: bytes):
        self.commands.append("DATA")
        self.server.delivered.append((self.mail_from, self.rcpt_to, message))
        return 250, b"2.0.0 Ok: queued"

    def quit(self):
        self.commands.append("QUIT")
        if self.server.quit_error:
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        self.close()
        return 221, b"Bye"

    def close(self) -> None:
        self.closed = True


class LoopbackSMTPServer:
    """Answers one SMTP conversation on 127.0.0.1 and keeps the raw DATA bytes."""

    def __init__(self) -> None:
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(5)
        self.port = self.listener.getsockname()[1]
        self.commands: list[str] = []
        self.data = b""
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def __enter__(self) -> "LoopbackSMTPServer":
        self.thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.thread.join(timeout=5)
        self.listener.close()

    def _serve(self) -> None:
        connection, _address = self.listener.accept()
        connection.settimeout(5)
        with connection, connection.makefile("rb") as reader:
            connection.sendall(b"220 loopback ESMTP ready\r\n")
            for line in iter(reader.readline, b""):
                command = line.decode("ascii", errors="replace").strip()
                self.commands.append(command)
                verb = command[:4].upper()
                if verb in ("EHLO", "HELO"):
                    connection.sendall(b"250 loopback\r\n")
                elif verb in ("MAIL", "RCPT"):
                    connection.sendall(b"250 Ok\r\n")
                elif verb == "DATA":
                    connection.sendall(b"354 End data with <CR><LF>.<CR><LF>\r\n")
                    chunks = []
                    for data_line in iter(reader.readline, b""):
                        if data_line == b".\r\n":
                            break
                        chunks.append(data_line)
                    self.data = b"".join(chunks)
                    connection.sendall(b"250 Ok: queued\r\n")
                elif verb == "QUIT":
                    connection.sendall(b"221 Bye\r\n")
                    break
                else:
                    connection.sendall(b"502 Command not implemented\r\n")


def loopback_smtp_factory(timeout: float | None = None) -> smtplib.SMTP:
    return smtplib.SMTP(local_hostname="localhost", timeout=timeout)
