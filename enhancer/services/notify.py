"""Operator alerts (storage usage).

Mailed over SMTP when configured. Otherwise, or when delivery fails, the
message is written to an outbox directory as a .eml file so nothing is lost.
"""
import datetime as dt
import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from enhancer.core.config import Settings

log = logging.getLogger("notify")

OUTBOX_DIR = "data/alert_outbox"
SMTP_TIMEOUT_S = 10
SMTPS_PORT = 465


class Notifier:
    def __init__(self, settings: Settings, outbox_dir: str = OUTBOX_DIR):
        self.settings = settings
        self.outbox_dir = Path(outbox_dir)

    @property
    def sender(self) -> str:
        return (self.settings.SMTP_FROM or self.settings.SMTP_USER or "").strip()

    @property
    def smtp_ready(self) -> bool:
        cfg = self.settings
        return bool((cfg.SMTP_HOST or "").strip() and cfg.SMTP_PORT and self.sender)

    def _message(self, to_addr: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender or "enhancer@localhost"
        if to_addr:
            msg["To"] = to_addr
        msg["Date"] = dt.datetime.now(dt.timezone.utc).strftime("%a, %d %b %Y %H:%M:%S +0000")
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> bool:
        cfg = self.settings
        host, port = cfg.SMTP_HOST.strip(), int(cfg.SMTP_PORT)
        smtp_cls = smtplib.SMTP_SSL if port == SMTPS_PORT else smtplib.SMTP
        try:
            with smtp_cls(host, port, timeout=SMTP_TIMEOUT_S) as server:
                if port != SMTPS_PORT:
                    try:
                        server.starttls()
                    except smtplib.SMTPNotSupportedError:
                        log.info("alert.smtp no STARTTLS host=%s", host)
                if cfg.SMTP_USER and cfg.SMTP_PASSWORD:
                    server.login(cfg.SMTP_USER, cfg.SMTP_PASSWORD)
                server.send_message(msg)
        except (OSError, smtplib.SMTPException):
            log.exception("alert.smtp failed host=%s to=%s", host, msg["To"])
            return False
        log.info("alert.sent to=%s subject=%r", msg["To"], msg["Subject"])
        return True

    def _outbox(self, msg: EmailMessage) -> Optional[Path]:
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.outbox_dir / f"alert_{stamp}.eml"
        try:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(msg.as_bytes())
        except OSError:
            log.exception("alert.outbox failed dir=%s", self.outbox_dir)
            return None
        log.warning("alert.outboxed path=%s", path)
        return path

    def send_alert(self, subject: str, body: str) -> bool:
        """E-mail an operator alert. Falls back to the outbox; True only if mailed."""
        to_addr = (self.settings.ALERT_EMAIL_TO or "").strip()
        msg = self._message(to_addr, subject, body)
        if self.smtp_ready and to_addr and self._deliver(msg):
            return True
        if not (self.smtp_ready and to_addr):
            log.warning("alert.smtp not configured to=%r", to_addr)
        self._outbox(msg)
        return False
