from __future__ import annotations

import asyncio
import datetime as dt
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx

from .classifier import ThreatTier
from .errors import AlertDeliveryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class SlackConfig:
    enabled: bool = False
    webhook_url: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    sender: str = "no-reply@floodgate.local"
    to: str = ""


class AlertSink(Protocol):
    async def notify_threat(self, address: str, volume: int, tier: ThreatTier) -> None:
        ...

    async def notify(self, subject: str, body: str, level: str = "info") -> None:
        ...


class AlertManager:
    """
    Operator notifications over Telegram, Slack and email.

    With no channel enabled, alerts are written to the log instead so a
    bare deployment still surfaces them. Channel failures are logged and
    never raised to the caller.
    """

    def __init__(
        self,
        enabled: bool = True,
        telegram: Optional[TelegramConfig] = None,
        slack: Optional[SlackConfig] = None,
        email: Optional[EmailConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.enabled = enabled
        self.telegram = telegram or TelegramConfig()
        self.slack = slack or SlackConfig()
        self.email = email or EmailConfig()
        self._transport = transport

    @property
    def channels(self) -> List[str]:
        out: List[str] = []
        if self.telegram.enabled:
            out.append("telegram")
        if self.slack.enabled:
            out.append("slack")
        if self.email.enabled:
            out.append("email")
        return out

    async def notify_threat(self, address: str, volume: int, tier: ThreatTier) -> None:
        subject = f"Floodgate alert: {tier.name} threat detected"
        body = (
            f"Threat level: {tier.name}\n"
            f"Source IP: {address}\n"
            f"Traffic volume: {volume:,} packets in the scan window\n"
            f"Timestamp: {dt.datetime.now(dt.UTC).isoformat()}\n\n"
            "Automated alert from the Floodgate detection loop. Investigate this source."
        )
        level = "warning" if tier >= ThreatTier.HIGH else "info"
        await self.notify(subject, body, level=level)

    async def notify(self, subject: str, body: str, level: str = "info") -> None:
        if not self.enabled:
            logger.info("alert_suppressed", extra={"subject": subject})
            return

        if not self.channels:
            lvl = logging.WARNING if level == "warning" else logging.INFO
            logger.log(lvl, "alert", extra={"subject": subject, "body": body, "level": level})
            return

        text = f"{subject}\n{body}"
        try:
            if self.telegram.enabled:
                await self._send_telegram(text)
        except AlertDeliveryError as e:
            logger.warning("telegram_alert_failed", extra={"err": str(e)})

        try:
            if self.slack.enabled:
                await self._send_slack(text)
        except AlertDeliveryError as e:
            logger.warning("slack_alert_failed", extra={"err": str(e)})

        try:
            if self.email.enabled:
                await asyncio.to_thread(self._send_email, subject, body)
        except AlertDeliveryError as e:
            logger.warning("email_alert_failed", extra={"err": str(e)})

    async def test_alert(self) -> str:
        await self.notify(
            "System test",
            f"Test alert from Floodgate. Alerting is functioning at {dt.datetime.now(dt.UTC).isoformat()}.",
        )
        if not self.enabled:
            return "alerts disabled; test alert suppressed"
        if not self.channels:
            return "test alert logged; no delivery channel configured"
        return f"test alert sent via {', '.join(self.channels)}"

    async def _post(self, url: str, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise AlertDeliveryError(str(e)) from e

    async def _send_telegram(self, text: str) -> None:
        url = f"https://api.telegram.org/bot{self.telegram.bot_token}/sendMessage"
        await self._post(url, {"chat_id": self.telegram.chat_id, "text": text})

    async def _send_slack(self, text: str) -> None:
        await self._post(self.slack.webhook_url, {"text": text})

    def _send_email(self, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.email.sender or self.email.username
        msg["To"] = self.email.to
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.email.smtp_host, self.email.smtp_port, timeout=15) as s:
                s.starttls()
                if self.email.username:
                    s.login(self.email.username, self.email.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise AlertDeliveryError(str(e)) from e


class AlertDispatcher:
    """
    Fire-and-forget delivery on a bounded queue drained by worker tasks.

    Delivery is at-most-once with no ordering guarantee relative to the scan
    that produced the alert. When the queue is full the alert is dropped and
    logged.
    """

    def __init__(self, sink: AlertSink, max_pending: int = 100, workers: int = 2):
        self.sink = sink
        self.max_pending = max_pending
        self.workers = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        self._queue = queue
        self._tasks = [asyncio.create_task(self._worker(i, queue)) for i in range(self.workers)]

    async def stop(self, drain_timeout_s: float = 5.0) -> None:
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("alert_queue_not_drained", extra={"pending": self._queue.qsize() if self._queue else 0})
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    def _submit(self, label: str, job: Callable[[], Awaitable[None]]) -> bool:
        if self._queue is None:
            logger.warning("alert_dispatcher_not_started", extra={"alert": label})
            return False
        try:
            self._queue.put_nowait((label, job))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("alert_dropped_queue_full", extra={"alert": label, "dropped": self.dropped})
            return False
        return True

    def threat(self, address: str, volume: int, tier: ThreatTier) -> bool:
        return self._submit(f"threat:{address}", lambda: self.sink.notify_threat(address, volume, tier))

    def notify(self, subject: str, body: str, level: str = "info") -> bool:
        return self._submit(subject, lambda: self.sink.notify(subject, body, level=level))

    async def _worker(self, idx: int, queue: asyncio.Queue) -> None:
        while True:
            label, job = await queue.get()
            try:
                await job()
            except Exception:
                logger.exception("alert_delivery_failed", extra={"alert": label, "worker": idx})
            finally:
                queue.task_done()
