"""Run outcome notifications.

Notifiers never raise: a failed delivery is logged and counted, and the
export result stands as it is.
"""

from typing import Protocol

import httpx
import structlog

from pgp_export import metrics
from pgp_export.config import settings

logger = structlog.get_logger()


def success_subject(process_name: str) -> str:
    return f"{process_name} - PGP Encryption Process Completed Successfully"


def failure_subject(process_name: str) -> str:
    return f"URGENT: {process_name} - PGP Encryption Process Failed"


def success_body(process_name: str, summary: str) -> str:
    return f"Process: {process_name}\n\n{summary}"


def failure_body(process_name: str, error_message: str) -> str:
    return f"Process: {process_name}\n\nERROR DETAILS:\n{error_message}"


class Notifier(Protocol):
    def notify(self, recipient: str, subject: str, body: str) -> bool:
        """Deliver a notification. Returns True when it was sent."""
        ...


def _kind(subject: str) -> str:
    return "failure" if subject.startswith("URGENT:") else "success"


class LogNotifier:
    """Writes notifications to the structured log (no delivery channel configured)."""

    def notify(self, recipient: str, subject: str, body: str) -> bool:
        logger.info("notification", recipient=recipient, subject=subject, body=body)
        metrics.NOTIFICATIONS_TOTAL.labels(kind=_kind(subject), status="skipped").inc()
        return True


class WebhookNotifier:
    """POSTs ``{"recipient", "subject", "body"}`` JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float | None = None) -> None:
        self.url = url
        self.timeout = timeout if timeout is not None else settings.notify_timeout

    def notify(self, recipient: str, subject: str, body: str) -> bool:
        kind = _kind(subject)
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.url,
                    json={"recipient": recipient, "subject": subject, "body": body},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "notification_failed",
                url=self.url,
                recipient=recipient,
                subject=subject,
                error=str(e),
            )
            metrics.NOTIFICATIONS_TOTAL.labels(kind=kind, status="failed").inc()
            return False

        logger.info("notification_sent", recipient=recipient, subject=subject)
        metrics.NOTIFICATIONS_TOTAL.labels(kind=kind, status="sent").inc()
        return True


def get_notifier() -> Notifier:
    """Notifier for the current settings (webhook if configured)."""
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LogNotifier()
