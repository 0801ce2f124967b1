# =============================================================================
# alert_dispatcher.py — Severity-gated fan-out of security events
#
#   critical / high  -> email + chat + paging
#   medium           -> email + chat
#   low              -> chat
#
# Channels run concurrently and independently: one failing channel never
# stops the others and nothing is raised to the caller. A channel with no
# configured endpoint is skipped with a warning.
# =============================================================================

import json
import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Callable

import httpx

from protection_engine import config
from protection_engine.models import SecurityEvent, Severity

logger = logging.getLogger(__name__)

CHANNEL_EMAIL  = "email"
CHANNEL_CHAT   = "chat"
CHANNEL_PAGING = "paging"

_CHANNELS_BY_SEVERITY = {
    Severity.CRITICAL: (CHANNEL_EMAIL, CHANNEL_CHAT, CHANNEL_PAGING),
    Severity.HIGH:     (CHANNEL_EMAIL, CHANNEL_CHAT, CHANNEL_PAGING),
    Severity.MEDIUM:   (CHANNEL_EMAIL, CHANNEL_CHAT),
    Severity.LOW:      (CHANNEL_CHAT,),
}

_PAGERDUTY_SEVERITY = {
    Severity.CRITICAL: "critical",
    Severity.HIGH:     "error",
    Severity.MEDIUM:   "warning",
    Severity.LOW:      "info",
}

_SEVERITY_EMOJI = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH:     "🟠",
    Severity.MEDIUM:   "🟡",
    Severity.LOW:      "🟢",
}


def channels_for(severity: Severity) -> tuple[str, ...]:
    return _CHANNELS_BY_SEVERITY[Severity(severity)]


def _event_time(event: SecurityEvent) -> str:
    ts = event.timestamp or 0
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat()


# ── Payload formatting ────────────────────────────────────────────────────────

def format_email(event: SecurityEvent, sender: str, recipient: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"Security Alert ({event.severity.value.upper()}): {event.category}"
    msg["From"]    = sender
    msg["To"]      = recipient
    lines = [
        "Security Alert",
        "",
        f"Type: {event.category}",
        f"Severity: {event.severity.value.upper()}",
        f"Time: {_event_time(event)}",
        f"IP Address: {event.actor}",
    ]
    if event.user_id:
        lines.append(f"User ID: {event.user_id}")
    if event.user_agent:
        lines.append(f"User Agent: {event.user_agent}")
    if event.description:
        lines.append(f"Description: {event.description}")
    lines += ["", "Details:", json.dumps(event.metadata, indent=2, default=str), "",
              "Please investigate this security alert immediately."]
    msg.set_content("\n".join(lines))
    return msg


def format_chat(event: SecurityEvent, dashboard_url: str = config.DASHBOARD_URL) -> dict:
    sev = event.severity
    return {
        "text": f"Security Alert: {event.category} ({sev.value.upper()})",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text",
                                        "text": f"🚨 Security Alert: {event.category}"}},
            {"type": "section", "fields": [
                {"type": "mrkdwn", "text": f"*Severity:*\n{_SEVERITY_EMOJI[sev]} {sev.value.upper()}"},
                {"type": "mrkdwn", "text": f"*Time:*\n{_event_time(event)}"},
                {"type": "mrkdwn", "text": f"*User ID:*\n{event.user_id or 'N/A'}"},
                {"type": "mrkdwn", "text": f"*IP Address:*\n{event.actor}"},
            ]},
            {"type": "section", "text": {"type": "mrkdwn",
                "text": f"*Details:*\n```{json.dumps(event.metadata, indent=2, default=str)}```"}},
            {"type": "context", "elements": [
                {"type": "mrkdwn", "text": f"<{dashboard_url}|Investigate in the security dashboard>"},
            ]},
        ],
    }


def format_paging(event: SecurityEvent, routing_key: str) -> dict:
    return {
        "routing_key":  routing_key,
        "event_action": "trigger",
        "dedup_key":    f"security_{event.category}_{event.id or event.timestamp}",
        "payload": {
            "summary":   f"Security Alert: {event.category} ({event.severity.value.upper()})",
            "source":    "adaptive-protection-engine",
            "severity":  _PAGERDUTY_SEVERITY[event.severity],
            "timestamp": _event_time(event),
            "component": "security-service",
            "group":     "security",
            "class":     event.category,
            "custom_details": {
                "ip":         event.actor,
                "user_id":    event.user_id or "N/A",
                "user_agent": event.user_agent or "N/A",
                "details":    event.metadata,
            },
        },
    }


# ── Dispatcher ────────────────────────────────────────────────────────────────

class AlertDispatcher:
    """Sends security events to email, chat and paging channels."""

    def __init__(
        self,
        email_to: str = config.ALERT_EMAIL_TO,
        email_from: str = config.ALERT_EMAIL_FROM,
        smtp_host: str = config.SMTP_HOST,
        smtp_port: int = config.SMTP_PORT,
        slack_webhook_url: str = config.SLACK_WEBHOOK_URL,
        pagerduty_routing_key: str = config.PAGERDUTY_ROUTING_KEY,
        pagerduty_url: str = config.PAGERDUTY_EVENTS_URL,
        http_client: httpx.Client | None = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout: float = config.ALERT_TIMEOUT_SECS,
    ):
        self.email_to   = email_to
        self.email_from = email_from
        self.smtp_host  = smtp_host
        self.smtp_port  = smtp_port
        self.slack_webhook_url     = slack_webhook_url
        self.pagerduty_routing_key = pagerduty_routing_key
        self.pagerduty_url         = pagerduty_url
        self.timeout = timeout
        self._smtp_factory = smtp_factory
        self._owns_client  = http_client is None
        self.http    = http_client or httpx.Client(timeout=timeout)
        self._pool   = ThreadPoolExecutor(max_workers=3, thread_name_prefix="alert")
        self._senders = {
            CHANNEL_EMAIL:  self.send_email,
            CHANNEL_CHAT:   self.send_chat,
            CHANNEL_PAGING: self.send_paging,
        }

    # ── Channels ──────────────────────────────────────────────────────────────

    def send_email(self, event: SecurityEvent) -> bool:
        if not self.email_to or not self.smtp_host:
            logger.warning("No security alert email configured")
            return False
        msg = format_email(event, self.email_from, self.email_to)
        with self._smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            smtp.send_message(msg)
        logger.info(f"Security alert email sent for {event.category}")
        return True

    def send_chat(self, event: SecurityEvent) -> bool:
        if not self.slack_webhook_url:
            logger.warning("No chat webhook configured for security alerts")
            return False
        resp = self.http.post(self.slack_webhook_url, json=format_chat(event))
        resp.raise_for_status()
        logger.info(f"Security alert sent to chat for {event.category}")
        return True

    def send_paging(self, event: SecurityEvent) -> bool:
        if not self.pagerduty_routing_key:
            logger.warning("No paging routing key configured")
            return False
        resp = self.http.post(self.pagerduty_url, json=format_paging(event, self.pagerduty_routing_key))
        resp.raise_for_status()
        logger.info(f"Security alert sent to paging for {event.category}")
        return True

    def _safe_send(self, channel: str, event: SecurityEvent) -> bool:
        try:
            return self._senders[channel](event)
        except Exception as e:
            logger.error(f"Failed to send security alert via {channel}: {e}")
            return False

    # ── Public API ────────────────────────────────────────────────────────────

    def dispatch(self, event: SecurityEvent) -> dict[str, bool]:
        """
        Fan an event out to every channel its severity calls for.

        Returns {channel: delivered}. Never raises.
        """
        channels = channels_for(event.severity)
        logger.warning(
            f"Security alert: {event.category} severity={event.severity.value} "
            f"channels={','.join(channels)}"
        )
        futures = {ch: self._pool.submit(self._safe_send, ch, event) for ch in channels}
        return {ch: fut.result() for ch, fut in futures.items()}

    def close(self):
        self._pool.shutdown(wait=True)
        if self._owns_client:
            self.http.close()
