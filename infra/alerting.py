"""Notifier: webhook delivery for exit notifications."""

from __future__ import annotations

import hashlib
import http.client
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from core.exceptions import NotifierFailure

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    SUCCESS = 15
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    recipient: Optional[str] = None
    timeout: float = 3.0
    dedupe_seconds: float = 60.0  # Suppress identical notifications within 60s


class AlertService:
    """
    Send exit notifications to a webhook.

    Delivery is fire-and-forget from the engine's point of view: callers catch
    NotifierFailure and move on. Identical notifications inside the dedupe
    window are dropped.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._last_sent: Dict[str, float] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)

        if not webhook_url or "${" in webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        recipient = raw_config.get("recipient")
        if recipient and "${" in recipient:
            recipient = os.path.expandvars(recipient)
        if recipient and "${" in recipient:
            # placeholder left unexpanded: variable not set
            recipient = None

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "info"),
                default=AlertSeverity.INFO,
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            recipient=recipient or None,
            timeout=float(raw_config.get("timeout_seconds", 3.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        recipient: Optional[str] = None,
    ) -> bool:
        """
        Deliver one notification.

        Returns:
            True if sent (or logged in dry-run), False if filtered or deduped

        Raises:
            NotifierFailure: the webhook could not be reached or rejected the payload
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._clock()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug(f"Notification deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._last_sent[fingerprint] = now
        self._prune(now)

        payload = self._build_payload(
            severity, title, message, context, recipient or self._config.recipient
        )

        if self._config.dry_run:
            logger.info("[NOTIFY:%s] %s - %s | %s", severity.name, title, message, context or {})
            return True

        self._post(payload)
        return True

    def notify_recipient(self, recipient: Optional[str], subject: str, message: str,
                         severity: Union[AlertSeverity, str] = AlertSeverity.INFO) -> bool:
        """Notifier contract: {recipient, subject, message, severity}; severity may be a name."""
        if isinstance(severity, str):
            severity = AlertSeverity.from_string(severity, default=AlertSeverity.INFO)
        return self.notify(severity, subject, message, recipient=recipient)

    def _post(self, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8")
        try:
            request = urllib.request.Request(
                self._config.webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
            )
        except ValueError as exc:
            raise NotifierFailure(f"invalid webhook url: {exc}") from exc

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise NotifierFailure(f"webhook returned {response.status}: {body[:200]}")
        except (urllib.error.URLError, http.client.HTTPException, socket.timeout, OSError) as exc:
            raise NotifierFailure(f"webhook unreachable: {exc}") from exc
        except ValueError as exc:
            raise NotifierFailure(f"invalid webhook url: {exc}") from exc

    def _prune(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 1.0) * 5
        stale = [fp for fp, ts in self._last_sent.items() if now - ts > horizon]
        for fp in stale:
            del self._last_sent[fp]

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
        recipient: Optional[str],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {
            "text": " | ".join(filter(None, line_items)),
            "recipient": recipient,
            "subject": title,
            "message": message,
            "severity": str(severity),
        }


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
