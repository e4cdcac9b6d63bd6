"""Best-effort lifecycle notifications through an ntfy relay."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import httpx

from ralph_loop.config import NotificationSettings

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Lifecycle events the supervisor reports."""

    ITERATION = "iteration"
    RETRY = "retry"
    ERROR = "error"
    COMPLETE = "complete"
    ALL_BLOCKED = "all_blocked"
    MAX_ITERATIONS = "max_iterations"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class _EventStyle:
    title: str
    priority: str
    tags: tuple[str, ...]


_EVENT_STYLES: dict[NotificationEvent, _EventStyle] = {
    NotificationEvent.ITERATION: _EventStyle(
        "[Ralph] Progress",
        "low",
        ("arrows_counterclockwise",),
    ),
    NotificationEvent.RETRY: _EventStyle("[Ralph] Retry", "low", ("hourglass",)),
    NotificationEvent.ERROR: _EventStyle("[Ralph] Error", "urgent", ("x", "fire")),
    NotificationEvent.COMPLETE: _EventStyle(
        "[Ralph] Complete",
        "high",
        ("white_check_mark", "robot"),
    ),
    NotificationEvent.ALL_BLOCKED: _EventStyle(
        "[Ralph] Blocked",
        "urgent",
        ("stop_button", "warning"),
    ),
    NotificationEvent.MAX_ITERATIONS: _EventStyle(
        "[Ralph] Limit Hit",
        "high",
        ("warning", "hourglass"),
    ),
    NotificationEvent.FATAL: _EventStyle("[Ralph] Fatal", "urgent", ("x", "skull")),
}


class NotificationSink(Protocol):
    """Fire-and-forget event sink; implementations never raise."""

    def emit(self, event: NotificationEvent, message: str) -> None:
        """Deliver one event if possible."""


class NullNotificationSink:
    """Sink used when notifications are disabled."""

    def emit(self, event: NotificationEvent, message: str) -> None:
        return None

    def close(self) -> None:
        return None


class NtfyNotificationSink:
    """POST short messages to ``<server>/<topic>``; delivery failures are logged and dropped."""

    def __init__(
        self,
        *,
        server_url: str,
        topic: str,
        timeout_seconds: float = 5.0,
        project_name: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.topic = topic
        self.project_name = project_name
        self._url = f"{server_url.rstrip('/')}/{topic}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 3.0)),
            transport=transport,
        )

    def emit(self, event: NotificationEvent, message: str) -> None:
        style = _EVENT_STYLES.get(event, _EventStyle("[Ralph]", "default", ("robot",)))
        body = f"{self.project_name}\n{message}" if self.project_name else message
        try:
            response = self._client.post(
                self._url,
                content=body.encode("utf-8"),
                headers={
                    "Title": style.title,
                    "Priority": style.priority,
                    "Tags": ",".join(style.tags),
                },
            )
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            logger.warning("Notification %s to %s failed: %s", event.value, self._url, exc)
            return
        if not response.is_success:
            logger.warning(
                "Notification %s to %s rejected: HTTP %d",
                event.value,
                self._url,
                response.status_code,
            )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NtfyNotificationSink:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def resolve_topic(settings: NotificationSettings, *, project_dir: Path) -> str:
    """Configured topic, or ``<prefix>-<project dir name>``."""

    if settings.topic:
        return settings.topic
    prefix = settings.topic_prefix or "ralph"
    return f"{prefix}-{project_dir.name or 'project'}"


def build_notification_sink(
    settings: NotificationSettings,
    *,
    enabled: bool,
    project_dir: Path,
    transport: httpx.BaseTransport | None = None,
) -> NtfyNotificationSink | NullNotificationSink:
    if not enabled:
        return NullNotificationSink()
    return NtfyNotificationSink(
        server_url=settings.server_url,
        topic=resolve_topic(settings, project_dir=project_dir),
        timeout_seconds=settings.timeout_seconds,
        project_name=project_dir.name or None,
        transport=transport,
    )
