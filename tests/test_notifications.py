from __future__ import annotations

from pathlib import Path

import allure
import httpx

from ralph_loop.config import NotificationSettings
from ralph_loop.supervisor.notifications import (
    NotificationEvent,
    NtfyNotificationSink,
    NullNotificationSink,
    build_notification_sink,
    resolve_topic,
)

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Notifications"),
]


def test_ntfy_sink_posts_message_with_event_headers() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    with NtfyNotificationSink(
        server_url="https://ntfy.example.com/",
        topic="ralph-demo",
        project_name="demo",
        transport=httpx.MockTransport(_handler),
    ) as sink:
        sink.emit(NotificationEvent.COMPLETE, "complete after 3 iteration(s).")

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://ntfy.example.com/ralph-demo"
    assert request.headers["Title"] == "[Ralph] Complete"
    assert request.headers["Priority"] == "high"
    assert request.headers["Tags"] == "white_check_mark,robot"
    assert request.content.decode("utf-8") == "demo\ncomplete after 3 iteration(s)."


def test_ntfy_sink_swallows_transport_errors(caplog) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("relay down", request=request)

    sink = NtfyNotificationSink(
        server_url="https://ntfy.example.com",
        topic="t",
        transport=httpx.MockTransport(_handler),
    )
    sink.emit(NotificationEvent.FATAL, "boom")
    sink.close()

    assert "failed" in caplog.text


def test_ntfy_sink_logs_rejected_response(caplog) -> None:
    sink = NtfyNotificationSink(
        server_url="https://ntfy.example.com",
        topic="t",
        transport=httpx.MockTransport(lambda request: httpx.Response(429)),
    )
    sink.emit(NotificationEvent.ITERATION, "progress")
    sink.close()

    assert "HTTP 429" in caplog.text


def test_resolve_topic_defaults_to_prefix_and_project_dir() -> None:
    settings = NotificationSettings(topic="", topic_prefix="ralph")

    assert resolve_topic(settings, project_dir=Path("/work/shop")) == "ralph-shop"
    assert resolve_topic(NotificationSettings(topic="mine"), project_dir=Path("/x")) == "mine"


def test_build_notification_sink_respects_enabled_flag(tmp_path) -> None:
    disabled = build_notification_sink(
        NotificationSettings(),
        enabled=False,
        project_dir=tmp_path,
    )
    enabled = build_notification_sink(
        NotificationSettings(topic="abc"),
        enabled=True,
        project_dir=tmp_path,
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )

    assert isinstance(disabled, NullNotificationSink)
    assert isinstance(enabled, NtfyNotificationSink)
    assert enabled.topic == "abc"
    enabled.close()
