"""Runtime configuration for the supervisor loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "claude -p --dangerously-skip-permissions --model {model} {prompt}"
)
DEFAULT_TRANSIENT_MARKERS: tuple[str, ...] = (
    "no messages returned",
    "econnreset",
    "eagain",
    "fetch failed",
    "etimedout",
    "socket hang up",
    "overloaded_error",
    "rate_limit_error",
    "rate limit exceeded",
    "api error: 429",
    "api error: 500",
    "api error: 502",
    "api error: 503",
    "api error: 529",
)


@dataclass(slots=True)
class LoopSettings:
    """Iteration budget and pacing."""

    max_iterations: int = 100
    sleep_seconds: float = 5.0


@dataclass(slots=True)
class RetrySettings:
    """Per-iteration retry policy settings."""

    max_attempts: int = 3
    delay_seconds: float = 10.0
    transient_markers: tuple[str, ...] = DEFAULT_TRANSIENT_MARKERS


@dataclass(slots=True)
class AgentSettings:
    """External agent command and execution tiers."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = "opus"
    fast_model: str = "sonnet"
    model_routes: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 0
    graceful_shutdown_seconds: int = 10


@dataclass(slots=True)
class WorkspaceSettings:
    """Task-list location and execution profile layout."""

    task_file_name: str = "PRD.md"
    profiles_dir: str = "apps"
    branch_template: str = "feat/{profile}-work"


@dataclass(slots=True)
class NotificationSettings:
    """ntfy relay settings."""

    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    topic_prefix: str = "ralph"
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    loop: LoopSettings = field(default_factory=LoopSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    notify: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching the interactive tool."""

        return cls(
            loop=LoopSettings(
                max_iterations=int(os.getenv("RALPH_LOOP_MAX_ITERATIONS", "100")),
                sleep_seconds=float(os.getenv("RALPH_LOOP_SLEEP_SECONDS", "5")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("RALPH_LOOP_MAX_ATTEMPTS", "3")),
                delay_seconds=float(os.getenv("RALPH_LOOP_RETRY_DELAY_SECONDS", "10")),
                transient_markers=_collect_transient_markers(),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "RALPH_LOOP_AGENT_COMMAND",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("RALPH_LOOP_MODEL", "opus"),
                fast_model=os.getenv("RALPH_LOOP_FAST_MODEL", "sonnet"),
                model_routes=_collect_model_routes(),
                timeout_seconds=int(os.getenv("RALPH_LOOP_AGENT_TIMEOUT_SECONDS", "0")),
                graceful_shutdown_seconds=int(
                    os.getenv("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
            ),
            workspace=WorkspaceSettings(
                task_file_name=os.getenv("RALPH_LOOP_TASK_FILE", "PRD.md"),
                profiles_dir=os.getenv("RALPH_LOOP_PROFILES_DIR", "apps"),
                branch_template=os.getenv("RALPH_LOOP_BRANCH_TEMPLATE", "feat/{profile}-work"),
            ),
            notify=NotificationSettings(
                enabled=_env_bool("RALPH_LOOP_NOTIFY", default=False),
                server_url=os.getenv("RALPH_LOOP_NTFY_SERVER", "https://ntfy.sh"),
                topic=os.getenv("RALPH_LOOP_NTFY_TOPIC", "").strip(),
                topic_prefix=os.getenv("RALPH_LOOP_NTFY_PREFIX", "ralph").strip(),
                timeout_seconds=float(os.getenv("RALPH_LOOP_NTFY_TIMEOUT_SECONDS", "5")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.loop.max_iterations <= 0:
            raise ValueError("RALPH_LOOP_MAX_ITERATIONS must be > 0.")
        if self.loop.sleep_seconds < 0:
            raise ValueError("RALPH_LOOP_SLEEP_SECONDS must be >= 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("RALPH_LOOP_MAX_ATTEMPTS must be > 0.")
        if self.retry.delay_seconds < 0:
            raise ValueError("RALPH_LOOP_RETRY_DELAY_SECONDS must be >= 0.")
        if self.agent.timeout_seconds < 0:
            raise ValueError("RALPH_LOOP_AGENT_TIMEOUT_SECONDS must be >= 0.")
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError("RALPH_LOOP_AGENT_COMMAND must include {prompt} or {prompt_file}.")
        if "{profile}" not in self.workspace.branch_template:
            raise ValueError("RALPH_LOOP_BRANCH_TEMPLATE must include {profile}.")
        if not self.workspace.task_file_name.strip():
            raise ValueError("RALPH_LOOP_TASK_FILE must not be empty.")
        if self.notify.enabled:
            _validate_server_url(self.notify.server_url)
            if self.notify.timeout_seconds <= 0:
                raise ValueError("RALPH_LOOP_NTFY_TIMEOUT_SECONDS must be > 0.")


def _collect_transient_markers() -> tuple[str, ...]:
    raw = os.getenv("RALPH_LOOP_TRANSIENT_MARKERS", "").strip()
    if not raw:
        return DEFAULT_TRANSIENT_MARKERS

    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)


def _collect_model_routes() -> dict[str, str]:
    """Parse `US=sonnet,V=haiku` into a task-id prefix to model map."""

    raw = os.getenv("RALPH_LOOP_MODEL_ROUTES", "").strip()
    routes: dict[str, str] = {}
    if not raw:
        return routes
    for part in raw.split(","):
        if not part.strip():
            continue
        prefix, sep, model = part.partition("=")
        prefix = prefix.strip().upper()
        model = model.strip()
        if not sep or not prefix or not model:
            raise ValueError(
                f"Invalid RALPH_LOOP_MODEL_ROUTES entry: {part.strip()!r}. Expected PREFIX=model.",
            )
        routes[prefix] = model
    return routes


def _validate_server_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid RALPH_LOOP_NTFY_SERVER: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
