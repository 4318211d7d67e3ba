"""
Engine configuration.

Defaults work out of the box. Deployments can override them from the
environment with EngineConfig.from_env(), or programmatically with the
with_*() methods, which return modified copies:

    config = EngineConfig.from_env().with_retry_policy(RetryPolicy.exponential())

Environment variables:
    PYCONDUCTOR_DEFAULT_MAX_RETRIES     retries per task when unspecified
    PYCONDUCTOR_DEFAULT_RETRY_DELAY_MS  retry delay when unspecified
    PYCONDUCTOR_RETRY_BACKOFF           multiplier, > 1 enables exponential backoff
    PYCONDUCTOR_RETRY_MAX_DELAY_MS      cap for exponential backoff
    PYCONDUCTOR_EMIT_TASK_STARTED       "1"/"true" publishes task.started
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from pyconductor.models.retry import RetryPolicy

ENV_PREFIX = "PYCONDUCTOR_"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for WorkflowEngine."""

    default_max_retries: int = 3
    """Retries allowed for tasks whose definition leaves max_retries out."""

    default_retry_delay_ms: int = 1000
    """Retry delay for tasks whose definition leaves retry_delay_ms out."""

    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy.FIXED)
    """Backoff strategy applied to every retry."""

    emit_task_started: bool = False
    """Publish a task.started event when a task begins running.

    Off by default: lifecycle consumers are expected to observe task starts
    through the workflow's updated_at and task statuses.
    """

    def __post_init__(self):
        if self.default_max_retries < 0:
            raise ValueError(
                f"default_max_retries must be non-negative, got {self.default_max_retries}"
            )
        if self.default_retry_delay_ms < 0:
            raise ValueError(
                f"default_retry_delay_ms must be non-negative, got {self.default_retry_delay_ms}"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """
        Build a configuration from environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ValueError: If a variable is set to an invalid value
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def read_int(name: str, default: int | None) -> int | None:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        backoff_raw = env.get(ENV_PREFIX + "RETRY_BACKOFF")
        if backoff_raw is None or backoff_raw.strip() == "":
            policy = defaults.retry_policy
        else:
            try:
                multiplier = float(backoff_raw)
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}RETRY_BACKOFF must be a number, got {backoff_raw!r}"
                ) from None
            policy = RetryPolicy(
                backoff_multiplier=multiplier,
                max_delay_ms=read_int("RETRY_MAX_DELAY_MS", None),
            )

        emit_raw = env.get(ENV_PREFIX + "EMIT_TASK_STARTED", "")

        return cls(
            default_max_retries=read_int("DEFAULT_MAX_RETRIES", defaults.default_max_retries),
            default_retry_delay_ms=read_int(
                "DEFAULT_RETRY_DELAY_MS", defaults.default_retry_delay_ms
            ),
            retry_policy=policy,
            emit_task_started=emit_raw.strip().lower() in _TRUTHY,
        )

    def with_max_retries(self, max_retries: int) -> "EngineConfig":
        return replace(self, default_max_retries=max_retries)

    def with_retry_delay(self, delay_ms: int) -> "EngineConfig":
        return replace(self, default_retry_delay_ms=delay_ms)

    def with_retry_policy(self, policy: RetryPolicy) -> "EngineConfig":
        return replace(self, retry_policy=policy)

    def with_task_started_events(self, enabled: bool = True) -> "EngineConfig":
        return replace(self, emit_task_started=enabled)
