from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("STACKD_DB_PATH", "stackd.db")
    label_prefix: str = os.getenv("STACKD_LABEL_PREFIX", "stackd")
    docker_base_url: str | None = os.getenv("STACKD_DOCKER_BASE_URL")
    # relative bind sources of stack "x" resolve against <stacks_dir>/x
    stacks_dir: str = os.getenv("STACKD_STACKS_DIR", "stacks")

    # Env Store. Stack env text is encrypted with a key derived from this.
    env_password: str | None = os.getenv("STACKD_ENV_PASSWORD")

    # Reconciliation
    dependency_timeout_s: float = _env_float("STACKD_DEPENDENCY_TIMEOUT_S", 60.0)
    dependency_poll_s: float = _env_float("STACKD_DEPENDENCY_POLL_S", 1.0)
    stop_timeout_s: int = _env_int("STACKD_STOP_TIMEOUT_S", 10)

    # Sessions
    log_tail: int = _env_int("STACKD_LOG_TAIL", 200)
    shell: str = os.getenv("STACKD_SHELL", "/bin/sh")
    exec_read_size: int = _env_int("STACKD_EXEC_READ_SIZE", 4096)

    # API auth. Leaving the password unset disables auth (local use only).
    admin_user: str = os.getenv("STACKD_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("STACKD_ADMIN_PASSWORD")

    @property
    def stack_label(self) -> str:
        return f"{self.label_prefix}.stack"

    @property
    def service_label(self) -> str:
        return f"{self.label_prefix}.service"

    @property
    def managed_label(self) -> str:
        return f"{self.label_prefix}.managed"


settings = Settings()
