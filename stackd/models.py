from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

SPECIAL_NETWORK_MODES = frozenset({"host", "bridge", "none"})


class DependencyCondition(str, Enum):
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED_SUCCESSFULLY = "service_completed_successfully"

    @classmethod
    def parse(cls, raw: str | None) -> "DependencyCondition":
        """Map a compose ``condition`` value; unknown or missing means started."""
        if raw in ("started", None, ""):
            return cls.STARTED
        try:
            return cls(raw)
        except ValueError:
            return cls.STARTED


class WaitOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PortMapping:
    target: int
    protocol: str = "tcp"
    published: str | None = None
    host_ip: str = "0.0.0.0"

    @property
    def key(self) -> str:
        return f"{self.target}/{self.protocol or 'tcp'}"


@dataclass(frozen=True)
class VolumeBinding:
    source: str
    target: str
    read_only: bool = False
    type: str = "bind"

    def as_bind(self) -> str:
        bind = f"{self.source}:{self.target}"
        return f"{bind}:ro" if self.read_only else bind


@dataclass(frozen=True)
class ServiceSpec:
    """One service of a stack, after env substitution and normalization."""

    name: str
    image: str
    command: list[str] | None = None
    environment: dict[str, str | None] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)
    volumes: list[VolumeBinding] = field(default_factory=list)
    network_mode: str | None = None
    networks: list[str] = field(default_factory=list)
    depends_on: dict[str, DependencyCondition] = field(default_factory=dict)
    restart: str | None = None
    cap_add: list[str] = field(default_factory=list)
    container_name: str | None = None


@dataclass(frozen=True)
class Project:
    name: str
    services: dict[str, ServiceSpec]

    def find_service(self, name: str) -> ServiceSpec | None:
        return self.services.get(name)


@dataclass(frozen=True)
class RuntimeContainer:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    state: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:12]


# Network references. Tokens come from ``network_mode`` or ``networks`` entries.


@dataclass(frozen=True)
class SpecialMode:
    mode: str


@dataclass(frozen=True)
class ContainerScope:
    target: str


@dataclass(frozen=True)
class ServiceScope:
    service: str


@dataclass(frozen=True)
class Named:
    name: str


NetworkReference = Union[SpecialMode, ContainerScope, ServiceScope, Named]


def parse_network_ref(token: str) -> NetworkReference:
    if token in SPECIAL_NETWORK_MODES:
        return SpecialMode(token)
    if token.startswith("container:"):
        return ContainerScope(token[len("container:"):])
    if token.startswith("service:"):
        return ServiceScope(token[len("service:"):])
    return Named(token)
