"""Stack description loading.

Turns the stored compose-style YAML plus the stack's dotenv text into a
``Project`` of normalized ``ServiceSpec`` records. Only the keys the
reconciler acts on are interpreted; anything else is accepted and ignored.
"""
from __future__ import annotations

import os
import re
import shlex
from typing import Any, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import db
from .errors import EnvStoreError, ProjectLoadError, StackNotFound
from .models import DependencyCondition, PortMapping, Project, ServiceSpec, VolumeBinding
from .settings import settings

_BRACED_VAR = re.compile(r"\$\{([^}]+)\}")
_SIMPLE_VAR = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def parse_env_file(content: str) -> dict[str, str]:
    env: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        env[key] = value
    return env


def substitute_env(text: str, env: dict[str, str]) -> str:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``$VAR``.

    Lookups go to ``env`` first, then the process environment. References
    that resolve to nothing are left as written. ``$$`` yields a literal ``$``.
    """

    def braced(m: re.Match[str]) -> str:
        expr = m.group(1)
        if ":-" in expr:
            name, default = (part.strip() for part in expr.split(":-", 1))
            return env.get(name) or os.environ.get(name) or default
        if expr in env:
            return env[expr]
        return os.environ.get(expr) or m.group(0)

    def simple(m: re.Match[str]) -> str:
        name = m.group(1)
        if name in env:
            return env[name]
        return os.environ.get(name) or m.group(0)

    # $$ is a literal $ and is never expanded
    return "$".join(_SIMPLE_VAR.sub(simple, _BRACED_VAR.sub(braced, part)) for part in text.split("$$"))


class ComposeService(BaseModel):
    model_config = ConfigDict(extra="allow")

    image: str
    command: Union[str, list[str], None] = None
    environment: Union[dict[str, Any], list[str], None] = None
    ports: list[Union[str, int, dict[str, Any]]] = Field(default_factory=list)
    volumes: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    networks: Union[list[str], dict[str, Any], None] = None
    network_mode: str | None = None
    depends_on: Union[list[str], dict[str, Any], None] = None
    restart: str | None = None
    cap_add: list[str] = Field(default_factory=list)
    container_name: str | None = None

    @field_validator("image")
    @classmethod
    def image_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("image must not be empty")
        return v


class ComposeNetwork(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None


class ComposeFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    services: dict[str, ComposeService]
    networks: dict[str, ComposeNetwork | None] = Field(default_factory=dict)


def _command(raw: str | list[str] | None) -> list[str] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return shlex.split(raw)
    return [str(x) for x in raw]


def _env_value(v: Any) -> str | None:
    if v is None:
        return None
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _environment(raw: dict[str, Any] | list[str] | None) -> dict[str, str | None]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): _env_value(v) for k, v in raw.items()}
    env: dict[str, str | None] = {}
    for item in raw:
        key, sep, value = str(item).partition("=")
        env[key] = value if sep else None
    return env


def _port(raw: str | int | dict[str, Any]) -> PortMapping:
    if isinstance(raw, dict):
        published = raw.get("published")
        return PortMapping(
            target=int(raw["target"]),
            protocol=raw.get("protocol") or "tcp",
            published=str(published) if published not in (None, "") else None,
            host_ip=raw.get("host_ip") or "0.0.0.0",
        )
    spec, _, protocol = str(raw).partition("/")
    parts = spec.rsplit(":", 2)
    if len(parts) == 3:
        host_ip, published, target = parts
    elif len(parts) == 2:
        host_ip, (published, target) = "", parts
    else:
        host_ip, published, target = "", "", parts[0]
    return PortMapping(
        target=int(target),
        protocol=protocol or "tcp",
        published=published or None,
        host_ip=host_ip or "0.0.0.0",
    )


def _bind_source(source: str, working_dir: str) -> str:
    """Absolute host path for a bind source; relative paths are taken from the stack's working dir."""
    return os.path.abspath(os.path.join(working_dir, os.path.expanduser(source)))


def _volume(raw: str | dict[str, Any], working_dir: str) -> VolumeBinding:
    if isinstance(raw, dict):
        kind = raw.get("type") or "bind"
        source = str(raw.get("source", ""))
        return VolumeBinding(
            source=_bind_source(source, working_dir) if kind == "bind" and source else source,
            target=str(raw["target"]),
            read_only=bool(raw.get("read_only", False)),
            type=kind,
        )
    parts = str(raw).split(":")
    if len(parts) == 1:
        return VolumeBinding(source="", target=parts[0], type="volume")
    source, target = parts[0], parts[1]
    read_only = len(parts) > 2 and "ro" in parts[2].split(",")
    # bare names (no path separator) are named volumes, which are not realized
    if not source.startswith((".", "/", "~")):
        return VolumeBinding(source=source, target=target, read_only=read_only, type="volume")
    return VolumeBinding(source=_bind_source(source, working_dir), target=target, read_only=read_only)


def _networks(raw: list[str] | dict[str, Any] | None, declared: dict[str, ComposeNetwork | None]) -> list[str]:
    if not raw:
        return []
    out = []
    for key in raw:
        net = declared.get(key)
        out.append(net.name if net is not None and net.name else key)
    return out


def _depends_on(raw: list[str] | dict[str, Any] | None) -> dict[str, DependencyCondition]:
    if not raw:
        return {}
    if isinstance(raw, list):
        return {name: DependencyCondition.STARTED for name in raw}
    return {
        name: DependencyCondition.parse((opts or {}).get("condition") if isinstance(opts, dict) else None)
        for name, opts in raw.items()
    }


def to_service_spec(
    name: str, svc: ComposeService, declared_networks: dict[str, ComposeNetwork | None], working_dir: str
) -> ServiceSpec:
    try:
        ports = [_port(p) for p in svc.ports]
        volumes = [_volume(v, working_dir) for v in svc.volumes]
    except (KeyError, ValueError) as e:
        raise ProjectLoadError(f"service '{name}': invalid port or volume definition: {e}") from e
    return ServiceSpec(
        name=name,
        image=svc.image,
        command=_command(svc.command),
        environment=_environment(svc.environment),
        ports=ports,
        volumes=volumes,
        network_mode=svc.network_mode,
        networks=_networks(svc.networks, declared_networks),
        depends_on=_depends_on(svc.depends_on),
        restart=svc.restart,
        cap_add=list(svc.cap_add),
        container_name=svc.container_name,
    )


def stack_workdir(name: str) -> str:
    return os.path.abspath(os.path.join(settings.stacks_dir, name))


def load_project(
    name: str, yaml_text: str, env: dict[str, str] | None = None, working_dir: str | None = None
) -> Project:
    """Parse a stack description. Raises ProjectLoadError on any problem.

    Relative bind sources resolve against ``working_dir``, by default the
    stack's directory under ``STACKD_STACKS_DIR``.
    """
    working_dir = working_dir or stack_workdir(name)
    text = substitute_env(yaml_text, env or {})
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ProjectLoadError(f"stack '{name}': invalid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ProjectLoadError(f"stack '{name}': expected a mapping with a 'services' key")
    try:
        compose = ComposeFile.model_validate(raw)
    except ValidationError as e:
        raise ProjectLoadError(f"stack '{name}': {e}") from e

    services = {
        svc_name: to_service_spec(svc_name, svc, compose.networks, working_dir)
        for svc_name, svc in compose.services.items()
    }
    return Project(name=name, services=services)


def get_env_map(name: str) -> dict[str, str]:
    return parse_env_file(db.read_env(name))


def project_for_stack(name: str) -> Project:
    try:
        row = db.get_stack(name)
    except EnvStoreError as e:
        raise ProjectLoadError(f"stack '{name}': {e}") from e
    if row is None:
        raise StackNotFound(f"stack '{name}' not found")
    env = parse_env_file(row.env)
    project = load_project(name, row.yaml, env)
    db.log_event("INFO", f"Loaded {len(project.services)} service(s), {len(env)} env variable(s)", stack=name)
    return project
