from __future__ import annotations

import sys

from .docker_ops import DockerRuntime
from .models import ServiceSpec
from .settings import settings


def stack_labels(stack: str, service: str | None = None) -> dict[str, str]:
    labels = {settings.stack_label: stack}
    if service:
        labels[settings.service_label] = service
    return labels


def container_labels(stack: str, service: str) -> dict[str, str]:
    labels = stack_labels(stack, service)
    labels[settings.managed_label] = "true"
    return labels


def _ordinal_key(name: str) -> tuple[int, str]:
    # s_web_2 before s_web_10; names without an ordinal go last
    _, _, suffix = name.rpartition("_")
    return (int(suffix), name) if suffix.isdigit() else (sys.maxsize, name)


class InstanceTracker:
    """Derives container names from what the runtime currently holds.

    Ordinals are recomputed on every call and are not reserved, so two
    concurrent reconciliations of one service may pick the same name.
    """

    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime

    def instance_count(self, stack: str, service: str) -> int:
        return len(self.runtime.list_containers(stack_labels(stack, service), all=True))

    def next_instance_name(self, stack: str, service: str) -> str:
        return f"{stack}_{service}_{self.instance_count(stack, service) + 1}"

    def container_name(self, stack: str, svc: ServiceSpec) -> str:
        """Name for the container a reconciliation pass will (re)create.

        An explicit ``container_name`` wins. Otherwise an existing instance of
        the service is reused so repeated starts replace it in place; only a
        service with no containers gets a fresh ordinal.
        """
        if svc.container_name:
            return svc.container_name
        existing = self.runtime.list_containers(stack_labels(stack, svc.name), all=True)
        if existing:
            return min((c.name for c in existing), key=_ordinal_key)
        return f"{stack}_{svc.name}_1"
