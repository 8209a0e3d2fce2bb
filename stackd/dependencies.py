from __future__ import annotations

import time
from enum import Enum
from threading import Event
from typing import Any, Callable

from docker.errors import DockerException

from .db import log_event
from .docker_ops import DockerRuntime
from .models import DependencyCondition, Project, ServiceSpec, WaitOutcome
from .settings import settings


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


def dependency_order(services: dict[str, ServiceSpec], stack: str | None = None) -> list[str]:
    """Services ordered so that dependencies come before their dependents.

    A cycle is reported once per back edge and that edge is treated as
    satisfied; each service appears exactly once. Dependencies that are not
    part of ``services`` are ignored here (the waiter reports them).
    """
    marks = {name: _Mark.UNVISITED for name in services}
    order: list[str] = []

    def visit(name: str) -> None:
        marks[name] = _Mark.IN_PROGRESS
        for dep in services[name].depends_on:
            mark = marks.get(dep)
            if mark is None or mark is _Mark.DONE:
                continue
            if mark is _Mark.IN_PROGRESS:
                log_event("WARN", f"Circular dependency detected involving service '{dep}'", stack=stack, service=name)
                continue
            visit(dep)
        marks[name] = _Mark.DONE
        order.append(name)

    for name in services:
        if marks[name] is _Mark.UNVISITED:
            visit(name)

    if order:
        log_event("INFO", f"Services sorted by dependencies: {order}", stack=stack)
    return order


def condition_met(attrs: dict[str, Any], condition: DependencyCondition) -> bool:
    state = attrs.get("State") or {}
    if condition is DependencyCondition.HEALTHY:
        return (state.get("Health") or {}).get("Status") == "healthy"
    if condition is DependencyCondition.COMPLETED_SUCCESSFULLY:
        return state.get("Status") == "exited" and state.get("ExitCode") == 0
    return state.get("Status") == "running"


def _pause(cancel: Event, seconds: float) -> bool:
    return cancel.wait(seconds)


class DependencyWaiter:
    """Blocks a service's startup until each dependency meets its condition.

    Dependencies are waited one after another in declaration order. Each wait
    polls ``inspect`` every ``interval_s`` until the condition holds, the
    ``timeout_s`` deadline passes or ``cancel`` is set.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        timeout_s: float | None = None,
        interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        pause: Callable[[Event, float], bool] = _pause,
    ):
        self.runtime = runtime
        self.timeout_s = settings.dependency_timeout_s if timeout_s is None else timeout_s
        self.interval_s = settings.dependency_poll_s if interval_s is None else interval_s
        self._clock = clock
        self._pause = pause

    @staticmethod
    def target_container(project: Project, stack: str, dependency: str) -> str | None:
        dep = project.find_service(dependency)
        if dep is None:
            return None
        return dep.container_name or f"{stack}_{dependency}_1"

    def wait_for(self, target: str, condition: DependencyCondition, cancel: Event | None = None) -> WaitOutcome:
        cancel = cancel or Event()
        deadline = self._clock() + self.timeout_s
        while True:
            if self._pause(cancel, self.interval_s):
                return WaitOutcome.CANCELLED
            if self._clock() >= deadline:
                return WaitOutcome.TIMED_OUT
            try:
                attrs = self.runtime.inspect_container(target)
            except DockerException:
                # not created yet, or the daemon hiccupped; keep polling
                continue
            if condition_met(attrs, condition):
                return WaitOutcome.READY

    def wait_for_dependencies(
        self, project: Project, stack: str, svc: ServiceSpec, cancel: Event | None = None
    ) -> WaitOutcome:
        if not svc.depends_on:
            return WaitOutcome.READY
        log_event("INFO", f"Waiting for dependencies {list(svc.depends_on)}", stack=stack, service=svc.name)

        for dep, condition in svc.depends_on.items():
            target = self.target_container(project, stack, dep)
            if target is None:
                log_event("ERROR", f"Dependency '{dep}' not found in project", stack=stack, service=svc.name)
                return WaitOutcome.NOT_FOUND
            outcome = self.wait_for(target, condition, cancel)
            if outcome is not WaitOutcome.READY:
                log_event(
                    "ERROR",
                    f"Dependency '{dep}' ({condition.value}) not ready: {outcome.value}",
                    stack=stack,
                    service=svc.name,
                )
                return outcome
            log_event("INFO", f"Dependency '{dep}' is ready", stack=stack, service=svc.name)
        return WaitOutcome.READY
