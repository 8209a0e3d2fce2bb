from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event
from typing import Any

from docker.errors import DockerException

from .db import log_event
from .dependencies import DependencyWaiter, dependency_order
from .docker_ops import DockerRuntime, restart_policy
from .errors import ResolutionError
from .models import SPECIAL_NETWORK_MODES, Project, RuntimeContainer, ServiceSpec, WaitOutcome
from .naming import InstanceTracker, container_labels, stack_labels
from .networks import NetworkResolver

OPERATIONAL = "Operational"
STOPPED = "Stopped"


@dataclass
class ReconcileReport:
    stack: str
    started: list[str] = field(default_factory=list)  # container names
    skipped: dict[str, str] = field(default_factory=dict)  # service -> reason


@dataclass(frozen=True)
class NetworkPlacement:
    mode: str | None = None  # passed as HostConfig.NetworkMode
    network: str | None = None  # named network, still to be resolved


def network_placement(stack: str, project: Project, svc: ServiceSpec) -> NetworkPlacement:
    """Pick network_mode, then the first listed network, then docker's default bridge."""
    if svc.network_mode:
        mode = svc.network_mode
        if mode.startswith("service:"):
            dep_name = mode[len("service:"):]
            dep = project.find_service(dep_name)
            if dep is not None and dep.container_name:
                return NetworkPlacement(mode=f"container:{dep.container_name}")
            return NetworkPlacement(mode=f"container:{stack}_{dep_name}_1")
        if mode in SPECIAL_NETWORK_MODES or mode.startswith("container:"):
            return NetworkPlacement(mode=mode)
        return NetworkPlacement(network=mode)
    if svc.networks:
        return NetworkPlacement(network=svc.networks[0])
    return NetworkPlacement()


def port_config(svc: ServiceSpec) -> tuple[list[tuple[int, str]], dict[str, tuple[str, str]]]:
    exposed: list[tuple[int, str]] = []
    bindings: dict[str, tuple[str, str]] = {}
    for p in svc.ports:
        exposed.append((p.target, p.protocol or "tcp"))
        if p.published:
            bindings[p.key] = (p.host_ip or "0.0.0.0", str(p.published))
    return exposed, bindings


def bind_mounts(svc: ServiceSpec) -> list[str]:
    return [v.as_bind() for v in svc.volumes if v.type in ("bind", "")]


def environment_list(svc: ServiceSpec) -> list[str]:
    # None means "not set here"; such keys are left out entirely.
    return [f"{k}={v}" for k, v in svc.environment.items() if v is not None]


class StackReconciler:
    """One-shot reconciliation of a stack against docker.

    Services are handled one at a time. A failure in one service is logged and
    that service skipped; the rest of the stack still goes ahead.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        resolver: NetworkResolver | None = None,
        waiter: DependencyWaiter | None = None,
        tracker: InstanceTracker | None = None,
    ):
        self.runtime = runtime
        self.resolver = resolver or NetworkResolver(runtime)
        self.waiter = waiter or DependencyWaiter(runtime)
        self.tracker = tracker or InstanceTracker(runtime)

    def start(
        self, stack: str, project: Project, is_update: bool = False, cancel: Event | None = None
    ) -> ReconcileReport:
        report = ReconcileReport(stack=stack)
        verb = "Updating" if is_update else "Starting"
        log_event("INFO", f"{verb} stack with {len(project.services)} service(s)", stack=stack)

        for name in dependency_order(project.services, stack=stack):
            svc = project.services[name]
            reason = self._reconcile_service(stack, project, svc, is_update, cancel, report)
            if reason:
                report.skipped[svc.name] = reason

        if is_update:
            self._prune_images(stack)

        log_event(
            "INFO",
            f"Stack reconciled: {len(report.started)} started, {len(report.skipped)} skipped",
            stack=stack,
        )
        return report

    def update(self, stack: str, project: Project, cancel: Event | None = None) -> ReconcileReport:
        return self.start(stack, project, is_update=True, cancel=cancel)

    def _reconcile_service(
        self,
        stack: str,
        project: Project,
        svc: ServiceSpec,
        is_update: bool,
        cancel: Event | None,
        report: ReconcileReport,
    ) -> str | None:
        """Create and start one service. Returns a skip reason, or None on success."""
        log_event("INFO", f"Processing service (image {svc.image})", stack=stack, service=svc.name)

        if is_update:
            try:
                self.runtime.pull_image(svc.image)
                log_event("INFO", f"Pulled image '{svc.image}'", stack=stack, service=svc.name)
            except DockerException as e:
                log_event(
                    "WARN", f"Error pulling image '{svc.image}', using local copy: {e}", stack=stack, service=svc.name
                )

        outcome = self.waiter.wait_for_dependencies(project, stack, svc, cancel)
        if outcome is not WaitOutcome.READY:
            return f"dependencies {outcome.value}"

        try:
            name = self.tracker.container_name(stack, svc)
        except DockerException as e:
            log_event("ERROR", f"Could not list existing containers: {e}", stack=stack, service=svc.name)
            return "runtime error"
        log_event("INFO", f"Container name: {name}", stack=stack, service=svc.name)

        placement = network_placement(stack, project, svc)
        network = None
        if placement.network:
            try:
                network = self.resolver.resolve(placement.network)
            except ResolutionError as e:
                log_event("ERROR", f"Skipping '{name}': {e}", stack=stack, service=svc.name)
                return "network not found"

        args = self._create_args(stack, svc, name, placement.mode, network)

        try:
            self.runtime.remove_container(name, force=True)
            log_event("INFO", f"Removed existing container '{name}'", stack=stack, service=svc.name)
        except DockerException:
            pass  # nothing to replace

        try:
            container_id = self.runtime.create_container(**args)
        except DockerException as e:
            log_event("ERROR", f"Failed to create container '{name}': {e}", stack=stack, service=svc.name)
            return "create failed"
        try:
            self.runtime.start_container(container_id)
        except DockerException as e:
            log_event("ERROR", f"Failed to start container '{name}': {e}", stack=stack, service=svc.name)
            return "start failed"

        log_event("INFO", f"Started container '{name}' (ID: {container_id[:12]})", stack=stack, service=svc.name)
        report.started.append(name)
        return None

    def _create_args(
        self, stack: str, svc: ServiceSpec, name: str, network_mode: str | None, network: str | None
    ) -> dict[str, Any]:
        ports, port_bindings = port_config(svc)
        return {
            "name": name,
            "image": svc.image,
            "command": list(svc.command) if svc.command else None,
            "environment": environment_list(svc),
            "labels": container_labels(stack, svc.name),
            "ports": ports,
            "port_bindings": port_bindings,
            "binds": bind_mounts(svc),
            "restart": restart_policy(svc.restart),
            "cap_add": list(svc.cap_add),
            "network_mode": network_mode,
            "network": network,
        }

    def _prune_images(self, stack: str) -> None:
        try:
            report = self.runtime.prune_dangling_images() or {}
            log_event("INFO", f"Reclaimed {report.get('SpaceReclaimed', 0)} bytes from dangling images", stack=stack)
        except DockerException as e:
            log_event("WARN", f"Error pruning images: {e}", stack=stack)

    def stop(self, stack: str) -> int:
        """Stop and remove every container of the stack.

        Per-container failures are logged and do not stop the teardown; the
        call always succeeds. Returns how many containers were removed.
        """
        try:
            containers = self.runtime.list_containers(stack_labels(stack), all=True)
        except DockerException as e:
            log_event("ERROR", f"Could not list containers: {e}", stack=stack)
            return 0
        log_event("INFO", f"Found {len(containers)} container(s) to stop", stack=stack)

        removed = 0
        for c in containers:
            try:
                self.runtime.stop_container(c.id)
            except DockerException as e:
                log_event("WARN", f"Error stopping container '{c.name}': {e}", stack=stack)
            try:
                self.runtime.remove_container(c.id, force=True)
                removed += 1
                log_event("INFO", f"Removed container '{c.name}'", stack=stack)
            except DockerException as e:
                log_event("ERROR", f"Error removing container '{c.name}': {e}", stack=stack)

        log_event("INFO", "Stack stopped", stack=stack)
        return removed

    def list_containers(self, stack: str) -> list[RuntimeContainer]:
        """Running containers of the stack."""
        return self.runtime.list_containers(stack_labels(stack))

    def status(self, stack: str) -> str:
        return OPERATIONAL if self.list_containers(stack) else STOPPED
