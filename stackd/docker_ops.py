from __future__ import annotations

import socket
from typing import Any

import docker
from docker.errors import DockerException
from docker.utils.socket import read as socket_read

from .models import RuntimeContainer
from .settings import settings


def label_filters(labels: dict[str, str]) -> dict[str, Any]:
    return {"label": [f"{k}={v}" for k, v in labels.items()]}


def restart_policy(raw: str | None) -> dict[str, Any] | None:
    """Translate a compose ``restart`` value into docker's RestartPolicy."""
    if not raw:
        return None
    name, _, retries = raw.partition(":")
    policy: dict[str, Any] = {"Name": name}
    if name == "on-failure" and retries.isdigit():
        policy["MaximumRetryCount"] = int(retries)
    return policy


def _shutdown(sock: Any) -> None:
    # shutdown wakes a reader blocked in another thread; close alone may not
    raw = getattr(sock, "_sock", sock)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class ExecSession:
    """An attached exec (tty) as a raw duplex byte stream."""

    def __init__(self, exec_id: str, sock: Any):
        self.exec_id = exec_id
        self._sock = sock

    def read(self, n: int = 4096) -> bytes:
        # b"" on EOF
        return socket_read(self._sock, n)

    def write(self, data: bytes) -> None:
        raw = getattr(self._sock, "_sock", self._sock)
        raw.sendall(data)

    def close(self) -> None:
        _shutdown(self._sock)
        try:
            self._sock.close()
        except OSError:
            pass


class LogStream:
    """Followed log body of one container. ``close`` may be called from any thread."""

    def __init__(self, response: Any, sock: Any):
        self._response = response
        self._sock = sock

    def read(self, n: int) -> bytes:
        return self._response.raw.read(n)

    def close(self) -> None:
        _shutdown(self._sock)
        self._response.close()


class DockerRuntime:
    """Thin adapter over docker-py used by the reconciler and session handlers.

    Every call goes to the daemon; nothing is cached here. Failures surface as
    ``docker.errors`` exceptions.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if settings.docker_base_url:
                self._client = docker.DockerClient(base_url=settings.docker_base_url)
            else:
                self._client = docker.from_env()
        return self._client

    @property
    def api(self) -> docker.APIClient:
        return self.client.api

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    # containers

    def list_containers(
        self,
        labels: dict[str, str] | None = None,
        all: bool = False,
        name: str | None = None,
    ) -> list[RuntimeContainer]:
        filters = label_filters(labels or {})
        if name:
            filters["name"] = name
        out: list[RuntimeContainer] = []
        for c in self.api.containers(all=all, filters=filters):
            names = c.get("Names") or [""]
            out.append(
                RuntimeContainer(
                    id=c["Id"],
                    name=names[0].lstrip("/"),
                    labels=c.get("Labels") or {},
                    state=c.get("State", ""),
                )
            )
        return out

    def inspect_container(self, id_or_name: str) -> dict[str, Any]:
        return self.api.inspect_container(id_or_name)

    def create_container(
        self,
        name: str,
        image: str,
        command: list[str] | None = None,
        environment: list[str] | None = None,
        labels: dict[str, str] | None = None,
        ports: list[tuple[int, str]] | None = None,
        port_bindings: dict[str, tuple[str, str]] | None = None,
        binds: list[str] | None = None,
        restart: dict[str, Any] | None = None,
        cap_add: list[str] | None = None,
        network_mode: str | None = None,
        network: str | None = None,
    ) -> str:
        host_config = self.api.create_host_config(
            binds=binds or None,
            port_bindings=port_bindings or None,
            restart_policy=restart,
            cap_add=cap_add or None,
            network_mode=network_mode,
        )
        networking_config = None
        if network:
            networking_config = self.api.create_networking_config({network: self.api.create_endpoint_config()})
        resp = self.api.create_container(
            image,
            command=command or None,
            environment=environment or None,
            labels=labels or {},
            ports=ports or None,
            host_config=host_config,
            networking_config=networking_config,
            name=name,
        )
        return resp["Id"]

    def start_container(self, container_id: str) -> None:
        self.api.start(container_id)

    def stop_container(self, container_id: str, timeout: int | None = None) -> None:
        self.api.stop(container_id, timeout=timeout if timeout is not None else settings.stop_timeout_s)

    def remove_container(self, container_id: str, force: bool = True) -> None:
        self.api.remove_container(container_id, force=force)

    # networks and images

    def list_networks(self) -> list[dict[str, str]]:
        return [{"id": n["Id"], "name": n["Name"]} for n in self.api.networks()]

    def pull_image(self, ref: str) -> None:
        self.client.images.pull(ref)

    def prune_dangling_images(self) -> dict[str, Any]:
        return self.api.prune_images(filters={"dangling": True})

    # streams

    def exec_shell(self, container_id: str, cmd: list[str] | None = None) -> ExecSession:
        exec_id = self.api.exec_create(
            container_id,
            cmd or [settings.shell],
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
        )["Id"]
        sock = self.api.exec_start(exec_id, tty=True, socket=True)
        return ExecSession(exec_id, sock)

    def follow_logs(self, container_id: str, tail: int | None = None) -> LogStream:
        """Return the raw multiplexed log body (8-byte frame headers intact).

        ``APIClient.logs`` strips the frame headers itself, so the request is
        issued directly and the undecoded response body handed back.
        """
        params = {
            "stdout": 1,
            "stderr": 1,
            "follow": 1,
            "timestamps": 0,
            "tail": str(tail if tail is not None else settings.log_tail),
        }
        # private APIClient helpers, checked against docker 7.1.0 and 7.2.0
        res = self.api._get(self.api._url("/containers/{0}/logs", container_id), params=params, stream=True)
        sock = self.api._get_raw_response_socket(res)
        return LogStream(res, sock)
