import io
import os
import secrets
import sys
import threading
from dataclasses import replace

import pytest
from docker.errors import APIError, NotFound

# Ensure project root is importable (so `import main` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from stackd import db  # noqa: E402
from stackd.models import RuntimeContainer  # noqa: E402
from stackd.settings import settings  # noqa: E402


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(
        db, "settings", replace(settings, db_path=str(tmp_path / "stackd.db"), env_password="test-env-password")
    )
    db.init_db()
    return tmp_path / "stackd.db"


class FakeClock:
    """Monotonic clock whose pauses advance time instantly."""

    def __init__(self):
        self.now = 0.0
        self.pauses = 0

    def __call__(self) -> float:
        return self.now

    def pause(self, cancel: threading.Event, seconds: float) -> bool:
        self.pauses += 1
        self.now += seconds
        return cancel.is_set()


class FakeExecSession:
    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.writes = []
        self.closed = threading.Event()

    def read(self, n=4096):
        if self.chunks:
            return self.chunks.pop(0)
        return b""

    def write(self, data):
        self.writes.append(data)

    def close(self):
        self.closed.set()


class FakeRuntime:
    """In-memory stand-in for DockerRuntime with docker's error behaviour."""

    def __init__(self):
        self.containers = {}  # id -> dict
        self.networks = [
            {"id": "b" * 64, "name": "bridge"},
            {"id": "h" * 64, "name": "host"},
            {"id": "a" * 64, "name": "appnet"},
        ]
        self.created = []  # create_container kwargs in call order
        self.removed = []
        self.stopped = []
        self.pulled = []
        self.prunes = 0
        self.pull_error = None
        self.fail_create = set()
        self.fail_start = set()
        self.fail_stop = set()
        self.inspects = 0
        self.logs = {}
        self.exec_sessions = []

    # helpers

    def add_container(self, name, labels=None, state="running", networks=None, health=None, exit_code=0):
        cid = secrets.token_hex(32)
        self.containers[cid] = {
            "id": cid,
            "name": name,
            "labels": dict(labels or {}),
            "state": state,
            "networks": dict(networks or {}),
            "health": health,
            "exit_code": exit_code,
        }
        return cid

    def _find(self, id_or_name):
        for c in self.containers.values():
            if c["id"] == id_or_name or c["name"] == id_or_name:
                return c
        raise NotFound(f"No such container: {id_or_name}")

    def running(self, **labels):
        return [
            c["name"]
            for c in self.containers.values()
            if c["state"] == "running" and all(c["labels"].get(k) == v for k, v in labels.items())
        ]

    # DockerRuntime surface

    def available(self):
        return True

    def list_containers(self, labels=None, all=False, name=None):
        out = []
        for c in self.containers.values():
            if not all and c["state"] != "running":
                continue
            if any(c["labels"].get(k) != v for k, v in (labels or {}).items()):
                continue
            if name and name not in c["name"]:
                continue
            out.append(RuntimeContainer(id=c["id"], name=c["name"], labels=dict(c["labels"]), state=c["state"]))
        return out

    def inspect_container(self, id_or_name):
        self.inspects += 1
        c = self._find(id_or_name)
        state = {"Status": c["state"], "ExitCode": c["exit_code"]}
        if c["health"]:
            state["Health"] = {"Status": c["health"]}
        return {"Id": c["id"], "Name": "/" + c["name"], "State": state, "NetworkSettings": {"Networks": c["networks"]}}

    def create_container(self, **kwargs):
        name = kwargs["name"]
        if name in self.fail_create:
            raise APIError(f"cannot create {name}")
        if any(c["name"] == name for c in self.containers.values()):
            raise APIError(f"Conflict. The container name \"/{name}\" is already in use")
        self.created.append(kwargs)
        networks = {kwargs["network"]: {}} if kwargs.get("network") else {"bridge": {}}
        return self.add_container(name, labels=kwargs.get("labels"), state="created", networks=networks)

    def start_container(self, container_id):
        c = self._find(container_id)
        if c["name"] in self.fail_start:
            raise APIError(f"cannot start {c['name']}")
        c["state"] = "running"

    def stop_container(self, container_id, timeout=None):
        c = self._find(container_id)
        if c["name"] in self.fail_stop:
            raise APIError(f"cannot stop {c['name']}")
        self.stopped.append(c["name"])
        c["state"] = "exited"

    def remove_container(self, container_id, force=True):
        c = self._find(container_id)
        del self.containers[c["id"]]
        self.removed.append(c["name"])

    def list_networks(self):
        return list(self.networks)

    def pull_image(self, ref):
        self.pulled.append(ref)
        if self.pull_error:
            raise self.pull_error

    def prune_dangling_images(self):
        self.prunes += 1
        return {"SpaceReclaimed": 1024}

    def follow_logs(self, container_id, tail=None):
        return io.BytesIO(self.logs.get(container_id, b""))

    def exec_shell(self, container_id, cmd=None):
        session = FakeExecSession([b"$ "])
        self.exec_sessions.append(session)
        return session


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def clock():
    return FakeClock()
