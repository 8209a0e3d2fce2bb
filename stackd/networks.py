from __future__ import annotations

from docker.errors import DockerException

from .db import log_event
from .docker_ops import DockerRuntime
from .errors import NetworkNotFound, ResolutionError
from .models import ContainerScope, Named, ServiceScope, SpecialMode, parse_network_ref


class NetworkResolver:
    """Turn a network token into something the runtime accepts.

    Read-only: only lists/inspects containers and networks.
    """

    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime

    def resolve(self, token: str) -> str:
        ref = parse_network_ref(token)
        if isinstance(ref, (SpecialMode, ContainerScope)):
            return token

        target = ref.name if isinstance(ref, Named) else self._network_of_service(ref)

        try:
            networks = self.runtime.list_networks()
        except DockerException as e:
            raise ResolutionError(f"failed to list networks: {e}") from e
        for net in networks:
            if net["name"] == target or net["id"] == target:
                log_event("INFO", f"Network '{target}' found (ID: {net['id'][:12]})")
                return net["name"]
        raise NetworkNotFound(target, [n["name"] for n in networks])

    def _network_of_service(self, ref: ServiceScope) -> str:
        """Pick a network the named container is attached to, else the name itself."""
        try:
            matches = self.runtime.list_containers(all=True, name=ref.service)
            if matches:
                attrs = self.runtime.inspect_container(matches[0].id)
                attached = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
                for net_name in attached:
                    log_event("INFO", f"Found network '{net_name}' from container '{ref.service}'")
                    return net_name
        except DockerException as e:
            log_event("WARN", f"Could not inspect container '{ref.service}': {e}")
        log_event("INFO", f"Trying network name '{ref.service}' directly")
        return ref.service
