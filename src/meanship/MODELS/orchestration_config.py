"""
Models for the multi-service descriptor applied to the remote host.
"""
import hashlib
import json
from typing import List, Dict, Optional
from pydantic import BaseModel
from .service_definition import ServiceSpec
from ..UTILS.hosts import extract_hosts, is_loopback
from ..errors import DescriptorError


class ServiceDescriptor(BaseModel):
    """
    Complete topology for the stack: services, the shared network and the
    named volumes. Equivalent to a parsed docker-compose.yml file.
    """
    project: str = "meanship"
    services: Dict[str, ServiceSpec]
    network: str = "app-network"
    volumes: List[str] = []

    def service(self, name: str) -> ServiceSpec:
        if name not in self.services:
            raise DescriptorError(f"Service '{name}' is not defined in the descriptor")
        return self.services[name]

    def image_references(self) -> Dict[str, str]:
        """Image reference per service, in descriptor order."""
        return {name: svc.image for name, svc in self.services.items()}

    def digest(self) -> str:
        """Stable content hash, used to tell descriptor revisions apart."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return "sha256:" + hashlib.sha256(payload.encode()).hexdigest()

    def validate_topology(self) -> "ServiceDescriptor":
        """
        Checks the invariants the reconciler relies on.

        :raises DescriptorError: on the first violated rule.
        :return: self, so calls can be chained.
        """
        if not self.services:
            raise DescriptorError("Descriptor defines no services")

        for name, svc in self.services.items():
            if not svc.image:
                raise DescriptorError(f"Service '{name}' has no image reference")

            if self.network not in svc.networks:
                raise DescriptorError(
                    f"Service '{name}' is not attached to the shared network '{self.network}'"
                )

            for dep in svc.depends_on:
                if dep not in self.services:
                    raise DescriptorError(f"Service '{name}' depends on unknown service '{dep}'")

            for mount in svc.volumes:
                if mount.is_named_volume and mount.source not in self.volumes:
                    raise DescriptorError(
                        f"Service '{name}' mounts undeclared volume '{mount.source}'"
                    )

            for key, value in svc.environment.items():
                self._check_reference(name, key, value)

        return self

    def _check_reference(self, service: str, key: str, value: str) -> None:
        """
        Inter-service references must name a service on the shared network.
        Loopback never reaches another container's namespace.
        """
        for host, _ in extract_hosts(key, value):
            if is_loopback(host):
                raise DescriptorError(
                    f"Service '{service}' variable {key} points at loopback address "
                    f"'{host}'; use a service name on network '{self.network}'"
                )
            # Dotted names are treated as external hosts (managed databases etc.)
            if '.' not in host and host not in self.services:
                raise DescriptorError(
                    f"Service '{service}' variable {key} references unknown host '{host}'"
                )
