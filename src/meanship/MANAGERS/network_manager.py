"""
Model of the shared service network: name resolution and reachability
between the services of a descriptor.
"""
from typing import Dict, List, Optional
from ..MODELS.orchestration_config import ServiceDescriptor
from ..UTILS.hosts import extract_hosts, is_loopback


class NameResolutionError(Exception):
    """Raised when a host name does not resolve on the shared network."""


class ConnectionRefused(Exception):
    """Raised when the resolved service does not listen on the port."""


class SharedNetwork:
    """
    Resolves host names the way the container network's internal DNS does.

    Each service runs in its own network namespace: a service name resolves
    to that service, while a loopback address resolves back to the caller.
    """
    def __init__(self, descriptor: ServiceDescriptor):
        """
        :param descriptor: The topology whose shared network is modelled.
        """
        self.name = descriptor.network
        self.members: Dict[str, List[int]] = {
            name: svc.listening_ports()
            for name, svc in descriptor.services.items()
            if descriptor.network in svc.networks
        }

    def resolve(self, from_service: str, host: str) -> str:
        """
        Returns the service that ``host`` reaches from inside ``from_service``.

        :raises NameResolutionError: if ``host`` is not a member of the network.
        """
        if is_loopback(host):
            return from_service
        if host in self.members:
            return host
        raise NameResolutionError(f"'{host}' does not resolve on network '{self.name}'")

    def connect(self, from_service: str, host: str, port: int) -> str:
        """
        Simulates a TCP connection from ``from_service`` to ``host:port``.

        :return: The name of the service that accepted the connection.
        :raises NameResolutionError: if the host does not resolve.
        :raises ConnectionRefused: if nothing listens on that port there.
        """
        target = self.resolve(from_service, host)
        if port not in self.members.get(target, []):
            raise ConnectionRefused(
                f"{from_service} -> {host}:{port}: connection refused ({target} does not listen on {port})"
            )
        return target

    def check_environment(self, descriptor: ServiceDescriptor,
                          default_ports: Optional[Dict[str, int]] = None) -> Dict[str, str]:
        """
        Follows every in-network reference in each service's environment.

        :param descriptor: Descriptor whose environments are checked.
        :param default_ports: Port per URL scheme, for references without one.
        :return: ``"service:KEY"`` -> service reached, for every reference
            that stays on the network.
        :raises NameResolutionError, ConnectionRefused: on the first broken reference.
        """
        default_ports = default_ports or {"mongodb": 27017, "http": 80, "https": 443}
        reached = {}
        for name, svc in descriptor.services.items():
            for key, value in svc.environment.items():
                scheme = value.split("://", 1)[0] if "://" in value else None
                for host, port in extract_hosts(key, value):
                    if '.' in host and not is_loopback(host):
                        # External host, outside the shared network
                        continue
                    port = port or default_ports.get(scheme or "")
                    if port is None:
                        reached[f"{name}:{key}"] = self.resolve(name, host)
                    else:
                        reached[f"{name}:{key}"] = self.connect(name, host, port)
        return reached
