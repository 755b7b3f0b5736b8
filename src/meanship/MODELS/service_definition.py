"""
Models for a single service of the deployed topology.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which the container runtime restarts a service.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class VolumeMount(BaseModel):
    """
    Maps a named volume (or host path) to a path inside the service.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_named_volume(self) -> bool:
        return not (self.source.startswith("/") or self.source.startswith("."))

    def to_compose(self) -> str:
        spec = f"{self.source}:{self.target}"
        if self.read_only:
            spec += ":ro"
        return spec


class ServiceSpec(BaseModel):
    """
    One service of the descriptor: what image it runs and how it is wired.
    """
    name: str
    image: str
    build_context: Optional[str] = None
    dockerfile: Optional[str] = None

    # Networking
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    expose: List[int] = []
    networks: List[str] = []

    environment: Dict[str, str] = {}
    volumes: List[VolumeMount] = []

    depends_on: List[str] = []
    restart: RestartPolicyCondition = RestartPolicyCondition.UNLESS_STOPPED

    labels: Dict[str, str] = Field(default_factory=dict)

    def listening_ports(self) -> List[int]:
        """Container ports the service accepts connections on."""
        ports = list(self.expose)
        for container_port in self.ports:
            if container_port not in ports:
                ports.append(container_port)
        return ports
