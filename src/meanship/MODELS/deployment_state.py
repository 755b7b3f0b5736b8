"""
Models for the observed state of the remote host.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunningContainer(BaseModel):
    """
    One container as reported by the remote container runtime.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    name: str
    image: str
    tag: Optional[str] = None
    state: str = "running"


class DeploymentState(BaseModel):
    """
    Versioned record of what the remote host runs after a reconciliation.

    Version 0 is the empty state before the first deployment. Each successful
    reconciliation replaces the record with ``version + 1``.
    """
    version: int = 0
    project: str = ""
    commit: Optional[str] = None
    descriptor_digest: Optional[str] = None
    containers: List[RunningContainer] = []
    updated_at: str = Field(default_factory=_utcnow)

    def by_service(self) -> Dict[str, List[RunningContainer]]:
        grouped: Dict[str, List[RunningContainer]] = {}
        for container in self.containers:
            grouped.setdefault(container.service, []).append(container)
        return grouped

    def running_set(self) -> Dict[str, List[str]]:
        """Service name -> sorted images of its running containers."""
        return {
            service: sorted(c.image for c in containers if c.state == "running")
            for service, containers in self.by_service().items()
        }

    def next(self, **changes) -> "DeploymentState":
        """Builds the successor record with a bumped version."""
        data = self.model_dump()
        data.update(changes)
        data["version"] = self.version + 1
        data["updated_at"] = _utcnow()
        return DeploymentState(**data)
