"""
Models representing built and published container images.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum


class Component(str, Enum):
    """
    The two images the pipeline builds. Mongo runs a stock image.
    """
    BACKEND = "backend"
    FRONTEND = "frontend"


class ImageArtifact(BaseModel):
    """
    An image built from a source context. Immutable: a later build produces
    a new artifact with a new tag instead of changing this one.
    """
    model_config = ConfigDict(frozen=True)

    component: Component
    context_path: str
    dockerfile: str
    repository: str
    tag: str
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


class PublishedImage(BaseModel):
    """
    An artifact after it has been pushed to the registry.
    """
    model_config = ConfigDict(frozen=True)

    artifact: ImageArtifact
    reference: str
    repo_digest: Optional[str] = None
    aliases: List[str] = []
