# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Image reference parsing and tag handling.
Parses references like 'mongo:6.0' or 'docker.io/acme/meanship-backend:abc123'.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace

# Registry tag grammar
TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


def is_valid_tag(tag: str) -> bool:
    return bool(TAG_PATTERN.match(tag or ""))


def tag_for_commit(commit: Optional[str]) -> str:
    """
    Deterministic image tag for a commit id; ``latest`` without a commit.

    Args:
        commit: Commit identifier from the trigger, possibly empty.

    Returns:
        The tag, lower-cased and stripped.
    """
    commit = (commit or "").strip().lower()
    return commit or ImageReference.DEFAULT_TAG


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - mongo -> docker.io/library/mongo:latest
        - acme/meanship-backend:v1 -> docker.io/acme/meanship-backend:v1
        - localhost:5000/app@sha256:abc123... -> localhost:5000/app@sha256:abc123...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'mongo:6.0', 'acme/app:v1')

        Returns:
            Parsed ImageReference object.
        """
        if not reference:
            raise ValueError("Empty image reference")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        # A colon is a tag separator unless what follows it contains a slash
        # (then it was a registry port, e.g. localhost:5000/image)
        tag = None
        last_colon = reference.rfind(":")
        if last_colon != -1:
            after_colon = reference[last_colon + 1:]
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]

        if tag is not None and not is_valid_tag(tag):
            raise ValueError(f"Invalid tag '{tag}'")

        parts = reference.split("/")
        if len(parts) == 1:
            registry = cls.DEFAULT_REGISTRY
            repository = f"library/{parts[0]}"
        else:
            first_part = parts[0]
            if "." in first_part or ":" in first_part or first_part == "localhost":
                registry = first_part
                repository = "/".join(parts[1:])
            else:
                registry = cls.DEFAULT_REGISTRY
                repository = reference

        if not repository or repository.endswith("/"):
            raise ValueError(f"Invalid repository in '{reference}'")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    def with_tag(self, tag: str) -> "ImageReference":
        """Same repository under another tag (digest dropped)."""
        if not is_valid_tag(tag):
            raise ValueError(f"Invalid tag '{tag}'")
        return replace(self, tag=tag, digest=None)

    @property
    def name(self) -> str:
        """Registry and repository, without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        if self.tag:
            return f"{self.name}:{self.tag}"
        return self.name

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[8:]
        if self.digest:
            return f"{repo}@{self.digest}"
        if self.tag:
            return f"{repo}:{self.tag}"
        return repo

    def __str__(self) -> str:
        return self.short_name
