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
Unit tests for the registry module.
"""
import pytest
from meanship.MODELS.container_image import Component, ImageArtifact
from meanship.REGISTRY.image_reference import ImageReference, is_valid_tag, tag_for_commit
from meanship.REGISTRY.registry_client import RegistryAuth, RegistryPublisher
from meanship.errors import AuthError, PushError

REPOSITORY = "docker.io/deployer/meanship-backend"


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Test parsing a simple image name."""
        ref = ImageReference.parse("mongo")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/mongo"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        """Test parsing image with tag."""
        ref = ImageReference.parse("mongo:6.0")
        assert ref.repository == "library/mongo"
        assert ref.tag == "6.0"

    def test_parse_user_image(self):
        """Test parsing user/image format."""
        ref = ImageReference.parse("deployer/meanship-frontend:abc123")
        assert ref.registry == "docker.io"
        assert ref.repository == "deployer/meanship-frontend"
        assert ref.tag == "abc123"

    def test_parse_full_reference(self):
        """Test parsing full registry reference."""
        ref = ImageReference.parse("ghcr.io/acme/meanship-backend:v1")
        assert ref.registry == "ghcr.io"
        assert ref.repository == "acme/meanship-backend"
        assert ref.name == "ghcr.io/acme/meanship-backend"

    def test_parse_with_digest(self):
        """Test parsing image with digest."""
        ref = ImageReference.parse("mongo@sha256:abc123")
        assert ref.digest == "sha256:abc123"
        assert ref.tag is None
        assert ref.full_name == "docker.io/library/mongo@sha256:abc123"

    def test_parse_registry_with_port(self):
        """A colon followed by a path is a registry port, not a tag."""
        ref = ImageReference.parse("localhost:5000/meanship-backend")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "meanship-backend"
        assert ref.tag == "latest"

    def test_parse_rejects_bad_tag(self):
        with pytest.raises(ValueError):
            ImageReference.parse("mongo:-bad")

    def test_parse_rejects_empty(self):
        with pytest.raises(ValueError):
            ImageReference.parse("")

    def test_short_name(self):
        """Test short_name property."""
        assert ImageReference.parse("mongo:6.0").short_name == "mongo:6.0"
        assert ImageReference.parse("acme/app:v1").short_name == "acme/app:v1"
        assert ImageReference.parse("ghcr.io/acme/app:v1").short_name == "ghcr.io/acme/app:v1"

    def test_with_tag(self):
        ref = ImageReference.parse(f"{REPOSITORY}:abc123").with_tag("latest")
        assert ref.full_name == f"{REPOSITORY}:latest"


class TestTags:
    """Tests for commit-derived tags."""

    def test_tag_is_commit(self):
        assert tag_for_commit("abc123") == "abc123"

    def test_tag_is_lowercased(self):
        assert tag_for_commit(" ABC123 ") == "abc123"

    def test_missing_commit_means_latest(self):
        assert tag_for_commit(None) == "latest"
        assert tag_for_commit("") == "latest"

    @pytest.mark.parametrize("tag", ["abc123", "v1.2.3", "feature_x", "a" * 128])
    def test_valid_tags(self, tag):
        assert is_valid_tag(tag)

    @pytest.mark.parametrize("tag", ["", ".hidden", "-dash", "a/b", "a" * 129, "x y"])
    def test_invalid_tags(self, tag):
        assert not is_valid_tag(tag)


def _artifact(engine, tag="abc123"):
    artifact = ImageArtifact(
        component=Component.BACKEND,
        context_path="/src/backend",
        dockerfile="/src/backend/Dockerfile",
        repository=REPOSITORY,
        tag=tag,
    )
    engine.local_images[artifact.reference] = "sha256:" + "1" * 64
    return artifact


def _publisher(engine, **kwargs):
    sleeps = []
    kwargs.setdefault("backoff", 0)
    publisher = RegistryPublisher(
        auth=RegistryAuth(username="deployer", token="s3cret"),
        runner=engine,
        sleep=sleeps.append,
        **kwargs,
    )
    return publisher, sleeps


class TestRegistryPublisher:
    """Tests for pushing artifacts."""

    def test_publish_pushes_tag_and_latest(self, engine):
        publisher, _ = _publisher(engine)
        published = publisher.publish(_artifact(engine))

        assert engine.pushes == [f"{REPOSITORY}:abc123", f"{REPOSITORY}:latest"]
        assert published.reference == f"{REPOSITORY}:abc123"
        assert published.aliases == [f"{REPOSITORY}:latest"]
        assert published.repo_digest == f"{REPOSITORY}@sha256:" + "1" * 64

    def test_publish_without_latest(self, engine):
        publisher, _ = _publisher(engine, publish_latest=False)
        published = publisher.publish(_artifact(engine))

        assert engine.pushes == [f"{REPOSITORY}:abc123"]
        assert published.aliases == []
        assert not engine.commands_starting("docker", "tag")

    def test_login_uses_stdin_once(self, engine):
        publisher, _ = _publisher(engine)
        publisher.publish(_artifact(engine, "abc123"))
        publisher.publish(_artifact(engine, "def456"))

        logins = engine.commands_starting("docker", "login")
        assert len(logins) == 1
        assert "s3cret" not in logins[0]
        assert "--password-stdin" in logins[0]

    def test_transient_failure_is_retried(self, engine):
        artifact = _artifact(engine)
        engine.push_failures[artifact.reference] = 2
        publisher, sleeps = _publisher(engine, attempts=3, publish_latest=False)

        published = publisher.publish(artifact)

        assert published.reference == artifact.reference
        assert len(engine.commands_starting("docker", "push")) == 3
        assert len(sleeps) == 2

    def test_retry_budget_exhausted(self, engine):
        artifact = _artifact(engine)
        engine.push_failures[artifact.reference] = 10
        publisher, _ = _publisher(engine, attempts=3)

        with pytest.raises(PushError):
            publisher.publish(artifact)
        assert len(engine.commands_starting("docker", "push")) == 3
        assert engine.pushes == []

    def test_push_timeout_is_push_error(self, engine):
        engine.timeouts.add("docker push")
        publisher, _ = _publisher(engine, attempts=2)

        with pytest.raises(PushError, match="timed out"):
            publisher.publish(_artifact(engine))
        assert len(engine.commands_starting("docker", "push")) == 2

    def test_rejected_login_is_auth_error(self, engine):
        engine.credentials = ("deployer", "other-token")
        publisher, _ = _publisher(engine)

        with pytest.raises(AuthError) as exc_info:
            publisher.publish(_artifact(engine))
        assert exc_info.value.kind == "AuthError"
        assert not engine.commands_starting("docker", "push")

    def test_denied_push_is_not_retried(self, engine):
        artifact = _artifact(engine)
        engine.push_failures[artifact.reference] = 10
        engine.push_error = "denied: requested access to the resource is denied"
        publisher, sleeps = _publisher(engine, attempts=5)

        with pytest.raises(AuthError):
            publisher.publish(artifact)
        assert len(engine.commands_starting("docker", "push")) == 1
        assert sleeps == []

    def test_missing_credentials(self, engine):
        publisher = RegistryPublisher(auth=RegistryAuth(), runner=engine)
        with pytest.raises(AuthError, match="No credentials"):
            publisher.publish(_artifact(engine))
