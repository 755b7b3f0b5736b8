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
Unit tests for descriptor topology rules, dependency order and run records.
"""
import pytest
from meanship.CONVERTERS.to_compose import default_descriptor
from meanship.MODELS.container_image import Component, ImageArtifact
from meanship.MODELS.pipeline_run import PipelineRun, RunStatus, StageStatus, TriggerEvent
from meanship.MODELS.service_definition import ServiceSpec, VolumeMount
from meanship.RUNNERS.dependency_resolver import DependencyResolver
from meanship.errors import DescriptorError


@pytest.fixture
def descriptor():
    return default_descriptor("acme/meanship-backend:abc123", "acme/meanship-frontend:abc123")


def _with_service(descriptor, name, **changes):
    services = dict(descriptor.services)
    services[name] = services[name].model_copy(update=changes)
    return descriptor.model_copy(update={"services": services})


class TestTopology:
    """Tests for ServiceDescriptor.validate_topology."""

    def test_standard_topology_is_valid(self, descriptor):
        assert descriptor.validate_topology() is descriptor

    def test_service_without_image(self, descriptor):
        with pytest.raises(DescriptorError, match="no image"):
            _with_service(descriptor, "mongo", image="").validate_topology()

    def test_service_off_shared_network(self, descriptor):
        with pytest.raises(DescriptorError, match="shared network"):
            _with_service(descriptor, "backend", networks=["private"]).validate_topology()

    def test_unknown_dependency(self, descriptor):
        with pytest.raises(DescriptorError, match="unknown service 'redis'"):
            _with_service(descriptor, "backend", depends_on=["redis"]).validate_topology()

    def test_undeclared_volume(self, descriptor):
        changed = _with_service(descriptor, "mongo", volumes=[VolumeMount(source="db", target="/data/db")])
        with pytest.raises(DescriptorError, match="undeclared volume 'db'"):
            changed.validate_topology()

    def test_bind_mount_needs_no_declaration(self, descriptor):
        changed = _with_service(descriptor, "mongo", volumes=[VolumeMount(source="./data", target="/data/db")])
        changed.validate_topology()

    @pytest.mark.parametrize("uri", [
        "mongodb://localhost:27017/tutorials_db",
        "mongodb://127.0.0.1:27017/tutorials_db",
        "mongodb://[::1]:27017/tutorials_db",
    ])
    def test_loopback_database_reference(self, descriptor, uri):
        changed = _with_service(descriptor, "backend", environment={"MONGODB_URI": uri})
        with pytest.raises(DescriptorError, match="loopback"):
            changed.validate_topology()

    def test_loopback_host_key(self, descriptor):
        changed = _with_service(descriptor, "backend", environment={"DB_HOST": "localhost"})
        with pytest.raises(DescriptorError, match="loopback"):
            changed.validate_topology()

    def test_unknown_bare_host(self, descriptor):
        changed = _with_service(descriptor, "backend", environment={"MONGODB_URI": "mongodb://db:27017/x"})
        with pytest.raises(DescriptorError, match="unknown host 'db'"):
            changed.validate_topology()

    def test_external_host_is_allowed(self, descriptor):
        changed = _with_service(descriptor, "backend",
                                environment={"MONGODB_URI": "mongodb+srv://cluster0.example.net/x"})
        changed.validate_topology()

    def test_empty_descriptor(self, descriptor):
        with pytest.raises(DescriptorError):
            descriptor.model_copy(update={"services": {}}).validate_topology()

    def test_service_lookup(self, descriptor):
        assert descriptor.service("mongo").image == "mongo:6.0"
        with pytest.raises(DescriptorError):
            descriptor.service("redis")

    def test_digest_tracks_content(self, descriptor):
        same = default_descriptor("acme/meanship-backend:abc123", "acme/meanship-frontend:abc123")
        other = default_descriptor("acme/meanship-backend:def456", "acme/meanship-frontend:def456")
        assert descriptor.digest() == same.digest()
        assert descriptor.digest() != other.digest()


class TestDependencyResolver:
    """Tests for start and pull order."""

    def test_dependencies_first(self, descriptor):
        assert DependencyResolver().resolve_order(descriptor) == ["mongo", "backend", "frontend"]

    def test_order_independent_of_declaration(self, descriptor):
        reordered = descriptor.model_copy(update={"services": {
            name: descriptor.services[name] for name in ("frontend", "backend", "mongo")
        }})
        assert DependencyResolver().resolve_order(reordered) == ["mongo", "backend", "frontend"]

    def test_cycle(self, descriptor):
        changed = _with_service(descriptor, "mongo", depends_on=["frontend"])
        with pytest.raises(DescriptorError, match="Circular dependency"):
            DependencyResolver().resolve_order(changed)


class TestPipelineRun:
    """Tests for the run record."""

    def test_first_failure_is_kept(self):
        run = PipelineRun.start("abc123", "abc123", ["build:backend", "build:frontend", "deploy"])
        run.record_failure("build:frontend", "BuildError", "npm ERR!")
        run.record_failure("build:backend", "BuildError", "npm ERR!")
        run.finish(RunStatus.FAILED)

        assert run.failed_stage == "build:frontend"
        assert run.error_kind == "BuildError"
        assert run.stage("deploy").status == StageStatus.SKIPPED
        assert run.is_terminal
        assert run.finished_at is not None

    def test_unknown_stage(self):
        run = PipelineRun.start(None, "latest", ["deploy"])
        with pytest.raises(KeyError):
            run.stage("publish:backend")

    def test_not_terminal_while_running(self):
        run = PipelineRun.start(None, "latest", ["deploy"])
        assert run.status == RunStatus.RUNNING
        assert not run.is_terminal


class TestTriggerEvent:
    """Tests for push events."""

    def test_from_github_payload(self):
        event = TriggerEvent.from_github_payload({
            "ref": "refs/heads/main",
            "after": "abc123",
            "repository": {"full_name": "acme/tutorials"},
        })
        assert event.commit == "abc123"
        assert event.repository == "acme/tutorials"
        assert event.is_push_to("main")

    def test_head_commit_fallback(self):
        event = TriggerEvent.from_github_payload({"ref": "refs/heads/main", "head_commit": {"id": "def456"}})
        assert event.commit == "def456"

    def test_other_branch(self):
        assert not TriggerEvent(ref="refs/heads/feature", commit="abc123").is_push_to("main")
        assert not TriggerEvent(ref="refs/tags/main", commit="abc123").is_push_to("main")

    def test_branch_deletion_is_not_a_push(self):
        event = TriggerEvent.from_github_payload({
            "ref": "refs/heads/main",
            "after": "0" * 40,
            "deleted": True,
            "head_commit": None,
        })
        assert event.deleted
        assert event.commit == ""
        assert not event.is_push_to("main")

    def test_zero_commit_without_deleted_flag(self):
        event = TriggerEvent.from_github_payload({"ref": "refs/heads/main", "after": "0" * 40})
        assert event.deleted
        assert not event.is_push_to("main")

    def test_null_head_commit(self):
        event = TriggerEvent.from_github_payload({"ref": "refs/heads/main", "head_commit": None})
        assert event.commit == ""
        assert not event.deleted


class TestImageArtifact:
    """Tests for built image records."""

    def test_reference_and_immutability(self):
        artifact = ImageArtifact(component=Component.FRONTEND, context_path="frontend",
                                 dockerfile="frontend/Dockerfile",
                                 repository="acme/meanship-frontend", tag="abc123")
        assert artifact.reference == "acme/meanship-frontend:abc123"
        with pytest.raises(Exception):
            artifact.tag = "def456"

    def test_listening_ports(self):
        svc = ServiceSpec(name="web", image="nginx", ports={80: 8080}, expose=[443, 80])
        assert svc.listening_ports() == [443, 80]
