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
Pipeline coordination: build -> publish -> reconcile for each trigger.
"""
import itertools
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..BUILDERS.image_builder import ImageBuilder
from ..CONVERTERS.to_compose import default_descriptor
from ..MANAGERS.network_manager import ConnectionRefused, NameResolutionError, SharedNetwork
from ..MANAGERS.remote_reconciler import RemoteReconciler
from ..MANAGERS.state_store import DeploymentStateStore, RunHistory
from ..MODELS.container_image import Component, ImageArtifact, PublishedImage
from ..MODELS.orchestration_config import ServiceDescriptor
from ..MODELS.pipeline_run import PipelineRun, RunStatus, StageStatus, TriggerEvent
from ..MODELS.settings import PipelineSettings
from ..PARSERS.compose_parser import ComposeParser
from ..REGISTRY.image_reference import ImageReference, is_valid_tag, tag_for_commit
from ..REGISTRY.registry_client import RegistryAuth, RegistryPublisher
from ..RUNNERS.command_runner import CommandRunner
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.remote_shell import SSHSession
from ..errors import ConfigError, DescriptorError, PipelineCancelled, PipelineError

COMPONENTS = [Component.BACKEND, Component.FRONTEND]
DEPLOY_STAGE = "deploy"
STAGE_NAMES = (
    [f"build:{c.value}" for c in COMPONENTS]
    + [f"publish:{c.value}" for c in COMPONENTS]
    + [DEPLOY_STAGE]
)


class CancellationToken:
    """
    Lets another thread cancel a run before its reconcile stage starts.
    """
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled()


class PipelineCoordinator:
    """
    Runs the staged pipeline and records a PipelineRun per trigger.

    Builds of the two components may run concurrently, then both publishes,
    then the reconcile stage. The first failing stage stops the run; the
    remaining stages are recorded as skipped. Reconciliation against a host
    is serialised across runs in this process.
    """

    _host_locks: Dict[str, threading.Lock] = {}
    _host_last_deployed: Dict[str, int] = {}
    _registry_lock = threading.Lock()
    _sequence = itertools.count(1)

    def __init__(self, settings: PipelineSettings, builder: ImageBuilder,
                 publisher: RegistryPublisher, reconciler: RemoteReconciler,
                 history: Optional[RunHistory] = None,
                 descriptor_loader: Optional[Callable[[str], ServiceDescriptor]] = None):
        """
        :param settings: Validated pipeline settings.
        :param builder: Image Builder stage.
        :param publisher: Registry Publisher stage.
        :param reconciler: Remote Reconciler stage.
        :param history: Where finished runs are recorded.
        :param descriptor_loader: Returns the descriptor for an image tag.
            Defaults to :meth:`load_descriptor`.
        """
        self.settings = settings
        self.builder = builder
        self.publisher = publisher
        self.reconciler = reconciler
        self.history = history or RunHistory(settings.state_dir)
        self.descriptor_loader = descriptor_loader or self.load_descriptor

        host_key = settings.ssh_host or "default"
        with self._registry_lock:
            self._deploy_lock = self._host_locks.setdefault(host_key, threading.Lock())
            self._host_last_deployed.setdefault(host_key, 0)
        self._host_key = host_key

    @classmethod
    def from_settings(cls, settings: PipelineSettings,
                      runner: Optional[CommandRunner] = None) -> "PipelineCoordinator":
        """
        Wires the real stages from settings.
        """
        runner = runner or CommandRunner()
        base_dir = os.path.dirname(os.path.abspath(settings.descriptor_path))

        builder = ImageBuilder(runner=runner, base_dir=base_dir,
                               timeout=settings.build_timeout, no_cache=settings.no_cache)
        publisher = RegistryPublisher(
            auth=RegistryAuth(
                username=settings.registry_username,
                token=settings.registry_token.get_secret_value() if settings.registry_token else None,
            ),
            runner=runner,
            attempts=settings.push_attempts,
            backoff=settings.push_backoff_seconds,
            backoff_max=settings.push_backoff_max_seconds,
            timeout=settings.registry_timeout,
            publish_latest=settings.publish_latest,
        )

        def session_factory() -> SSHSession:
            return SSHSession(
                runner,
                host=settings.ssh_host,
                user=settings.ssh_user,
                port=settings.ssh_port,
                key_path=settings.ssh_key_path,
                private_key=settings.ssh_private_key.get_secret_value() if settings.ssh_private_key else None,
                connect_timeout=settings.ssh_connect_timeout,
                command_timeout=settings.remote_command_timeout,
            )

        reconciler = RemoteReconciler(
            session_factory,
            state_store=DeploymentStateStore(settings.state_dir),
            deploy_dir=settings.deploy_dir,
            pull_timeout=settings.registry_timeout,
            restart_timeout=settings.remote_command_timeout,
        )
        return cls(settings, builder, publisher, reconciler, history=RunHistory(settings.state_dir))

    def load_descriptor(self, tag: str) -> ServiceDescriptor:
        """
        Reads the descriptor file, or falls back to the standard topology.

        ``${IMAGE_TAG}``, ``${REGISTRY}`` and ``${REGISTRY_NAMESPACE}`` are
        available for interpolation inside the file.

        :raises DescriptorError: if the topology is invalid.
        """
        settings = self.settings
        if os.path.exists(settings.descriptor_path):
            context = dict(os.environ)
            context.update({
                "IMAGE_TAG": tag,
                "REGISTRY": settings.registry,
                "REGISTRY_NAMESPACE": settings.namespace or "",
            })
            descriptor = ComposeParser(context=context, project=settings.project_name).parse(
                settings.descriptor_path
            )
        else:
            descriptor = default_descriptor(
                backend_image=f"{settings.repository_for(Component.BACKEND.value)}:{tag}",
                frontend_image=f"{settings.repository_for(Component.FRONTEND.value)}:{tag}",
                project=settings.project_name,
                backend_context=settings.backend_context,
                frontend_context=settings.frontend_context,
            )
        return self.check_descriptor(descriptor)

    @staticmethod
    def check_descriptor(descriptor: ServiceDescriptor) -> ServiceDescriptor:
        """
        Validates the topology and every in-network reference.

        :raises DescriptorError: on any violation.
        """
        descriptor.validate_topology()
        DependencyResolver().resolve_order(descriptor)
        for component in COMPONENTS:
            svc = descriptor.service(component.value)
            if not svc.build_context:
                raise DescriptorError(f"Service '{svc.name}' has no build context")
        try:
            SharedNetwork(descriptor).check_environment(descriptor)
        except (NameResolutionError, ConnectionRefused) as e:
            raise DescriptorError(str(e)) from e
        return descriptor

    def handle_event(self, event: TriggerEvent,
                     cancel: Optional[CancellationToken] = None) -> Optional[PipelineRun]:
        """
        Runs the pipeline for a push to the mainline; ignores other events.
        """
        if event.deleted:
            print(f"[pipeline] Ignoring deletion of {event.ref}")
            return None
        if not event.is_push_to(self.settings.mainline_branch):
            print(f"[pipeline] Ignoring {event.ref}: only {self.settings.mainline_branch} deploys")
            return None
        return self.run(event.commit, cancel=cancel)

    def run(self, commit: Optional[str], cancel: Optional[CancellationToken] = None) -> PipelineRun:
        """
        Executes one PipelineRun.

        :param commit: Commit id of the trigger; the image tag derives from it.
        :param cancel: Optional token to stop the run before reconciliation.
        :return: The terminal PipelineRun (also appended to the history).
        :raises ConfigError: if deploy credentials are missing.
        :raises DescriptorError: if the descriptor is invalid.
        """
        self.settings.require_deploy_credentials()
        tag = tag_for_commit(commit)
        if not is_valid_tag(tag):
            raise ConfigError(f"Commit id '{commit}' is not usable as an image tag")
        descriptor = self.descriptor_loader(tag)
        cancel = cancel or CancellationToken()
        sequence = next(self._sequence)

        run = PipelineRun.start(commit, tag, STAGE_NAMES)
        print(f"[pipeline] Run {run.run_id} started for commit {commit or '<none>'} (tag {tag})")
        try:
            artifacts = self._run_group(run, cancel, [
                (f"build:{c.value}", self._build_step(descriptor, c, tag)) for c in COMPONENTS
            ])
            published = self._run_group(run, cancel, [
                (f"publish:{c.value}", self._publish_step(artifacts[f"build:{c.value}"])) for c in COMPONENTS
            ])
            cancel.raise_if_cancelled()

            target = self._bind_images(descriptor, published)
            with self._deploy_lock:
                # A run may be cancelled while it waits for the host
                cancel.raise_if_cancelled()
                if self._host_last_deployed[self._host_key] > sequence:
                    run.stage(DEPLOY_STAGE).status = StageStatus.SKIPPED
                    run.stage(DEPLOY_STAGE).message = "superseded by a newer run"
                    print(f"[pipeline] Run {run.run_id} superseded; not deploying")
                    run.finish(RunStatus.CANCELLED)
                    return run
                # No cancellation from here on
                self._run_stage(run, DEPLOY_STAGE, lambda: self.reconciler.reconcile(target, commit))
                self._host_last_deployed[self._host_key] = sequence
            run.finish(RunStatus.SUCCEEDED)
        except PipelineError as e:
            run.finish(RunStatus.FAILED)
            print(f"[pipeline] Run {run.run_id} failed at {run.failed_stage}: {e.kind}")
        except PipelineCancelled:
            run.finish(RunStatus.CANCELLED)
            print(f"[pipeline] Run {run.run_id} cancelled before deployment")
        finally:
            if not run.is_terminal:
                run.finish(RunStatus.FAILED)
            self.history.append(run)

        if run.status == RunStatus.SUCCEEDED:
            print(f"[pipeline] Run {run.run_id} succeeded")
        return run

    def _build_step(self, descriptor: ServiceDescriptor, component: Component,
                    tag: str) -> Callable[[], ImageArtifact]:
        svc = descriptor.service(component.value)
        repository = ImageReference.parse(svc.image).name

        def step() -> ImageArtifact:
            return self.builder.build(component.value, svc.build_context, repository, tag,
                                      dockerfile=svc.dockerfile)
        return step

    def _publish_step(self, artifact: ImageArtifact) -> Callable[[], PublishedImage]:
        return lambda: self.publisher.publish(artifact)

    def _bind_images(self, descriptor: ServiceDescriptor,
                     published: Dict[str, PublishedImage]) -> ServiceDescriptor:
        """The descriptor to apply, pinned to the references just pushed."""
        services = dict(descriptor.services)
        for component in COMPONENTS:
            image = published[f"publish:{component.value}"].reference
            services[component.value] = services[component.value].model_copy(update={"image": image})
        return descriptor.model_copy(update={"services": services})

    def _execute(self, fn: Callable[[], Any]) -> Tuple[Any, Optional[PipelineError], float]:
        started = time.monotonic()
        try:
            return fn(), None, time.monotonic() - started
        except PipelineError as e:
            return None, e, time.monotonic() - started

    def _record(self, run: PipelineRun, name: str, value: Any,
                error: Optional[PipelineError], duration: float) -> None:
        if error is not None:
            run.record_failure(name, error.kind, str(error), duration)
            print(f"[pipeline] {name} failed ({error.kind}): {error}")
        else:
            run.record_success(name, message=self._describe(value), duration=duration)
            print(f"[pipeline] {name} succeeded in {duration:.1f}s")

    def _run_stage(self, run: PipelineRun, name: str, fn: Callable[[], Any]) -> Any:
        print(f"[pipeline] {name} started")
        value, error, duration = self._execute(fn)
        self._record(run, name, value, error, duration)
        if error is not None:
            raise error
        return value

    def _run_group(self, run: PipelineRun, cancel: CancellationToken,
                   steps: List[Tuple[str, Callable[[], Any]]]) -> Dict[str, Any]:
        """
        Runs independent stages, concurrently when enabled. Outcomes are
        recorded in stage order, so the earliest failing stage is the one
        the run reports.
        """
        cancel.raise_if_cancelled()
        if not self.settings.parallel or len(steps) < 2:
            results = {}
            for name, fn in steps:
                cancel.raise_if_cancelled()
                results[name] = self._run_stage(run, name, fn)
            return results

        for name, _ in steps:
            print(f"[pipeline] {name} started")
        with ThreadPoolExecutor(max_workers=len(steps)) as pool:
            futures = [(name, pool.submit(self._execute, fn)) for name, fn in steps]
            outcomes = [(name, future.result()) for name, future in futures]

        results = {}
        first_error = None
        for name, (value, error, duration) in outcomes:
            self._record(run, name, value, error, duration)
            results[name] = value
            if error is not None and first_error is None:
                first_error = error
        if first_error is not None:
            raise first_error
        return results

    @staticmethod
    def _describe(value: Any) -> str:
        if isinstance(value, ImageArtifact):
            return f"built {value.reference}"
        if isinstance(value, PublishedImage):
            return f"pushed {value.reference}"
        if hasattr(value, "version"):
            return f"deployment state version {value.version}"
        return ""
