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
Reconciliation of the remote host's running topology with a descriptor.

Protocol per reconciliation:

1. open an SSH session and read the host's DeploymentState record
2. upload the descriptor to a staging file next to the live one
3. pull every service image named by the staged descriptor
4. promote the staged descriptor and run ``docker compose up -d``
5. read back the running containers and record a new DeploymentState
   next to the live descriptor

The DeploymentState record lives on the host next to the live descriptor.
The local store only mirrors the last state written from this machine.

Nothing is stopped until every image is present on the host, so a failed
pull leaves the previous deployment serving. Named volumes are never
removed.
"""
import json
import posixpath
from enum import Enum
from typing import Callable, List, Optional

from pydantic import ValidationError

from ..CONVERTERS.to_compose import ComposeConverter
from ..MODELS.deployment_state import DeploymentState, RunningContainer
from ..MODELS.orchestration_config import ServiceDescriptor
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.command_runner import CommandTimeout
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.remote_shell import SSHSession, quote_command
from ..errors import PipelineError, PullError, ReconcileError, StateConflictError
from .state_store import DeploymentStateStore

LIVE_DESCRIPTOR = "docker-compose.yml"
STAGED_DESCRIPTOR = "docker-compose.next.yml"
STATE_RECORD = "deployment-state.json"


class ReconcilePhase(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    PULLED = "pulled"
    RESTARTED = "restarted"
    FAILED = "failed"


def parse_ps_output(output: str) -> List[dict]:
    """
    Parses ``docker compose ps --format json``.

    Older compose releases print one JSON array, newer ones print one JSON
    object per line.
    """
    output = output.strip()
    if not output:
        return []
    if output.startswith("["):
        return json.loads(output)
    return [json.loads(line) for line in output.splitlines() if line.strip()]


class RemoteReconciler:
    """
    Brings the remote host in line with a ServiceDescriptor.

    ``transitions`` records the phases walked by the last reconciliation
    (Idle -> Connected -> Pulled -> Restarted -> Idle on success), and
    ``failed_step`` names the step that failed, if any.
    """

    def __init__(self, session_factory: Callable[[], SSHSession],
                 state_store: Optional[DeploymentStateStore] = None,
                 deploy_dir: str = "meanship",
                 pull_timeout: float = 900.0,
                 restart_timeout: float = 900.0):
        """
        :param session_factory: Returns a new, unopened SSHSession.
        :param state_store: Where DeploymentState records are kept.
        :param deploy_dir: Remote directory holding the live descriptor.
        :param pull_timeout: Seconds allowed per image pull.
        :param restart_timeout: Seconds allowed for ``up -d``.
        """
        self.session_factory = session_factory
        self.state_store = state_store or DeploymentStateStore()
        self.deploy_dir = deploy_dir.rstrip("/") or "."
        self.pull_timeout = pull_timeout
        self.restart_timeout = restart_timeout

        self.phase = ReconcilePhase.IDLE
        self.transitions: List[ReconcilePhase] = [ReconcilePhase.IDLE]
        self.failed_step: Optional[str] = None

    @property
    def live_path(self) -> str:
        return posixpath.join(self.deploy_dir, LIVE_DESCRIPTOR)

    @property
    def staged_path(self) -> str:
        return posixpath.join(self.deploy_dir, STAGED_DESCRIPTOR)

    @property
    def state_path(self) -> str:
        return posixpath.join(self.deploy_dir, STATE_RECORD)

    def _enter(self, phase: ReconcilePhase) -> None:
        self.phase = phase
        self.transitions.append(phase)

    def _compose(self, project: str, descriptor_path: str, *args: str) -> str:
        return quote_command("docker", "compose", "-p", project, "-f", descriptor_path, *args)

    def reconcile(self, descriptor: ServiceDescriptor, commit: Optional[str] = None) -> DeploymentState:
        """
        Runs one reconciliation.

        :param descriptor: Topology to apply; images must already be published.
        :param commit: Commit id recorded with the new state.
        :return: The new DeploymentState.
        :raises HostConnectionError: if the host cannot be reached.
        :raises PullError: if any image cannot be pulled; nothing was stopped.
        :raises ReconcileError: if staging, restart or verification fails.
        :raises StateConflictError: if the host's record changed while acting.
        """
        descriptor.validate_topology()
        self.phase = ReconcilePhase.IDLE
        self.transitions = [ReconcilePhase.IDLE]
        self.failed_step = None
        content = ComposeConverter(descriptor).render(include_build=False)

        step = "connect"
        try:
            with self.session_factory() as session:
                self._enter(ReconcilePhase.CONNECTED)
                step = "read-state"
                previous = self.read_state(session)
                step = "stage"
                self._stage(session, content)
                step = "pull"
                self._pull(session, descriptor)
                self._enter(ReconcilePhase.PULLED)
                step = "restart"
                self._restart(session, descriptor)
                self._enter(ReconcilePhase.RESTARTED)
                step = "observe"
                containers = self._observe(session, descriptor)
                state = previous.next(
                    project=descriptor.project,
                    commit=commit,
                    descriptor_digest=descriptor.digest(),
                    containers=containers,
                )
                step = "record"
                self._record(session, state, expected_version=previous.version)
        except PipelineError:
            self.failed_step = step
            self._enter(ReconcilePhase.FAILED)
            print(f"[reconciler] Reconciliation failed during {step}")
            raise

        self.state_store.save(state)
        self._enter(ReconcilePhase.IDLE)
        print(f"[reconciler] Deployment state is now version {state.version}")
        return state

    def current_state(self) -> DeploymentState:
        """Opens a session and returns the host's DeploymentState record."""
        with self.session_factory() as session:
            return self.read_state(session)

    def read_state(self, session: SSHSession) -> DeploymentState:
        """
        Reads the DeploymentState record kept in the deploy directory.

        :return: The record, or an empty version 0 state before the first deployment.
        :raises ReconcileError: if the record exists but cannot be read.
        """
        try:
            result = session.run(quote_command("cat", self.state_path))
        except CommandTimeout as e:
            raise ReconcileError(f"Reading {self.state_path} timed out: {e}") from e
        if not result.ok:
            if "no such file" in result.error_tail().lower():
                return DeploymentState()
            raise ReconcileError(f"Could not read {self.state_path}: {result.error_tail()}")
        try:
            return DeploymentState.model_validate_json(result.stdout)
        except ValidationError as e:
            raise ReconcileError(f"Unreadable deployment state at {self.state_path}: {e}") from e

    def _record(self, session: SSHSession, state: DeploymentState, expected_version: int) -> None:
        current = self.read_state(session)
        if current.version != expected_version:
            raise StateConflictError(
                f"Deployment state on the host moved from version {expected_version} "
                f"to {current.version} during reconciliation"
            )
        pending = self.state_path + ".next"
        try:
            result = session.upload(pending, state.model_dump_json(indent=2))
            if result.ok:
                result = session.run(quote_command("mv", "-f", pending, self.state_path))
        except CommandTimeout as e:
            raise ReconcileError(f"Recording deployment state timed out: {e}") from e
        if not result.ok:
            raise ReconcileError(f"Could not record deployment state: {result.error_tail()}")

    def _stage(self, session: SSHSession, content: str) -> None:
        try:
            result = session.run(quote_command("mkdir", "-p", self.deploy_dir))
            if result.ok:
                result = session.upload(self.staged_path, content)
        except CommandTimeout as e:
            raise ReconcileError(f"Staging descriptor timed out: {e}") from e
        if not result.ok:
            raise ReconcileError(f"Could not stage descriptor at {self.staged_path}: {result.error_tail()}")

    def _pull(self, session: SSHSession, descriptor: ServiceDescriptor) -> None:
        for name in DependencyResolver().resolve_order(descriptor):
            svc = descriptor.services[name]
            print(f"[reconciler] Pulling {svc.image} for {name}")
            try:
                result = session.run(
                    self._compose(descriptor.project, self.staged_path, "pull", name),
                    timeout=self.pull_timeout,
                )
            except CommandTimeout as e:
                self._discard_staged(session)
                raise PullError(f"Pull of {svc.image} timed out: {e}") from e
            if not result.ok:
                self._discard_staged(session)
                raise PullError(f"Pull of {svc.image} for {name} failed: {result.error_tail()}")

    def _discard_staged(self, session: SSHSession) -> None:
        try:
            session.run(quote_command("rm", "-f", self.staged_path))
        except (CommandTimeout, PipelineError) as e:
            print(f"[reconciler] Could not remove {self.staged_path}: {e}")

    def _restart(self, session: SSHSession, descriptor: ServiceDescriptor) -> None:
        print(f"[reconciler] Restarting {', '.join(descriptor.services)}")
        try:
            result = session.run(quote_command("mv", "-f", self.staged_path, self.live_path))
            if not result.ok:
                raise ReconcileError(f"Could not promote {self.staged_path}: {result.error_tail()}")
            result = session.run(
                self._compose(descriptor.project, self.live_path, "up", "-d", "--remove-orphans"),
                timeout=self.restart_timeout,
            )
        except CommandTimeout as e:
            raise ReconcileError(f"Restart timed out: {e}") from e
        if not result.ok:
            raise ReconcileError(f"Restart exited with status {result.returncode}: {result.error_tail()}")

    def _observe(self, session: SSHSession, descriptor: ServiceDescriptor) -> List[RunningContainer]:
        try:
            result = session.run(self._compose(descriptor.project, self.live_path, "ps", "--format", "json"))
        except CommandTimeout as e:
            raise ReconcileError(f"Reading container state timed out: {e}") from e
        if not result.ok:
            raise ReconcileError(f"Could not read container state: {result.error_tail()}")
        try:
            rows = parse_ps_output(result.stdout)
        except json.JSONDecodeError as e:
            raise ReconcileError(f"Unreadable container state: {e}") from e

        containers = []
        for row in rows:
            image = row.get("Image", "")
            try:
                tag = ImageReference.parse(image).tag if image else None
            except ValueError:
                tag = None
            containers.append(RunningContainer(
                service=row.get("Service", ""),
                name=row.get("Name", ""),
                image=image,
                tag=tag,
                state=row.get("State", ""),
            ))

        running = {c.service for c in containers if c.state == "running"}
        missing = [name for name in descriptor.services if name not in running]
        if missing:
            raise ReconcileError(f"Services not running after restart: {', '.join(missing)}")
        return containers
