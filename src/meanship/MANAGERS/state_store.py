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
On-disk records of deployments and pipeline runs.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..MODELS.deployment_state import DeploymentState
from ..MODELS.pipeline_run import PipelineRun
from ..errors import StateConflictError


def _atomic_write(path: Path, content: str) -> None:
    """Writes via a temporary sibling and rename, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class DeploymentStateStore:
    """
    Local copy of the remote host's versioned DeploymentState.

    The reconciler mirrors each state it records on the host here, so
    ``meanship status`` works without a connection. A save that names the
    version it replaces fails when another writer got there first.
    """

    def __init__(self, state_dir: str = ".meanship"):
        """
        Args:
            state_dir: Directory holding ``deployment-state.json``.
        """
        self.path = Path(state_dir) / "deployment-state.json"
        self._lock = threading.Lock()

    def load(self) -> DeploymentState:
        """
        Returns the stored state, or an empty version 0 state if none exists
        or the file cannot be read.
        """
        if not self.path.exists():
            return DeploymentState()
        try:
            with open(self.path, "r") as f:
                return DeploymentState.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError, IOError) as e:
            print(f"[state] Ignoring unreadable {self.path}: {e}")
            return DeploymentState()

    def save(self, state: DeploymentState, expected_version: Optional[int] = None) -> DeploymentState:
        """
        Atomically replaces the stored record.

        Args:
            state: The new record.
            expected_version: Version the caller read before acting, if it
                must still be the stored one.

        Raises:
            StateConflictError: if the stored version is not ``expected_version``.
        """
        with self._lock:
            current = self.load()
            if expected_version is not None and current.version != expected_version:
                raise StateConflictError(
                    f"Deployment state moved from version {expected_version} "
                    f"to {current.version} during reconciliation"
                )
            _atomic_write(self.path, state.model_dump_json(indent=2))
        return state


class RunHistory:
    """
    Append-only log of PipelineRuns, one JSON document per line.
    """

    def __init__(self, state_dir: str = ".meanship"):
        self.path = Path(state_dir) / "runs.jsonl"
        self._lock = threading.Lock()

    def append(self, run: PipelineRun) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with open(self.path, "a") as f:
                f.write(run.model_dump_json() + "\n")

    def list(self, limit: Optional[int] = None) -> List[PipelineRun]:
        """Most recent runs first."""
        if not self.path.exists():
            return []
        runs = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    runs.append(PipelineRun.model_validate_json(line))
                except ValidationError as e:
                    print(f"[history] Skipping unreadable entry in {self.path}: {e.error_count()} errors")
        runs.reverse()
        return runs[:limit] if limit else runs

    def get(self, run_id: str) -> Optional[PipelineRun]:
        for run in self.list():
            if run.run_id == run_id:
                return run
        return None
