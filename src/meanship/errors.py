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
Error taxonomy for the deployment pipeline.

Every stage failure is a PipelineError subclass carrying a ``kind`` string,
which is what a PipelineRun records for the failing stage.
"""


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind = "PipelineError"


class ConfigError(PipelineError):
    """Raised when required settings are missing or invalid."""

    kind = "ConfigError"


class DescriptorError(PipelineError):
    """Raised when a service descriptor violates the topology rules."""

    kind = "DescriptorError"


class BuildError(PipelineError):
    """Raised when an image cannot be built from its source context."""

    kind = "BuildError"


class AuthError(PipelineError):
    """Raised when the registry rejects the supplied credentials."""

    kind = "AuthError"


class PushError(PipelineError):
    """Raised when an image push fails (network, quota, timeout)."""

    kind = "PushError"


class PullError(PipelineError):
    """Raised when the remote host cannot pull a referenced image."""

    kind = "PullError"


class HostConnectionError(PipelineError):
    """Raised when the remote host is unreachable or refuses the key."""

    kind = "ConnectionError"


class ReconcileError(PipelineError):
    """Raised when the remote restart command exits non-zero."""

    kind = "ReconcileError"


class StateConflictError(PipelineError):
    """Raised when a DeploymentState write races with another writer."""

    kind = "StateConflictError"


class PipelineCancelled(Exception):
    """Raised inside a run when its cancellation token has been set."""
