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
Pipeline settings.

Values come from ``MEANSHIP_*`` variables in the process environment,
layered over an optional ``.env`` file. Secrets (registry token, SSH key)
are expected to be injected by the CI system and are never written back.
"""
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field, SecretStr, ValidationError

from ..errors import ConfigError

ENV_PREFIX = "MEANSHIP_"


class PipelineSettings(BaseModel):
    """
    Injected configuration for one pipeline deployment target.
    """

    # Registry
    registry: str = "docker.io"
    registry_namespace: Optional[str] = None
    registry_username: Optional[str] = None
    registry_token: Optional[SecretStr] = None

    # Remote host
    ssh_host: Optional[str] = None
    ssh_user: str = "root"
    ssh_port: int = Field(22, ge=1, le=65535)
    ssh_key_path: Optional[str] = None
    ssh_private_key: Optional[SecretStr] = None
    deploy_dir: str = "meanship"

    # Topology
    project_name: str = "meanship"
    descriptor_path: str = "docker-compose.yml"
    backend_context: str = "backend"
    frontend_context: str = "frontend"
    mainline_branch: str = "main"

    # Behaviour
    parallel: bool = True
    publish_latest: bool = True
    push_attempts: int = Field(3, ge=1)
    push_backoff_seconds: float = Field(2.0, ge=0)
    push_backoff_max_seconds: float = Field(30.0, ge=0)
    no_cache: bool = False

    # Timeouts (seconds)
    build_timeout: float = 1800.0
    registry_timeout: float = 600.0
    ssh_connect_timeout: int = 15
    remote_command_timeout: float = 900.0

    state_dir: str = ".meanship"

    @classmethod
    def load(cls, env_file: Optional[str] = ".env",
             environ: Optional[Mapping[str, str]] = None,
             **overrides) -> "PipelineSettings":
        """
        Builds settings from a ``.env`` file and the environment.

        Process environment wins over the file; explicit ``overrides`` win
        over both. ``None`` overrides are ignored so CLI options left unset
        do not mask configured values.

        :raises ConfigError: if a value fails validation.
        """
        raw: Dict[str, Optional[str]] = {}
        if env_file and os.path.exists(env_file):
            raw.update(dotenv_values(env_file))
        raw.update(os.environ if environ is None else environ)

        values = {}
        for key, value in raw.items():
            if not key.startswith(ENV_PREFIX) or value is None:
                continue
            field = key[len(ENV_PREFIX):].lower()
            if field in cls.model_fields:
                values[field] = value
        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid pipeline settings: {e}") from e

    @property
    def namespace(self) -> Optional[str]:
        return self.registry_namespace or self.registry_username

    def repository_for(self, component: str) -> str:
        """Registry repository that holds images of ``component``."""
        if not self.namespace:
            raise ConfigError("registry_namespace or registry_username must be set")
        return f"{self.registry}/{self.namespace}/{self.project_name}-{component}"

    def missing_deploy_credentials(self) -> List[str]:
        missing = []
        if not self.registry_username:
            missing.append(ENV_PREFIX + "REGISTRY_USERNAME")
        if not self.registry_token or not self.registry_token.get_secret_value():
            missing.append(ENV_PREFIX + "REGISTRY_TOKEN")
        if not self.ssh_host:
            missing.append(ENV_PREFIX + "SSH_HOST")
        if not (self.ssh_key_path or self.ssh_private_key):
            missing.append(ENV_PREFIX + "SSH_KEY_PATH or " + ENV_PREFIX + "SSH_PRIVATE_KEY")
        elif self.ssh_key_path and not self.ssh_private_key and not os.path.exists(
            os.path.expanduser(self.ssh_key_path)
        ):
            missing.append(f"{ENV_PREFIX}SSH_KEY_PATH (file {self.ssh_key_path} not found)")
        return missing

    def require_deploy_credentials(self) -> "PipelineSettings":
        """
        Fails fast before a run if any deploy secret is absent.

        :raises ConfigError: listing every missing option.
        """
        missing = self.missing_deploy_credentials()
        if missing:
            raise ConfigError("Missing deploy settings: " + ", ".join(missing))
        return self
