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
Parsers for Docker Compose YAML files.
"""
import yaml
from typing import Dict, Any, List, Optional
from pydantic import ValidationError
from ..MODELS.orchestration_config import ServiceDescriptor
from ..MODELS.service_definition import ServiceSpec, RestartPolicyCondition, VolumeMount
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import DescriptorError
import os

DEFAULT_NETWORK = "default"


class ComposeParser:
    """
    Parser for docker-compose.yml files into a ServiceDescriptor.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, project: str = "meanship"):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of variables for interpolation. Defaults to os.environ.
        :param project: Project name used when the file has no top-level ``name``.
        """
        self.context = dict(os.environ) if context is None else context
        self.project = project

    def parse(self, compose_path: str) -> ServiceDescriptor:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed descriptor.
        :raises DescriptorError: If the file is missing or malformed.
        """
        if not os.path.exists(compose_path):
            raise DescriptorError(f"Descriptor {compose_path} not found")
        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> ServiceDescriptor:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed descriptor.
        """
        # Unlike docker compose, an unset variable is an error: an empty
        # image tag would silently deploy ``latest``.
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise DescriptorError(f"Interpolation failed: {e.args[0]}") from e

        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise DescriptorError(f"Descriptor is not valid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise DescriptorError("Descriptor must be a mapping")

        networks = self._keys(data.get('networks'))
        if len(networks) > 1:
            raise DescriptorError(
                f"Descriptor declares {len(networks)} networks; the stack uses one shared network"
            )
        network = networks[0] if networks else DEFAULT_NETWORK

        services = {}
        raw_services = data.get('services') or {}
        if not isinstance(raw_services, dict):
            raise DescriptorError("'services' must be a mapping")
        for name, spec in raw_services.items():
            services[name] = self._parse_service(str(name), spec or {}, network)

        try:
            return ServiceDescriptor(
                project=data.get('name') or self.project,
                services=services,
                network=network,
                volumes=self._keys(data.get('volumes')),
            )
        except ValidationError as e:
            raise DescriptorError(str(e)) from e

    def _parse_service(self, name: str, spec: Dict[str, Any], network: str) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param network: The shared network services join by default.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise DescriptorError(f"Service '{name}' must be a mapping")

        restart = spec.get('restart', RestartPolicyCondition.UNLESS_STOPPED.value)
        if restart is False:
            # YAML reads a bare `no` as a boolean
            restart = RestartPolicyCondition.NO.value
        try:
            restart = RestartPolicyCondition(restart)
        except ValueError as e:
            raise DescriptorError(f"Service '{name}' has invalid restart policy '{restart}'") from e

        # Volumes
        volumes = []
        for v in self._list(name, 'volumes', spec.get('volumes')):
            if isinstance(v, str):
                parts = v.split(':')
                if len(parts) == 2:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1]))
                elif len(parts) == 3:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro')))
                else:
                    raise DescriptorError(f"Service '{name}' has invalid volume '{v}'")
            elif isinstance(v, dict):
                try:
                    volumes.append(VolumeMount(
                        source=v.get('source', ''),
                        target=v.get('target', ''),
                        read_only=bool(v.get('read_only', False)),
                    ))
                except ValidationError as e:
                    raise DescriptorError(f"Service '{name}' has invalid volume {v!r}") from e

        build = spec.get('build')
        if isinstance(build, dict):
            build_context, dockerfile = build.get('context'), build.get('dockerfile')
        else:
            build_context, dockerfile = build, None

        try:
            return ServiceSpec(
                name=name,
                image=spec.get('image', ''),
                build_context=build_context,
                dockerfile=dockerfile,
                ports=self._parse_ports(name, spec.get('ports', []) or []),
                expose=[int(str(p).split('/')[0]) for p in spec.get('expose', []) or []],
                networks=self._keys(spec.get('networks')) or [network],
                environment=self._parse_environment(name, spec.get('environment')),
                volumes=volumes,
                depends_on=self._keys(spec.get('depends_on')),
                restart=restart,
                labels=self._parse_labels(spec.get('labels')),
            )
        except (ValidationError, ValueError, KeyError, TypeError) as e:
            raise DescriptorError(f"Service '{name}' is invalid: {e}") from e

    def _parse_ports(self, name: str, port_specs: List[Any]) -> Dict[int, Optional[int]]:
        ports = {}
        for p in port_specs:
            if isinstance(p, dict):
                ports[int(p['target'])] = int(p['published']) if p.get('published') else None
                continue
            parts = str(p).split('/')[0].split(':')
            if len(parts) == 1:
                ports[int(parts[0])] = None
            elif len(parts) in (2, 3):
                # [ip:]host:container
                ports[int(parts[-1])] = int(parts[-2])
            else:
                raise DescriptorError(f"Service '{name}' has invalid port mapping '{p}'")
        return ports

    def _parse_environment(self, name: str, env_spec: Any) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if isinstance(env_spec, list):
            for e in env_spec:
                k, _, v = str(e).partition('=')
                if k in environment:
                    raise DescriptorError(f"Service '{name}' defines {k} more than once")
                environment[k] = v
        elif isinstance(env_spec, dict):
            environment = {str(k): '' if v is None else str(v) for k, v in env_spec.items()}
        return environment

    def _parse_labels(self, labels: Any) -> Dict[str, str]:
        if isinstance(labels, list):
            return dict(str(item).partition('=')[::2] for item in labels)
        if isinstance(labels, dict):
            return {str(k): str(v) for k, v in labels.items()}
        return {}

    def _keys(self, val: Any) -> List[str]:
        """
        Helper for compose fields that accept either a list or a mapping.

        :param val: The value to convert.
        :return: A list of names.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        if isinstance(val, dict):
            return [str(k) for k in val.keys()]
        if isinstance(val, list):
            return [str(v) for v in val]
        raise DescriptorError(f"Expected a list or mapping, got {val!r}")

    def _list(self, name: str, field: str, val: Any) -> List[Any]:
        if val is None:
            return []
        if not isinstance(val, list):
            raise DescriptorError(f"Service '{name}' field '{field}' must be a list")
        return val
