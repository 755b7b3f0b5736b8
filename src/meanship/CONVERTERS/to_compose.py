"""
Converters between the ServiceDescriptor model and docker-compose YAML.
"""
import os
from typing import Any, Dict
import yaml
from ..MODELS.orchestration_config import ServiceDescriptor
from ..MODELS.service_definition import ServiceSpec, VolumeMount

MONGO_IMAGE = "mongo:6.0"
MONGO_PORT = 27017
BACKEND_PORT = 8080
FRONTEND_PORT = 80


def default_descriptor(backend_image: str, frontend_image: str, project: str = "meanship",
                       database: str = "tutorials_db", http_port: int = FRONTEND_PORT,
                       backend_context: str = "backend",
                       frontend_context: str = "frontend") -> ServiceDescriptor:
    """
    The stack's standard topology: mongo, backend and frontend on one
    network, with the database files on a named volume.
    """
    network = "app-network"
    return ServiceDescriptor(
        project=project,
        network=network,
        volumes=["mongo_data"],
        services={
            "mongo": ServiceSpec(
                name="mongo",
                image=MONGO_IMAGE,
                expose=[MONGO_PORT],
                networks=[network],
                volumes=[VolumeMount(source="mongo_data", target="/data/db")],
            ),
            "backend": ServiceSpec(
                name="backend",
                image=backend_image,
                build_context=backend_context,
                expose=[BACKEND_PORT],
                networks=[network],
                environment={
                    "MONGODB_URI": f"mongodb://mongo:{MONGO_PORT}/{database}",
                    "PORT": str(BACKEND_PORT),
                },
                depends_on=["mongo"],
            ),
            "frontend": ServiceSpec(
                name="frontend",
                image=frontend_image,
                build_context=frontend_context,
                ports={FRONTEND_PORT: http_port},
                networks=[network],
                depends_on=["backend"],
            ),
        },
    )


class ComposeConverter:
    """
    Renders a ServiceDescriptor as docker-compose YAML.
    """
    def __init__(self, descriptor: ServiceDescriptor):
        """
        :param descriptor: The descriptor to render.
        """
        self.descriptor = descriptor

    def to_dict(self, include_build: bool = True) -> Dict[str, Any]:
        """
        :param include_build: Keep ``build`` sections. The remote host has no
            sources, so the copy shipped there leaves them out.
        """
        services = {}
        for name, svc in self.descriptor.services.items():
            services[name] = self._service(svc, include_build)
        data: Dict[str, Any] = {
            "name": self.descriptor.project,
            "services": services,
            "networks": {self.descriptor.network: {"driver": "bridge"}},
        }
        if self.descriptor.volumes:
            data["volumes"] = {v: {} for v in self.descriptor.volumes}
        return data

    def _service(self, svc: ServiceSpec, include_build: bool) -> Dict[str, Any]:
        out: Dict[str, Any] = {"image": svc.image}
        if include_build and svc.build_context:
            build: Dict[str, Any] = {"context": svc.build_context}
            if svc.dockerfile:
                build["dockerfile"] = svc.dockerfile
            out["build"] = build
        if svc.ports:
            out["ports"] = [
                f"{host}:{container}" if host else str(container)
                for container, host in svc.ports.items()
            ]
        if svc.expose:
            out["expose"] = [str(p) for p in svc.expose]
        if svc.environment:
            out["environment"] = dict(svc.environment)
        if svc.volumes:
            out["volumes"] = [m.to_compose() for m in svc.volumes]
        if svc.depends_on:
            out["depends_on"] = list(svc.depends_on)
        out["networks"] = list(svc.networks)
        out["restart"] = svc.restart.value
        if svc.labels:
            out["labels"] = dict(svc.labels)
        return out

    def render(self, include_build: bool = True) -> str:
        return yaml.safe_dump(self.to_dict(include_build), sort_keys=False, default_flow_style=False)

    def convert(self, output_path: str = "docker-compose.yml", include_build: bool = True) -> str:
        """
        Writes the rendered descriptor.

        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render(include_build))
        print(f"Descriptor written to {output_path}")
        return output_path
