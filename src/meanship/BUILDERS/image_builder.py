"""
Builders that turn a component's source context into a tagged image.
"""
import os
from typing import List, Optional
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..MODELS.container_image import Component, ImageArtifact
from ..MODELS.dockerfile_ast import BuildStage
from ..REGISTRY.image_reference import is_valid_tag
from ..RUNNERS.command_runner import CommandRunner, CommandTimeout
from ..errors import BuildError

# Install commands that require a lockfile in the build context
LOCKED_INSTALLS = {
    "npm ci": "package-lock.json",
    "yarn install --frozen-lockfile": "yarn.lock",
    "pnpm install --frozen-lockfile": "pnpm-lock.yaml",
}


class ImageBuilder:
    """
    Validates a component's Dockerfile and builds it with the container engine.
    The engine keeps its layer cache between builds of the same context.
    """
    def __init__(self, runner: Optional[CommandRunner] = None, base_dir: str = ".",
                 timeout: float = 1800.0, no_cache: bool = False):
        """
        Initializes the ImageBuilder.

        :param runner: Runner used to invoke ``docker``.
        :param base_dir: The base directory for resolving relative contexts.
        :param timeout: Seconds allowed for a single build.
        :param no_cache: Disable the engine's layer cache.
        """
        self.runner = runner or CommandRunner()
        self.base_dir = base_dir
        self.timeout = timeout
        self.no_cache = no_cache
        self.parser = DockerfileParser()

    def build(self, component: str, context_path: str, repository: str, tag: str,
              dockerfile: Optional[str] = None) -> ImageArtifact:
        """
        Builds the image for one component.

        :param component: ``backend`` or ``frontend``.
        :param context_path: Source context, relative to ``base_dir``.
        :param repository: Repository the image is tagged into.
        :param tag: Deterministic tag, usually the commit id.
        :param dockerfile: Dockerfile path relative to the context.
        :return: The built ImageArtifact.
        :raises BuildError: on missing sources, bad stage references or a failed build.
        """
        try:
            component = Component(component)
        except ValueError as e:
            raise BuildError(f"Unknown component '{component}'") from e
        if not is_valid_tag(tag):
            raise BuildError(f"Invalid image tag '{tag}'")

        context = os.path.normpath(os.path.join(self.base_dir, context_path))
        if not os.path.isdir(context):
            raise BuildError(f"Source context for {component.value} not found: {context}")
        dockerfile_path = os.path.join(context, dockerfile or "Dockerfile")
        if not os.path.isfile(dockerfile_path):
            raise BuildError(f"No Dockerfile for {component.value} at {dockerfile_path}")

        try:
            stages = self.parser.parse_stages(dockerfile_path)
        except (OSError, UnicodeDecodeError) as e:
            raise BuildError(f"Could not read {dockerfile_path}: {e}") from e
        self.parser.validate_stages(stages)
        self._check_lockfiles(stages, context)

        reference = f"{repository}:{tag}"
        print(f"[builder] Building {component.value} -> {reference} "
              f"({len(stages)} stage{'s' if len(stages) != 1 else ''})")

        command = [
            "docker", "build",
            "-t", reference,
            "-f", dockerfile_path,
            "--label", f"org.opencontainers.image.revision={tag}",
            "--label", f"meanship.component={component.value}",
        ]
        if self.no_cache:
            command.append("--no-cache")
        command.append(context)

        try:
            result = self.runner.run(command, timeout=self.timeout)
        except CommandTimeout as e:
            raise BuildError(f"Build of {component.value} timed out: {e}") from e
        if not result.ok:
            raise BuildError(f"Build of {component.value} failed:\n{result.error_tail()}")

        artifact = ImageArtifact(
            component=component,
            context_path=context,
            dockerfile=dockerfile_path,
            repository=repository,
            tag=tag,
            digest=self._image_id(reference),
        )
        print(f"[builder] Built {artifact.reference} ({artifact.digest})")
        return artifact

    def _image_id(self, reference: str) -> str:
        try:
            result = self.runner.run(
                ["docker", "image", "inspect", "--format", "{{.Id}}", reference],
                timeout=60,
            )
        except CommandTimeout as e:
            raise BuildError(f"Could not inspect {reference}: {e}") from e
        if not result.ok or not result.stdout.strip():
            raise BuildError(f"Built image {reference} is not present locally: {result.error_tail()}")
        return result.stdout.strip()

    def _check_lockfiles(self, stages: List[BuildStage], context: str) -> None:
        """
        Locked installs fail inside the engine without their lockfile; catch
        that before spending a build on it.
        """
        for stage in stages:
            for inst in stage.instructions:
                if inst.instruction != "RUN":
                    continue
                line = " ".join(inst.arguments)
                for install, lockfile in LOCKED_INSTALLS.items():
                    if install in line and not os.path.exists(os.path.join(context, lockfile)):
                        raise BuildError(
                            f"Stage {stage.name or stage.index} runs '{install}' but "
                            f"{lockfile} is missing from {context}"
                        )
