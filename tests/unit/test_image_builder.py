"""
Unit tests for the Image Builder stage.
"""
import os
import pytest
from meanship.BUILDERS.image_builder import ImageBuilder
from meanship.MODELS.container_image import Component
from meanship.errors import BuildError

REPOSITORY = "docker.io/deployer/meanship-frontend"


class TestImageBuilder:
    """Tests for ImageBuilder.build."""

    def test_build_frontend(self, engine, sources):
        builder = ImageBuilder(runner=engine, base_dir=str(sources))
        artifact = builder.build("frontend", "frontend", REPOSITORY, "abc123")

        assert artifact.component == Component.FRONTEND
        assert artifact.reference == f"{REPOSITORY}:abc123"
        assert artifact.digest.startswith("sha256:")
        assert artifact.context_path == os.path.join(str(sources), "frontend")

        command = engine.commands_starting("docker", "build")[0]
        assert command[command.index("-t") + 1] == f"{REPOSITORY}:abc123"
        assert "org.opencontainers.image.revision=abc123" in command
        assert "meanship.component=frontend" in command
        assert command[-1] == os.path.join(str(sources), "frontend")
        assert "--no-cache" not in command

    def test_no_cache(self, engine, sources):
        ImageBuilder(runner=engine, base_dir=str(sources), no_cache=True).build(
            "backend", "backend", REPOSITORY, "abc123"
        )
        assert "--no-cache" in engine.commands_starting("docker", "build")[0]

    def test_custom_dockerfile(self, engine, sources):
        (sources / "backend" / "Dockerfile.prod").write_text("FROM node:20-alpine\nCMD [\"node\", \"server.js\"]\n")
        artifact = ImageBuilder(runner=engine, base_dir=str(sources)).build(
            "backend", "backend", REPOSITORY, "abc123", dockerfile="Dockerfile.prod"
        )
        assert artifact.dockerfile.endswith("Dockerfile.prod")

    def test_unknown_component(self, engine, sources):
        with pytest.raises(BuildError, match="Unknown component"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("worker", "backend", REPOSITORY, "abc123")

    def test_invalid_tag(self, engine, sources):
        with pytest.raises(BuildError, match="Invalid image tag"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("backend", "backend", REPOSITORY, "a/b")

    def test_missing_context(self, engine, sources):
        with pytest.raises(BuildError, match="not found"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("backend", "api", REPOSITORY, "abc123")
        assert engine.commands == []

    def test_missing_dockerfile(self, engine, sources):
        (sources / "backend" / "Dockerfile").unlink()
        with pytest.raises(BuildError, match="No Dockerfile"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("backend", "backend", REPOSITORY, "abc123")

    def test_missing_lockfile(self, engine, sources):
        (sources / "frontend" / "package-lock.json").unlink()
        with pytest.raises(BuildError, match="package-lock.json"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("frontend", "frontend", REPOSITORY, "abc123")
        assert engine.commands == []

    def test_bad_stage_reference(self, engine, sources):
        (sources / "frontend" / "Dockerfile").write_text(
            "FROM nginx:1.27-alpine\nCOPY --from=build /app/dist /usr/share/nginx/html\n"
        )
        with pytest.raises(BuildError, match="build stage"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("frontend", "frontend", REPOSITORY, "abc123")

    def test_failed_build_carries_output(self, engine, sources):
        engine.failing_builds.add("meanship-frontend")
        with pytest.raises(BuildError) as exc_info:
            ImageBuilder(runner=engine, base_dir=str(sources)).build("frontend", "frontend", REPOSITORY, "abc123")
        assert "ERESOLVE" in str(exc_info.value)
        assert exc_info.value.kind == "BuildError"

    def test_undecodable_dockerfile(self, engine, sources):
        (sources / "backend" / "Dockerfile").write_bytes(b"FROM node:20\nRUN echo \xff\xfe\n")
        with pytest.raises(BuildError, match="Could not read"):
            ImageBuilder(runner=engine, base_dir=str(sources)).build("backend", "backend", REPOSITORY, "abc123")
        assert engine.commands == []

    def test_build_timeout(self, engine, sources):
        engine.timeouts.add("docker build")
        with pytest.raises(BuildError, match="timed out"):
            ImageBuilder(runner=engine, base_dir=str(sources), timeout=5).build(
                "backend", "backend", REPOSITORY, "abc123"
            )
