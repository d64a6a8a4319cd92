"""Image stage: package the jar into a container image and export it."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import Tuple, Union

import structlog

from shipyard.build.dockerfile import render_dockerfile, validate_dockerfile
from shipyard.core.exceptions import CommandError, PackagingFailure
from shipyard.core.pipeline_config import DeployConfig, ImageConfig
from shipyard.utils.commands import run_command

logger = structlog.get_logger()


def compute_file_sha256(file_path: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to file to hash

    Returns:
        Lowercase hex string of SHA256 hash
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(8192), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


class ImageBuilder:
    """Drives the container engine for the image and export stages."""

    def __init__(
        self,
        image_config: ImageConfig,
        deploy_config: DeployConfig,
        project_dir: Union[str, Path],
        docker_binary: str = "docker",
    ):
        self.config = image_config
        self.deploy_config = deploy_config
        self.project_dir = Path(project_dir)
        self.docker = docker_binary

    def image_ref(self, tag: str) -> str:
        return f"{self.config.repository}:{tag}"

    def load_recipe(self, artifact_name: str) -> str:
        """Return the validated Dockerfile text for this project."""
        dockerfile = self.project_dir / self.config.dockerfile
        if dockerfile.exists():
            text = dockerfile.read_text(encoding="utf-8")
            source = str(dockerfile)
        elif self.config.generate_dockerfile:
            text = render_dockerfile(self.config, artifact_name, self.deploy_config.container_port)
            source = "generated"
        else:
            raise PackagingFailure(
                f"Dockerfile not found: {dockerfile}",
                code="dockerfile_missing",
            )
        validate_dockerfile(text)
        logger.info("Image recipe validated", source=source)
        return text

    def build(self, artifact: Path, tag: str) -> str:
        """Build the image for ``artifact`` and return its reference."""
        artifact = Path(artifact)
        if not artifact.is_file():
            raise PackagingFailure(f"Artifact not found: {artifact}", code="artifact_missing")

        recipe = self.load_recipe(artifact.name)
        ref = self.image_ref(tag)
        project_dockerfile = self.project_dir / self.config.dockerfile

        if project_dockerfile.exists():
            # a project recipe may reference other project files
            try:
                jar_arg = artifact.resolve().relative_to(self.project_dir.resolve()).as_posix()
            except ValueError:
                raise PackagingFailure(
                    f"Artifact {artifact} is outside the build context {self.project_dir}",
                    code="artifact_outside_context",
                )
            self._docker_build(ref, tag, project_dockerfile, self.project_dir, jar_arg)
        else:
            # the jar is staged alone so the build context stays small
            with tempfile.TemporaryDirectory(prefix="shipyard-context-") as context_dir:
                context = Path(context_dir)
                shutil.copy2(artifact, context / artifact.name)
                dockerfile_path = context / "Dockerfile"
                dockerfile_path.write_text(recipe, encoding="utf-8")
                self._docker_build(ref, tag, dockerfile_path, context, artifact.name)

        logger.info("Image built", image=ref)
        return ref

    def _docker_build(self, ref: str, tag: str, dockerfile: Path, context: Path, jar_arg: str) -> None:
        cmd = [
            self.docker, "build",
            "--file", str(dockerfile),
            "--tag", ref,
            "--build-arg", f"JAR_FILE={jar_arg}",
            "--label", f"org.opencontainers.image.version={tag}",
            str(context),
        ]
        logger.info("Building image", image=ref, context=str(context))
        try:
            run_command(cmd, timeout=self.config.build_timeout_seconds)
        except CommandError as exc:
            raise PackagingFailure(
                f"Image build failed for {ref}: {exc}\n{exc.output}".rstrip(),
                code=exc.code,
            ) from exc

    def export(self, image_ref: str, archive_path: Path) -> Tuple[str, int]:
        """Save the image to a single archive; return ``(sha256, size)``."""
        archive_path = Path(archive_path)
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = archive_path.with_suffix(archive_path.suffix + ".partial")

        cmd = [self.docker, "save", "--output", str(tmp_path), image_ref]
        logger.info("Exporting image", image=image_ref, archive=str(archive_path))
        try:
            run_command(cmd, timeout=self.config.build_timeout_seconds)
        except CommandError as exc:
            if tmp_path.exists():
                tmp_path.unlink()
            raise PackagingFailure(
                f"Image export failed for {image_ref}: {exc}",
                code=exc.code,
            ) from exc

        if not tmp_path.exists() or tmp_path.stat().st_size == 0:
            raise PackagingFailure(f"Image export produced no archive for {image_ref}", code="archive_empty")

        os.replace(tmp_path, archive_path)
        sha256 = compute_file_sha256(archive_path)
        size = archive_path.stat().st_size
        logger.info("Image exported", archive=str(archive_path), size=size, sha256=sha256)
        return sha256, size
