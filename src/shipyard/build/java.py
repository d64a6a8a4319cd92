"""Build stage: compile the Java project into a single executable jar."""

from pathlib import Path
from typing import List, Union

import structlog

from shipyard.core.exceptions import BuildFailure, CommandError
from shipyard.core.pipeline_config import BuildConfig, BuildTool
from shipyard.utils.commands import run_command

logger = structlog.get_logger()

# Side jars produced next to the executable one
IGNORED_JAR_SUFFIXES = ("-sources.jar", "-javadoc.jar", "-plain.jar", "-tests.jar")
IGNORED_JAR_PREFIXES = ("original-",)


class JavaBuilder:
    """Invokes Maven or Gradle and locates the produced artifact."""

    def __init__(self, config: BuildConfig, project_dir: Union[str, Path]):
        self.config = config
        self.project_dir = Path(project_dir)

    def _executable(self) -> str:
        wrapper = "mvnw" if self.config.tool == BuildTool.MAVEN else "gradlew"
        if (self.project_dir / wrapper).exists():
            return f"./{wrapper}"
        return "mvn" if self.config.tool == BuildTool.MAVEN else "gradle"

    def command(self) -> List[str]:
        """Build tool command line for this project."""
        cmd = [self._executable()]
        if self.config.tool == BuildTool.MAVEN:
            cmd += ["-B", "clean", "package"]
            if self.config.skip_tests:
                cmd.append("-DskipTests")
        else:
            cmd += ["--no-daemon", "clean", self.config.gradle_task]
            if self.config.skip_tests:
                cmd += ["-x", "test"]
        cmd += self.config.args
        return cmd

    def find_artifact(self) -> Path:
        """Return the one executable jar matching the artifact glob."""
        pattern = self.config.resolved_artifact_glob
        candidates = sorted(
            p for p in self.project_dir.glob(pattern)
            if p.is_file()
            and not p.name.endswith(IGNORED_JAR_SUFFIXES)
            and not p.name.startswith(IGNORED_JAR_PREFIXES)
        )
        if not candidates:
            raise BuildFailure(
                f"Build produced no artifact matching {pattern}",
                code="artifact_missing",
            )
        if len(candidates) > 1:
            raise BuildFailure(
                f"Build produced {len(candidates)} artifacts matching {pattern}: "
                f"{', '.join(p.name for p in candidates)}",
                code="artifact_ambiguous",
            )
        return candidates[0]

    def build(self) -> Path:
        """Run the build tool and return the artifact path."""
        descriptor = "pom.xml" if self.config.tool == BuildTool.MAVEN else "build.gradle"
        if not (self.project_dir / descriptor).exists() and not (
            self.config.tool == BuildTool.GRADLE and (self.project_dir / "build.gradle.kts").exists()
        ):
            raise BuildFailure(
                f"Project descriptor {descriptor} not found in {self.project_dir}",
                code="descriptor_missing",
            )

        cmd = self.command()
        logger.info("Building project", tool=self.config.tool.value, project_dir=str(self.project_dir))
        try:
            run_command(cmd, cwd=self.project_dir, timeout=self.config.timeout_seconds)
        except CommandError as exc:
            raise BuildFailure(
                f"{self.config.tool.value} build failed: {exc}\n{exc.output}".rstrip(),
                code=exc.code,
            ) from exc

        artifact = self.find_artifact()
        logger.info("Build artifact ready", artifact=str(artifact), size=artifact.stat().st_size)
        return artifact
