"""
Tests for the build stage (Maven/Gradle invocation and artifact discovery).
"""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from shipyard.build.java import JavaBuilder
from shipyard.core.exceptions import BuildFailure
from shipyard.core.pipeline_config import BuildConfig


def _maven_project(root: Path) -> Path:
    (root / "pom.xml").write_text("<project/>")
    return root


def _produce(root: Path, *names: str):
    def fake_run(cmd, **kwargs):
        target = root / "target"
        target.mkdir(exist_ok=True)
        for name in names:
            (target / name).write_bytes(b"PK\x03\x04")
        return subprocess.CompletedProcess(cmd, 0, stdout="BUILD SUCCESS", stderr="")

    return fake_run


class TestCommand:
    def test_maven_defaults(self, tmp_path):
        builder = JavaBuilder(BuildConfig(), tmp_path)
        assert builder.command() == ["mvn", "-B", "clean", "package", "-DskipTests"]

    def test_maven_wrapper_is_preferred(self, tmp_path):
        (tmp_path / "mvnw").write_text("#!/bin/sh")
        assert JavaBuilder(BuildConfig(), tmp_path).command()[0] == "./mvnw"

    def test_gradle_with_tests(self, tmp_path):
        (tmp_path / "gradlew").write_text("#!/bin/sh")
        config = BuildConfig(tool="gradle", skip_tests=False, args=["--info"])
        assert JavaBuilder(config, tmp_path).command() == [
            "./gradlew", "--no-daemon", "clean", "bootJar", "--info",
        ]


class TestBuild:
    def test_returns_single_executable_jar(self, tmp_path):
        project = _maven_project(tmp_path)
        fake = _produce(project, "orders-1.0.jar", "orders-1.0-sources.jar", "original-orders-1.0.jar")
        with patch("subprocess.run", side_effect=fake) as run:
            artifact = JavaBuilder(BuildConfig(), project).build()

        assert artifact == project / "target" / "orders-1.0.jar"
        assert run.call_args.kwargs["cwd"] == str(project)

    def test_compile_error_is_build_failure(self, tmp_path):
        project = _maven_project(tmp_path)
        failed = subprocess.CompletedProcess([], 1, stdout="[ERROR] COMPILATION ERROR", stderr="")
        with patch("subprocess.run", return_value=failed):
            with pytest.raises(BuildFailure) as exc_info:
                JavaBuilder(BuildConfig(), project).build()

        assert exc_info.value.code == "command_failed"
        assert "COMPILATION ERROR" in str(exc_info.value)

    def test_missing_build_tool(self, tmp_path):
        project = _maven_project(tmp_path)
        with patch("subprocess.run", side_effect=FileNotFoundError("mvn")):
            with pytest.raises(BuildFailure) as exc_info:
                JavaBuilder(BuildConfig(), project).build()
        assert exc_info.value.code == "command_not_found"

    def test_missing_descriptor(self, tmp_path):
        with patch("subprocess.run") as run:
            with pytest.raises(BuildFailure) as exc_info:
                JavaBuilder(BuildConfig(), tmp_path).build()
        assert exc_info.value.code == "descriptor_missing"
        run.assert_not_called()

    def test_no_artifact(self, tmp_path):
        project = _maven_project(tmp_path)
        with patch("subprocess.run", side_effect=_produce(project)):
            with pytest.raises(BuildFailure) as exc_info:
                JavaBuilder(BuildConfig(), project).build()
        assert exc_info.value.code == "artifact_missing"

    def test_ambiguous_artifacts(self, tmp_path):
        project = _maven_project(tmp_path)
        with patch("subprocess.run", side_effect=_produce(project, "a.jar", "b.jar")):
            with pytest.raises(BuildFailure) as exc_info:
                JavaBuilder(BuildConfig(), project).build()
        assert exc_info.value.code == "artifact_ambiguous"

    def test_gradle_kotlin_descriptor(self, tmp_path):
        (tmp_path / "build.gradle.kts").write_text("plugins {}")

        def fake_run(cmd, **kwargs):
            libs = tmp_path / "build" / "libs"
            libs.mkdir(parents=True)
            (libs / "orders.jar").write_bytes(b"PK")
            (libs / "orders-plain.jar").write_bytes(b"PK")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        with patch("subprocess.run", side_effect=fake_run):
            artifact = JavaBuilder(BuildConfig(tool="gradle"), tmp_path).build()
        assert artifact.name == "orders.jar"
