"""Tests for the shipyard command line."""

import json
from unittest.mock import patch

import pytest
import yaml

from shipyard.__main__ import build_parser, main
from shipyard.core.exceptions import AuthenticationFailure
from shipyard.core.models import ContainerSlot, DeploymentUnit

REVISION = "A1B2C3D4E5F6"


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    path = tmp_path / "shipyard.yaml"
    path.write_text("app: orders\ndeploy:\n  host_port: 9090\n")
    return path


def _unit(tmp_path) -> DeploymentUnit:
    return DeploymentUnit(
        tag="main-a1b2c3d4",
        branch="main",
        revision="a1b2c3d4",
        full_revision=REVISION,
        image="orders:main-a1b2c3d4",
        archive_path=str(tmp_path / "artifacts" / "main-a1b2c3d4" / "image.tar"),
        archive_sha256="0" * 64,
        archive_size=10,
    )


def test_deploy_target_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["deploy"])


def test_tag(config_file, capsys):
    assert main(["--config", str(config_file), "tag", "--branch", "Feature/Auth", "--revision", REVISION]) == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == "feature-auth-a1b2c3d4"


def test_tag_from_ci_environment(config_file, capsys, monkeypatch):
    monkeypatch.setenv("GITHUB_REF_NAME", "release")
    monkeypatch.setenv("GITHUB_SHA", REVISION)
    assert main(["--config", str(config_file), "tag"]) == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == "release-a1b2c3d4"


def test_invalid_input_exits_non_zero(config_file):
    assert main(["--config", str(config_file), "tag", "--branch", "///", "--revision", REVISION]) == 1


def test_missing_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main(["--config", str(tmp_path / "missing.yaml"), "workflow"]) == 1


def test_workflow_written_to_file(config_file, tmp_path):
    output = tmp_path / ".github" / "workflows" / "deploy.yml"
    assert main(["--config", str(config_file), "workflow", "-o", str(output)]) == 0

    workflow = yaml.safe_load(output.read_text())
    assert workflow["name"] == "deploy-orders"
    assert set(workflow["jobs"]) == {"build", "deploy"}


def test_dockerfile(config_file, capsys):
    assert main(["--config", str(config_file), "dockerfile", "--jar", "orders.jar"]) == 0
    out = capsys.readouterr().out
    assert "ARG JAR_FILE=orders.jar" in out
    assert "EXPOSE 8080" in out


def test_build_writes_github_output(config_file, tmp_path, monkeypatch, capsys):
    github_output = tmp_path / "github_output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(github_output))
    unit = _unit(tmp_path)

    with patch("shipyard.__main__.Pipeline") as Pipeline:
        pipeline = Pipeline.return_value
        pipeline.build_job.return_value = unit
        pipeline.store.manifest_path.return_value = tmp_path / "artifacts" / unit.tag / "deployment.json"

        assert main(["--config", str(config_file), "build", "--branch", "main", "--revision", REVISION]) == 0

    pipeline.build_job.assert_called_once_with("main", REVISION)
    lines = github_output.read_text().splitlines()
    assert "tag=main-a1b2c3d4" in lines
    assert any(line.startswith("manifest=") and line.endswith("deployment.json") for line in lines)


def test_deploy_failure_exits_non_zero(config_file, tmp_path):
    with patch("shipyard.__main__.Pipeline") as Pipeline:
        pipeline = Pipeline.return_value
        pipeline.store.read_manifest.return_value = _unit(tmp_path)
        pipeline.deploy_job.side_effect = AuthenticationFailure("denied", code="auth_failed")

        assert main(["--config", str(config_file), "deploy", "--tag", "main-a1b2c3d4"]) == 1

    pipeline.store.read_manifest.assert_called_once_with("main-a1b2c3d4")


def test_status(config_file, capsys):
    with patch("shipyard.__main__.Pipeline") as Pipeline:
        Pipeline.return_value.status.return_value = ContainerSlot(
            name="orders", present=True, running=True, image="orders:main-a1b2c3d4"
        )
        assert main(["--config", str(config_file), "--log-level", "WARNING", "status"]) == 0

    data = json.loads(capsys.readouterr().out)
    assert data["state"] == "running(main-a1b2c3d4)"
