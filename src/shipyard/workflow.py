"""GitHub Actions workflow for the build and deploy jobs."""

import math
import re
from typing import Any, Dict

import yaml

from shipyard.core.pipeline_config import BuildTool, PipelineConfig

INSTALL_COMMAND = "pip install shipyard-deploy"
UNIT_ARTIFACT = "deployment-unit"

REMOTE_SECRETS = (
    "REMOTE_HOST",
    "REMOTE_USER",
    "REMOTE_PASSWORD",
    "REMOTE_PRIVATE_KEY",
    "REMOTE_KEY_PASSPHRASE",
    "REMOTE_DEPLOY_DIR",
)


def _java_version(build_image: str) -> str:
    match = re.search(r":(\d+)", build_image)
    return match.group(1) if match else "17"


def _setup_steps(config: PipelineConfig, with_java: bool) -> list:
    steps = [
        {
            "uses": "actions/checkout@v4",
            "with": {"ref": "${{ inputs.branch || github.ref }}"},
        },
    ]
    if with_java:
        steps.append(
            {
                "uses": "actions/setup-java@v4",
                "with": {
                    "distribution": "temurin",
                    "java-version": _java_version(config.image.build_image),
                    "cache": "gradle" if config.build.tool == BuildTool.GRADLE else "maven",
                },
            }
        )
    steps.extend(
        [
            {"uses": "actions/setup-python@v5", "with": {"python-version": "3.11"}},
            {"name": "Install shipyard", "run": INSTALL_COMMAND},
        ]
    )
    return steps


def build_workflow(
    config: PipelineConfig,
    config_file: str = "shipyard.yaml",
    artifacts_dir: str = ".shipyard/artifacts",
    retention_days: float = 1.0,
) -> Dict[str, Any]:
    """Workflow as a mapping; see ``render_workflow``."""
    cli = f"shipyard --config {config_file}"
    unit_path = f"{artifacts_dir.rstrip('/')}/${{{{ steps.build.outputs.tag }}}}"

    build_job = {
        "runs-on": "ubuntu-latest",
        "outputs": {"tag": "${{ steps.build.outputs.tag }}"},
        "env": {"ARTIFACTS_DIR": artifacts_dir, "LOG_FORMAT": "console"},
        "steps": _setup_steps(config, with_java=True)
        + [
            {
                "name": "Build deployment unit",
                "id": "build",
                "run": (
                    f'{cli} build --branch "${{{{ inputs.branch || github.ref_name }}}}" '
                    '--revision "$(git rev-parse HEAD)"'
                ),
            },
            {
                "uses": "actions/upload-artifact@v4",
                "with": {
                    "name": UNIT_ARTIFACT,
                    "path": unit_path,
                    "retention-days": max(1, math.ceil(retention_days)),
                    "if-no-files-found": "error",
                },
            },
        ],
    }

    deploy_env = {name: f"${{{{ secrets.{name} }}}}" for name in REMOTE_SECRETS}
    deploy_env["REMOTE_PORT"] = "${{ secrets.REMOTE_PORT || '22' }}"
    deploy_env["LOG_FORMAT"] = "console"

    deploy_job = {
        "needs": "build",
        "runs-on": "ubuntu-latest",
        "steps": _setup_steps(config, with_java=False)
        + [
            {
                "uses": "actions/download-artifact@v4",
                "with": {"name": UNIT_ARTIFACT, "path": "unit"},
            },
            {
                "name": "Deploy ${{ needs.build.outputs.tag }}",
                "run": f"{cli} deploy --manifest unit/deployment.json",
                "env": deploy_env,
            },
        ],
    }

    return {
        "name": f"deploy-{config.app}",
        "on": {
            "push": {"branches": list(config.trigger.branches)},
            "workflow_dispatch": {
                "inputs": {
                    "branch": {
                        "description": "Branch to build and deploy",
                        "required": False,
                        "type": "string",
                    }
                }
            },
        },
        # one apply at a time per app
        "concurrency": {"group": f"shipyard-{config.app}", "cancel-in-progress": False},
        "jobs": {"build": build_job, "deploy": deploy_job},
    }


def render_workflow(
    config: PipelineConfig,
    config_file: str = "shipyard.yaml",
    artifacts_dir: str = ".shipyard/artifacts",
    retention_days: float = 1.0,
) -> str:
    """Render the two-job workflow (build, then deploy) as YAML."""
    workflow = build_workflow(config, config_file, artifacts_dir, retention_days)
    return yaml.safe_dump(workflow, sort_keys=False, default_flow_style=False, width=120)
