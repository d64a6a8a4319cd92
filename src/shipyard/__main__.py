"""CLI entrypoints (shipyard build, shipyard deploy, shipyard serve, ...)."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from shipyard.build.dockerfile import render_dockerfile
from shipyard.build.source import resolve_source
from shipyard.core.config import Settings
from shipyard.core.exceptions import ConfigurationError, ShipyardError
from shipyard.core.pipeline_config import load_pipeline_config
from shipyard.pipeline import Pipeline
from shipyard.utils.logging import setup_logging
from shipyard.workflow import render_workflow

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", description="Build and deploy a Java service over SSH")
    parser.add_argument("--config", help="Pipeline YAML file (default: $PIPELINE_FILE or shipyard.yaml)")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument("--log-format", choices=["json", "console"], help="Override LOG_FORMAT")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_source_args(p):
        p.add_argument("--branch", help="Branch name (default: CI env or git)")
        p.add_argument("--revision", help="Revision identifier (default: CI env or git)")

    add_source_args(sub.add_parser("tag", help="Print the tag for a branch and revision"))
    add_source_args(sub.add_parser("build", help="Run the build job and write a deployment unit"))

    cmd_deploy = sub.add_parser("deploy", help="Run the deploy job for a deployment unit")
    target = cmd_deploy.add_mutually_exclusive_group(required=True)
    target.add_argument("--manifest", help="Path to deployment.json or its directory")
    target.add_argument("--tag", help="Tag of a unit in the local artifact store")

    add_source_args(sub.add_parser("run", help="Run the build job, then the deploy job"))

    cmd_rollback = sub.add_parser("rollback", help="Restart the slot on an image already on the remote host")
    cmd_rollback.add_argument("--tag", required=True, help="Tag to restore")

    sub.add_parser("status", help="Show the remote container slot")
    sub.add_parser("unlock", help="Remove a leftover remote deploy lock")
    sub.add_parser("prune", help="Delete expired local deployment units")

    cmd_workflow = sub.add_parser("workflow", help="Render the GitHub Actions workflow")
    cmd_workflow.add_argument("-o", "--output", help="Write to a file instead of stdout")

    cmd_dockerfile = sub.add_parser("dockerfile", help="Render the default two-stage Dockerfile")
    cmd_dockerfile.add_argument("-o", "--output", help="Write to a file instead of stdout")
    cmd_dockerfile.add_argument("--jar", default="app.jar", help="Jar path relative to the build context")

    sub.add_parser("serve", help="Start the trigger service")
    return parser


def _emit(value) -> None:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    print(json.dumps(value, indent=2, default=str))


def _write_output(text: str, output: Optional[str]) -> None:
    if not output:
        sys.stdout.write(text)
        return
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logger.info("File written", path=str(path))


def write_github_output(**values: str) -> None:
    """Append ``key=value`` lines to $GITHUB_OUTPUT when running in Actions."""
    output_file = os.getenv("GITHUB_OUTPUT")
    if not output_file:
        return
    with open(output_file, "a", encoding="utf-8") as f:
        for key, value in values.items():
            f.write(f"{key}={value}\n")


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid environment configuration: {exc}", code="settings_invalid") from exc


def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    config_file = args.config or settings.pipeline_file

    if args.cmd == "serve":
        from shipyard.main import run

        os.environ["PIPELINE_FILE"] = config_file
        # validate before uvicorn takes over
        load_pipeline_config(config_file)
        run(settings)
        return 0

    config = load_pipeline_config(config_file)

    if args.cmd == "workflow":
        _write_output(
            render_workflow(config, config_file, settings.artifacts_dir, settings.artifact_retention_days),
            args.output,
        )
        return 0

    if args.cmd == "dockerfile":
        _write_output(render_dockerfile(config.image, args.jar, config.deploy.container_port), args.output)
        return 0

    pipeline = Pipeline(settings, config)

    if args.cmd == "tag":
        branch, revision = resolve_source(args.branch, args.revision, config.project_dir)
        print(pipeline.tag_for(branch, revision))
    elif args.cmd == "build":
        branch, revision = resolve_source(args.branch, args.revision, config.project_dir)
        unit = pipeline.build_job(branch, revision)
        write_github_output(tag=unit.tag, manifest=str(pipeline.store.manifest_path(unit.tag)))
        _emit(unit)
    elif args.cmd == "deploy":
        unit = pipeline.store.read_manifest(args.manifest or args.tag)
        _emit(pipeline.deploy_job(unit))
    elif args.cmd == "run":
        branch, revision = resolve_source(args.branch, args.revision, config.project_dir)
        _emit(pipeline.run(branch, revision))
    elif args.cmd == "rollback":
        _emit(pipeline.rollback(args.tag))
    elif args.cmd == "status":
        slot = pipeline.status()
        _emit({**slot.model_dump(mode="json"), "state": slot.state})
    elif args.cmd == "unlock":
        removed = pipeline.unlock()
        print("lock removed" if removed else "no lock held")
    elif args.cmd == "prune":
        _emit({"removed": pipeline.prune()})
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = _load_settings()
        setup_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)
        return dispatch(args, settings)
    except ShipyardError as exc:
        if not structlog.is_configured():
            setup_logging()
        logger.error(
            "Command failed",
            command=args.cmd,
            error_type=exc.__class__.__name__,
            code=exc.code,
            error=str(exc),
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
