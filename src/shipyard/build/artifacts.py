"""Local store of deployment units (image archive + manifest)."""

from __future__ import annotations

import json
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

import structlog
from pydantic import ValidationError

from shipyard.core.exceptions import ConfigurationError
from shipyard.core.models import DeploymentUnit, utc_now

logger = structlog.get_logger()

MANIFEST_NAME = "deployment.json"
ARCHIVE_NAME = "image.tar"


class ArtifactStore:
    """Keeps one directory per tag under ``root``."""

    def __init__(self, root: Union[str, Path], retention_days: float = 1.0):
        self.root = Path(root)
        self.retention = timedelta(days=retention_days)

    def unit_dir(self, tag: str) -> Path:
        return self.root / tag

    def archive_path(self, tag: str) -> Path:
        return self.unit_dir(tag) / ARCHIVE_NAME

    def manifest_path(self, tag: str) -> Path:
        return self.unit_dir(tag) / MANIFEST_NAME

    def expiry_for(self, created_at: datetime) -> datetime:
        return created_at + self.retention

    def write_manifest(self, unit: DeploymentUnit) -> Path:
        """Write ``deployment.json`` atomically next to the archive."""
        path = self.manifest_path(unit.tag)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(unit.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)
        logger.info("Deployment manifest written", tag=unit.tag, manifest=str(path))
        return path

    def read_manifest(self, ref: Union[str, Path]) -> DeploymentUnit:
        """Load a unit from a manifest path, a unit directory, or a tag."""
        path = Path(ref)
        if path.is_dir():
            path = path / MANIFEST_NAME
        elif not path.exists():
            path = self.manifest_path(str(ref))

        if not path.exists():
            raise ConfigurationError(f"Deployment manifest not found: {ref}", code="manifest_missing")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            unit = DeploymentUnit(**data)
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            raise ConfigurationError(f"Invalid deployment manifest {path}: {exc}", code="manifest_invalid") from exc

        # a downloaded CI artifact lands somewhere else than where it was built
        archive = Path(unit.archive_path)
        if not archive.exists():
            sibling = path.parent / archive.name
            if sibling.exists():
                unit.archive_path = str(sibling)
        return unit

    def list_units(self) -> List[DeploymentUnit]:
        units = []
        if not self.root.exists():
            return units
        for child in sorted(self.root.iterdir()):
            manifest = child / MANIFEST_NAME
            if not manifest.exists():
                continue
            try:
                units.append(self.read_manifest(manifest))
            except ConfigurationError as exc:
                logger.warning("Skipping unreadable manifest", manifest=str(manifest), error=str(exc))
        return units

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """Delete units past their retention window; return removed tags."""
        now = now or utc_now()
        removed = []
        if not self.root.exists():
            return removed

        for child in sorted(self.root.iterdir()):
            if not child.is_dir():
                continue
            manifest = child / MANIFEST_NAME
            expired = False
            if manifest.exists():
                try:
                    unit = self.read_manifest(manifest)
                    if unit.expires_at is None:
                        unit.expires_at = self.expiry_for(unit.created_at)
                    expired = unit.is_expired(now)
                except ConfigurationError:
                    expired = True
            else:
                # leftovers from an interrupted build
                mtime = datetime.fromtimestamp(child.stat().st_mtime, tz=now.tzinfo)
                expired = now >= mtime + self.retention

            if expired:
                shutil.rmtree(child, ignore_errors=True)
                removed.append(child.name)

        if removed:
            logger.info("Pruned expired deployment units", tags=removed)
        return removed
