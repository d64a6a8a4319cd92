"""Shipyard - build and deploy pipeline for containerized Java services."""

__version__ = "0.1.0"

from shipyard.core.config import Settings
from shipyard.core.models import DeploymentUnit, RunRecord

__all__ = ["Settings", "DeploymentUnit", "RunRecord", "__version__"]
