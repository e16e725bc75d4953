"""
Configuration for the IAM Reconciler.

Settings are read from a YAML or JSON file and merged over defaults.
A couple of environment variables override the file for CI use.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field

from .engine.polling import PollPolicy

logger = logging.getLogger(__name__)

ENV_MOCK = "IAM_RECONCILER_MOCK"
ENV_AUDIT_DIR = "IAM_RECONCILER_AUDIT_DIR"


class ReconcilerSettings(BaseModel):
    """Runtime settings for a reconciliation run."""
    mock_mode: bool = Field(True, description="Use the in-memory backend instead of AWS")
    session_name: str = Field("iam-reconciler", description="Session name for assumed roles")
    session_duration_seconds: int = Field(3600, ge=900, le=43200)
    max_wait_seconds: float = Field(600, gt=0, description="Polling budget per stack or change set")
    poll_interval_seconds: float = Field(2.0, gt=0)
    poll_backoff: float = Field(1.0, ge=1.0, description="1.0 keeps the interval fixed")
    max_poll_interval_seconds: float = Field(30.0, gt=0)
    throttle_seconds: float = Field(1.0, ge=0, description="Delay between accounts and roles")
    max_policy_versions: int = Field(5, ge=2)
    audit_dir: str = "audit"
    default_region: str = "us-east-1"
    connectors: Dict[str, Dict[str, Any]] = Field(default_factory=lambda: {"aws": {}})

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.poll_interval_seconds,
            timeout=self.max_wait_seconds,
            backoff=self.poll_backoff,
            max_interval=self.max_poll_interval_seconds,
        )

    def connector_config(self, system: str = "aws") -> Dict[str, Any]:
        config = dict(self.connectors.get(system) or {})
        config.setdefault("region", self.default_region)
        return config


def _read_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration in {path} must be a mapping")
    return data


def load_settings(config_path: Optional[Union[str, Path]] = None,
                  overrides: Optional[Dict[str, Any]] = None) -> ReconcilerSettings:
    """
    Load settings from a file, the environment and explicit overrides.

    Args:
        config_path: YAML or JSON file; a missing path means defaults
        overrides: Values that win over everything else (CLI flags)

    Returns:
        Validated ReconcilerSettings
    """
    data: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            data.update(_read_file(path))
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.warning(f"Configuration file not found: {path}, using defaults")

    if ENV_MOCK in os.environ:
        data["mock_mode"] = os.environ[ENV_MOCK].lower() in ("1", "true", "yes")
    if ENV_AUDIT_DIR in os.environ:
        data["audit_dir"] = os.environ[ENV_AUDIT_DIR]

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    return ReconcilerSettings(**data)
