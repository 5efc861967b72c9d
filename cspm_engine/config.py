"""
Configuration loading for the CSPM integration engine.

Engine settings come from an optional YAML file overlaid by ``CSPM_*``
environment variables. Integration definitions are YAML or JSON documents
validated into IntegrationConfig.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .connectors.aws_session import (
    DEFAULT_ORG_ACCESS_ROLE_NAME,
    DEFAULT_REGION,
    DEFAULT_SESSION_DURATION,
    DEFAULT_SESSION_NAME,
)
from .errors import ValidationError
from .models import IntegrationConfig

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENV_OVERRIDES = {
    "CSPM_PROFILE": "profile_name",
    "CSPM_REGION": "region",
    "CSPM_ORG_ACCESS_ROLE_NAME": "org_access_role_name",
    "CSPM_SESSION_DURATION": "session_duration_seconds",
    "CSPM_SESSION_NAME": "session_name",
    "CSPM_AUDIT_DIR": "audit_dir",
    "CSPM_LOG_LEVEL": "log_level",
}


class EngineSettings(BaseModel):
    """Settings shared by every reconciliation run."""
    profile_name: Optional[str] = Field(None, description="AWS profile holding the source credentials")
    region: str = Field(DEFAULT_REGION, description="Region for IAM and STS clients")
    org_access_role_name: str = Field(DEFAULT_ORG_ACCESS_ROLE_NAME, description="Role assumed in target accounts")
    session_duration_seconds: int = Field(DEFAULT_SESSION_DURATION, ge=900, le=43200)
    session_name: str = Field(DEFAULT_SESSION_NAME, description="RoleSessionName for assumed sessions")
    audit_dir: Optional[str] = Field(None, description="Directory for audit logs; disabled when unset")
    log_level: str = Field("INFO", description="Logging level for the CLI")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {v!r}, expected one of {', '.join(LOG_LEVELS)}")
        return level


def _read_document(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(
    path: Optional[Union[str, Path]] = None, environ: Optional[Mapping[str, str]] = None
) -> EngineSettings:
    """
    Load engine settings.

    Args:
        path: Optional YAML (or JSON) settings file
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        Validated EngineSettings
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if path:
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Settings file not found: {path}")
        data.update(_read_document(path))
        logger.info(f"Loaded settings from {path}")

    for variable, field in ENV_OVERRIDES.items():
        if environ.get(variable):
            data[field] = environ[variable]

    try:
        return EngineSettings(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid settings: {e}") from e


def load_integration_config(source: Union[str, Path, Mapping[str, Any]], **overrides) -> IntegrationConfig:
    """
    Build an IntegrationConfig from a file or mapping.

    Args:
        source: Path to a YAML/JSON file, or a mapping of fields
        **overrides: Fields that take precedence over ``source`` (None values are ignored)

    Returns:
        Validated IntegrationConfig

    Raises:
        ValidationError: if required fields are missing or malformed
    """
    if isinstance(source, Mapping):
        data = dict(source)
    else:
        path = Path(source)
        if not path.exists():
            raise ValidationError(f"Integration file not found: {path}")
        data = _read_document(path)

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return IntegrationConfig(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid integration config: {e}") from e
