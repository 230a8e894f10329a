"""
Operator configuration loading.

Settings come from an optional YAML file; a handful of environment
variables override them so the operator can be configured from a
Deployment manifest alone.
"""
import logging
import os
from typing import Optional

import yaml
from pydantic import ValidationError

from renovate_operator.models import OperatorConfig, OperatorConfigFile, parse_image_pull_secrets

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"'{name}' needs to be an integer: {e}")


def apply_env_overrides(config: OperatorConfig, environ: Optional[dict] = None) -> OperatorConfig:
    """
    Apply environment variable overrides to a loaded configuration.

    Args:
        config: Configuration loaded from file (or defaults)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        New OperatorConfig with overrides applied

    Raises:
        ValueError: If an override has an invalid value
    """
    env = os.environ if environ is None else environ
    data = config.model_dump()

    if "WATCH_NAMESPACE" in env:
        data["watch_namespace"] = env["WATCH_NAMESPACE"]
    if "DELETE_SUCCESSFUL_JOBS" in env:
        data["executor"]["delete_successful_jobs"] = env["DELETE_SUCCESSFUL_JOBS"].lower() in TRUE_VALUES
    if "JOB_TIMEOUT_SECONDS" in env:
        data["jobs"]["timeout_seconds"] = _parse_int("JOB_TIMEOUT_SECONDS", env["JOB_TIMEOUT_SECONDS"])
    if "JOB_BACKOFF_LIMIT" in env:
        data["jobs"]["backoff_limit"] = _parse_int("JOB_BACKOFF_LIMIT", env["JOB_BACKOFF_LIMIT"])
    if "JOB_TTL_SECONDS_AFTER_FINISHED" in env:
        data["jobs"]["ttl_seconds_after_finished"] = _parse_int(
            "JOB_TTL_SECONDS_AFTER_FINISHED", env["JOB_TTL_SECONDS_AFTER_FINISHED"]
        )
    if "IMAGE_PULL_SECRETS" in env:
        data["jobs"]["image_pull_secrets"] = parse_image_pull_secrets(env["IMAGE_PULL_SECRETS"])

    try:
        return OperatorConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration override: {e}")


def load_config(config_path: Optional[str] = None, environ: Optional[dict] = None) -> OperatorConfig:
    """
    Load operator configuration.

    Args:
        config_path: Path to YAML config file (None for defaults only)
        environ: Environment mapping used for overrides

    Returns:
        OperatorConfig

    Raises:
        ValueError: If the file or an override is invalid
    """
    if config_path:
        logger.info(f"Loading configuration from {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
            config = OperatorConfigFile(**data).operator
        except yaml.YAMLError as e:
            raise ValueError(f"YAML parse error: {e}")
        except ValidationError as e:
            raise ValueError(f"Validation error: {e}")
    else:
        config = OperatorConfig()

    return apply_env_overrides(config, environ)
