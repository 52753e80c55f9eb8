"""Configuration loader for Agent-Flytoolkit."""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .fly_client import API_BASE_URL

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FLYTOOLKIT_CONFIG"
DEFAULT_TOKEN_ENV = "FLY_API_TOKEN"
SUPPORTED_AUTH_TYPES = ("env", "gcp_secret")

# Environment variables that override values from the `fly` section
ENV_OVERRIDES = {
    "org_slug": "FLY_ORG",
    "app_name": "FLY_APP",
    "image": "FLY_IMAGE",
    "region": "FLY_REGION",
}


def default_config_path() -> Path:
    return Path.home() / ".config" / "agent-flytoolkit" / "config.yml"


@dataclass(frozen=True)
class Settings:
    """Resolved, read-only settings for one process."""
    org_slug: Optional[str]
    app_name: Optional[str]
    image: Optional[str]
    region: Optional[str]
    api_base_url: str
    auth_type: str
    token_env: str
    gcp_secret_name: Optional[str] = None
    gcp_project_id: Optional[str] = None
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 9090


def _get_config_path(explicit_path: Optional[str] = None) -> str:
    """
    Get config file path.

    Priority order:
    1. Explicit path (CLI --config)
    2. FLYTOOLKIT_CONFIG environment variable
    3. Default location: ~/.config/agent-flytoolkit/config.yml

    Returns:
        Absolute path to config file

    Raises:
        FileNotFoundError: If config file doesn't exist in any location
    """
    for source, candidate in (("argument", explicit_path), ("environment", os.getenv(CONFIG_ENV_VAR))):
        if not candidate:
            continue
        config_path = Path(candidate).expanduser()
        if config_path.exists():
            logger.info(f"Using config from {source}: {config_path}")
            return str(config_path.resolve())
        logger.warning(f"Config path from {source} doesn't exist: {config_path}")

    default_config = default_config_path()
    if default_config.exists():
        logger.info(f"Using default config location: {default_config}")
        return str(default_config)

    raise FileNotFoundError(
        "Configuration file not found. Please set up your config file using one of these methods:\n\n"
        "1. Use the default location:\n"
        f"   mkdir -p {default_config.parent}\n"
        f"   cp /path/to/your/config.yml {default_config}\n\n"
        "2. Point to an existing config file:\n"
        f"   export {CONFIG_ENV_VAR}=/path/to/your/config.yml\n\n"
        "3. Pass it explicitly:\n"
        "   flytoolkit --config /path/to/your/config.yml ...\n"
    )


def load_config(explicit_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from YAML file.

    Returns:
        Dict containing configuration with keys:
        - fly: dict with org_slug, app_name, image, region, optional api_base_url
        - authentication: dict with type and token source
        - webhook: optional dict with host and port

    Raises:
        ConfigError: If config file is invalid or incomplete
        FileNotFoundError: If no config file can be located
    """
    config_path = _get_config_path(explicit_path)

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {config_path}: {e}")

    if not config:
        raise ConfigError(f"Config file at {config_path} is empty")

    if not isinstance(config, dict):
        raise ConfigError(f"Config file at {config_path} must contain a mapping")

    if 'fly' not in config or not isinstance(config['fly'], dict):
        raise ConfigError(
            f"Missing 'fly' section in config at {config_path}\n"
            f"Required format:\n"
            f"fly:\n"
            f"  org_slug: your-org\n"
            f"  app_name: your-app"
        )

    auth = config.get('authentication')
    if not isinstance(auth, dict):
        raise ConfigError(
            f"Missing 'authentication' section in config at {config_path}\n"
            f"Required format:\n"
            f"authentication:\n"
            f"  type: env\n"
            f"  token_env: {DEFAULT_TOKEN_ENV}"
        )

    if 'type' not in auth:
        raise ConfigError("Missing 'authentication.type' in config")

    if auth['type'] not in SUPPORTED_AUTH_TYPES:
        raise ConfigError(
            f"Unsupported authentication type: {auth['type']}\n"
            f"Supported types: {', '.join(SUPPORTED_AUTH_TYPES)}."
        )

    if auth['type'] == 'gcp_secret':
        for key in ('secret_name', 'project_id'):
            if not auth.get(key):
                raise ConfigError(f"Missing 'authentication.{key}' in config (required for gcp_secret)")

    webhook = config.get('webhook') or {}
    if not isinstance(webhook, dict):
        raise ConfigError("'webhook' section must be a mapping")
    port = webhook.get('port', 9090)
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"Invalid 'webhook.port': {port!r}")

    logger.info(f"Configuration loaded successfully from {config_path}")
    logger.debug(f"Using authentication type: {auth['type']}")

    return config


def load_settings(explicit_path: Optional[str] = None) -> Settings:
    """Load the config file and apply environment overrides."""
    config = load_config(explicit_path)
    fly = dict(config['fly'])

    for key, env_var in ENV_OVERRIDES.items():
        env_value = os.getenv(env_var)
        if env_value:
            logger.debug(f"Using {env_var} from environment for {key}")
            fly[key] = env_value

    auth = config['authentication']
    webhook = config.get('webhook') or {}
    return Settings(
        org_slug=fly.get('org_slug'),
        app_name=fly.get('app_name'),
        image=fly.get('image'),
        region=fly.get('region'),
        api_base_url=fly.get('api_base_url') or API_BASE_URL,
        auth_type=auth['type'],
        token_env=auth.get('token_env') or DEFAULT_TOKEN_ENV,
        gcp_secret_name=auth.get('secret_name'),
        gcp_project_id=auth.get('project_id'),
        webhook_host=webhook.get('host', "127.0.0.1"),
        webhook_port=webhook.get('port', 9090),
    )
