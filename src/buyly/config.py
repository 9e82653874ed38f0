"""Configuration handling and validation"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from buyly.errors import ConfigurationError
from buyly.utils import data_dir

DEFAULT_SETTINGS: Dict[str, Any] = {
    "budget_alert": {
        "threshold_percent": 50,
        # When true, users must also have `is_budget_alert_set` to get alerts
        "require_alert_flag": False,
    },
    "bulk_write": {
        "batch_size": 500,
    },
    "credits": {
        "signup_amount": 1000,
        "tier": "free",
    },
    "email": {
        "budget_alert_from": "Buyly App <budgets@buyly.co.za>",
        "welcome_from": "Buyly App <buyly@buyly.co.za>",
        "invite_from": "Buyly App <buyly@buyly.co.za>",
        "report_from": "Buyly <noreply@buyly.co.za>",
        "report_to": "info@buyly.co.za",
        "ops_address": None,
    },
    "push": {
        "channels": {
            "item_added": "grocery-list-updates",
            "invites": "grocery-list-invites",
        },
    },
    "receipts": {
        "upload_expires_in": 600,
        "model": "gemini-2.5-flash",
        "price_tag_model": "gemini-2.5-flash-lite",
    },
}


def load_dotenv(env_path: Optional[Path] = None) -> None:
    """Load .env file into environment if it exists."""
    if env_path is None:
        env_path = Path(__file__).resolve().parent.parent.parent / ".env"
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            key, _, value = line.partition("=")
            value = value.strip().strip('"').strip("'")
            os.environ[key.strip()] = value


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load application settings.

    Defaults are overlaid with the YAML file at ``config_path``, else
    ``$BUYLY_SETTINGS``, else ``data/settings.yaml`` when it exists.

    Raises:
        ConfigurationError: if the file is not a mapping or a value is invalid
    """
    if config_path is None:
        env_path = os.environ.get("BUYLY_SETTINGS")
        config_path = Path(env_path) if env_path else data_dir("settings.yaml")

    overrides: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r") as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"Settings file {config_path} must contain a mapping")

    settings = _deep_merge(DEFAULT_SETTINGS, overrides)

    batch_size = settings["bulk_write"]["batch_size"]
    if not isinstance(batch_size, int) or not 1 <= batch_size <= 500:
        raise ConfigurationError(f"bulk_write.batch_size must be between 1 and 500, got {batch_size!r}")

    return settings


def require_env(*names: str) -> List[str]:
    """Return the values of the named environment variables.

    Raises:
        ConfigurationError: listing every variable that is unset or empty
    """
    missing = [name for name in names if not os.environ.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    return [os.environ[name] for name in names]
