"""
Configuration settings for the Face-to-Phone security core.
"""
import copy
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional
import yaml

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
ENV = os.getenv("ENVIRONMENT", "development")
ENV_PREFIX = "F2P_"

# Default config values
DEFAULT_CONFIG = {
    "storage": {
        "redis": {
            "host": os.getenv("REDIS_HOST", "localhost"),
            "port": int(os.getenv("REDIS_PORT", 6379)),
            "db": int(os.getenv("REDIS_DB", 0)),
        },
        "key_prefix": "f2p",
        "operation_timeout_seconds": 5.0,
    },
    "risk": {
        "block_threshold": 0.6,
        "high_risk_threshold": 0.7,
        "medium_risk_threshold": 0.4,
        "max_history": 50,
        "biometric_failure_weight": 0.8,
        "amount_multiplier": 3.0,
        "amount_step_weight": 0.2,
        "amount_max_weight": 0.6,
        "suspicious_hours_start": 22,  # 10 PM
        "suspicious_hours_end": 6,  # 6 AM
        "suspicious_hours_weight": 0.3,
        "rapid_transaction_minutes": 5,
        "rapid_transaction_weight": 0.4,
        "round_amount_minimum": 1000.0,
        "round_amount_multiple": 100.0,
        "round_amount_weight": 0.2,
        "new_recipient_minimum": 500.0,
        "new_recipient_weight": 0.3,
        "sim_swap_probability": 0.1,
        "sim_swap_weight": 0.7,
        "velocity_window_hours": 24,
        "velocity_max_transactions": 5,
        "velocity_weight": 0.4,
    },
    "ml": {
        "heuristic_base_weight": 0.3,
        "anomaly_min_history": 10,
        "anomaly_estimators": 100,
        "random_state": 42,
        "anomaly_reason_threshold": 0.7,
        "deep_reason_threshold": 0.8,
    },
    "biometrics": {
        "face_threshold": 0.80,
        "voice_threshold": 0.75,
        "inflation_min": 0.8,
        "inflation_max": 0.95,
        "score_cap": 0.95,
        "face_embedding_size": 128,
        "voice_embedding_size": 64,
    },
    "alerts": {
        "max_alerts": 200,
    },
    "authenticator": {
        "simulation_success_rate": 0.95,
        "simulation_delay_seconds": 2.0,
    },
    "monitoring": {
        "log_level": "INFO" if ENV == "production" else "DEBUG",
    },
}


class Config:
    """Configuration management for the application."""

    _instance = None
    _config: Dict[str, Any] = {}

    def __new__(cls):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance._load_config()
        return cls._instance

    def _load_config(self):
        """Load configuration from environment and files."""
        self._config = copy.deepcopy(DEFAULT_CONFIG)

        # Load environment-specific config if available
        env_config_path = os.path.join(BASE_DIR, "config", f"{ENV}.yaml")
        if os.path.exists(env_config_path):
            with open(env_config_path, "r") as f:
                env_config = yaml.safe_load(f) or {}
                self._deep_update(self._config, env_config)

        # Override with environment variables
        # Example: F2P_RISK__BLOCK_THRESHOLD=0.65 would override risk.block_threshold
        for key, value in os.environ.items():
            if key.startswith(ENV_PREFIX):
                parts = key[len(ENV_PREFIX):].lower().split("__")
                self._update_nested_dict(self._config, parts, value)

    def _deep_update(self, d: Dict[str, Any], u: Dict[str, Any]):
        """Recursively update a dictionary."""
        for k, v in u.items():
            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                self._deep_update(d[k], v)
            else:
                d[k] = v

    def _update_nested_dict(self, d: Dict[str, Any], keys: list, value: Any):
        """Update a nested dictionary using a list of keys."""
        if len(keys) == 1:
            if not isinstance(value, str):
                d[keys[0]] = value
                return
            try:
                # Try to convert string to the type of the current value
                if isinstance(d.get(keys[0]), bool):
                    d[keys[0]] = value.lower() in ("true", "yes", "1")
                elif isinstance(d.get(keys[0]), int):
                    d[keys[0]] = int(value)
                elif isinstance(d.get(keys[0]), float):
                    d[keys[0]] = float(value)
                else:
                    d[keys[0]] = value
            except ValueError:
                d[keys[0]] = value
        elif len(keys) > 1 and keys[0] in d:
            if not isinstance(d[keys[0]], dict):
                d[keys[0]] = {}
            self._update_nested_dict(d[keys[0]], keys[1:], value)

    def get(self, key_path: str, default: Optional[Any] = None) -> Any:
        """
        Get a configuration value using dot notation.

        Example: config.get("risk.block_threshold")
        """
        keys = key_path.split(".")
        result = self._config
        for key in keys:
            if isinstance(result, dict) and key in result:
                result = result[key]
            else:
                return default
        return result

    def set(self, key_path: str, value: Any):
        """
        Set a configuration value using dot notation.

        Example: config.set("alerts.max_alerts", 500)
        """
        keys = key_path.split(".")
        self._update_nested_dict(self._config, keys, value)

    def reload(self):
        """Discard runtime changes and reload from defaults, files and environment."""
        self._load_config()

    @property
    def all(self) -> Dict[str, Any]:
        """Get the entire configuration dictionary."""
        return copy.deepcopy(self._config)


def configure_logging(level: Optional[str] = None):
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or config.get("monitoring.log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Create a singleton instance
config = Config()
