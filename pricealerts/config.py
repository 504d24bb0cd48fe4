import os
import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Environment variables (secrets)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_CONFIG_FILE = "./configs/default.yaml"

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
PUSH_GATEWAY_TOKEN = os.getenv("PUSH_GATEWAY_TOKEN", "")
UNSUBSCRIBE_SECRET = os.getenv("UNSUBSCRIBE_SECRET", "dev-secret-change-in-production")
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

REQUIRED_SECTIONS = ['app', 'scheduler', 'delivery', 'alerts']


class ConfigLoader:
    """Loads and validates YAML configuration with environment variable substitution."""

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self._config: Optional[Dict[str, Any]] = None
        self._load()

    def _load(self):
        """Load YAML config file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        for section in REQUIRED_SECTIONS:
            if section not in self._config:
                raise ValueError(f"Missing required config section: {section}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get config value by dot-notation path.
        Example: config.get('scheduler.interval_seconds') -> 300
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        # ${VAR} strings are read from the environment
        if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
            env_var = value[2:-1]
            return os.getenv(env_var, default)

        return value

    @property
    def raw(self) -> Dict[str, Any]:
        """Get raw config dict."""
        return self._config


# Global config instance (lazy-loaded)
_config_instance: Optional[ConfigLoader] = None


def get_config_file() -> str:
    return os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE)


def get_config() -> ConfigLoader:
    """Get global config instance (singleton pattern)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigLoader(get_config_file())
    return _config_instance


def reload_config():
    """Reload config from the file named by CONFIG_FILE."""
    global _config_instance
    _config_instance = ConfigLoader(get_config_file())


def get_app_name() -> str:
    return get_config().get('app.name', 'Price Alerts')


def get_app_version() -> str:
    return get_config().get('app.version', '1.0.0')


def _bounded_number(value: Any, default: float, low: float, high: float) -> float:
    """Return value as float when low <= value <= high, else default."""
    try:
        number = float(value)
    except (ValueError, TypeError):
        return default
    if number < low or number > high:
        return default
    return number


def get_scheduler_config() -> Dict[str, Any]:
    """Get sweep scheduling config with validation and safe defaults."""
    cfg = get_config().get('scheduler', {})
    if not isinstance(cfg, dict):
        cfg = {}

    interval = _bounded_number(cfg.get('interval_seconds', 300), 300, 10, 86400)
    # The deadline must leave room before the next tick
    deadline = _bounded_number(cfg.get('sweep_deadline_seconds', interval * 0.8), interval * 0.8, 1, interval)

    return {
        'interval_seconds': interval,
        'sweep_deadline_seconds': deadline,
        'max_workers': int(_bounded_number(cfg.get('max_workers', 8), 8, 1, 256)),
        'io_timeout_seconds': _bounded_number(cfg.get('io_timeout_seconds', 15), 15, 0.1, 600),
        'run_on_start': bool(cfg.get('run_on_start', True)),
    }


def get_delivery_config() -> Dict[str, Any]:
    """Get delivery/retry config with safe defaults."""
    cfg = get_config().get('delivery', {})
    if not isinstance(cfg, dict):
        cfg = {}

    retry_delays = cfg.get('retry_delays_seconds', [1, 2, 4])
    if not isinstance(retry_delays, list) or not all(isinstance(d, (int, float)) for d in retry_delays):
        retry_delays = [1, 2, 4]

    channels = cfg.get('channels', {})
    if not isinstance(channels, dict):
        channels = {}

    return {
        'max_attempts': int(_bounded_number(cfg.get('max_attempts', 3), 3, 1, 10)),
        'timeout_seconds': _bounded_number(cfg.get('timeout_seconds', 10), 10, 0.1, 120),
        'retry_delays_seconds': retry_delays,
        'channels': channels,
    }


def get_channel_config(channel: str) -> Dict[str, Any]:
    raw = get_delivery_config()['channels'].get(channel, {})
    if not isinstance(raw, dict):
        raw = {}
    # Re-read each key through get() so ${VAR} values are substituted
    channel_cfg = {key: get_config().get(f'delivery.channels.{channel}.{key}') for key in raw}
    channel_cfg.setdefault('enabled', True)
    return channel_cfg


def get_alerts_config() -> Dict[str, Any]:
    """Get throttling defaults (timezone, daily cap window)."""
    cfg = get_config().get('alerts', {})
    if not isinstance(cfg, dict):
        cfg = {}

    window = cfg.get('daily_cap_window', 'calendar')
    if window not in ('calendar', 'rolling'):
        window = 'calendar'

    return {
        'timezone': cfg.get('timezone', 'UTC'),
        'daily_cap_window': window,
    }


def get_candidates_config() -> Dict[str, Any]:
    return {
        'unfiltered_catalog_limit': int(
            _bounded_number(get_config().get('candidates.unfiltered_catalog_limit', 5000), 5000, 0, 10_000_000)
        )
    }


def get_database_cleanup_config() -> Dict[str, Any]:
    return get_config().get('database.cleanup', {})


def get_healthcheck_config() -> Dict[str, Any]:
    cfg = get_config().get('healthcheck', {})
    if not isinstance(cfg, dict):
        cfg = {}
    return {
        'enabled': cfg.get('enabled', True),
        'host': cfg.get('host', '0.0.0.0'),
        'port': int(_bounded_number(cfg.get('port', 8080), 8080, 1, 65535)),
    }


def get_logging_config() -> Dict[str, Any]:
    return get_config().get('logging', {})


def get_enabled_channels() -> List[str]:
    """Channel names switched on in config."""
    return [name for name in ('email', 'push', 'sms', 'telegram') if get_channel_config(name).get('enabled', True)]
