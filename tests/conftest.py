"""Shared test fixtures and configuration."""
from datetime import datetime
from pathlib import Path

import pytest
import yaml

from pricealerts.notif.dispatcher import TriggerDispatcher
from pricealerts.notif.throttle import ThrottleController
from pricealerts.rules.types import AlertRule, ChannelName, MarketSnapshot
from tests.fakes import NOW, FakeChannel, make_rule, make_snapshot


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def snapshot() -> MarketSnapshot:
    return make_snapshot()


@pytest.fixture
def rule() -> AlertRule:
    return make_rule()


@pytest.fixture
def throttler() -> ThrottleController:
    return ThrottleController(default_timezone="UTC", daily_cap_window="calendar")


@pytest.fixture
def email_channel() -> FakeChannel:
    return FakeChannel(ChannelName.EMAIL)


@pytest.fixture
def make_dispatcher():
    """Factory for a dispatcher with no retry sleeps."""
    def _make(store, channels, **kwargs):
        kwargs.setdefault("retry_delays", (0,))
        kwargs.setdefault("timeout_seconds", 1)
        return TriggerDispatcher(store, {c.name: c for c in channels}, **kwargs)
    return _make


@pytest.fixture
def test_config_yaml(tmp_path: Path) -> Path:
    """Create a temporary test config YAML file."""
    config = {
        'app': {
            'name': 'Price Alerts Test',
            'version': '9.9.9'
        },
        'scheduler': {
            'interval_seconds': 60,
            'sweep_deadline_seconds': 45,
            'max_workers': 4,
            'io_timeout_seconds': 5,
            'run_on_start': False
        },
        'candidates': {
            'unfiltered_catalog_limit': 100
        },
        'alerts': {
            'timezone': 'America/New_York',
            'daily_cap_window': 'rolling'
        },
        'delivery': {
            'max_attempts': 2,
            'timeout_seconds': 5,
            'retry_delays_seconds': [0.5, 1],
            'channels': {
                'email': {
                    'enabled': True,
                    'from_address': 'Alerts <alerts@test.example>'
                },
                'push': {
                    'enabled': True,
                    'gateway_url': '${PUSH_GATEWAY_URL}'
                },
                'sms': {
                    'enabled': False
                }
            }
        },
        'database': {
            'cleanup': {
                'enabled': True,
                'retention_days': 30
            }
        },
        'healthcheck': {
            'port': 9090
        }
    }

    config_file = tmp_path / 'test_config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(config, f)

    return config_file


@pytest.fixture
def test_env_vars(monkeypatch, test_config_yaml: Path):
    """Point the config singleton at the test YAML."""
    from pricealerts import config

    monkeypatch.setenv('CONFIG_FILE', str(test_config_yaml))
    monkeypatch.setenv('PUSH_GATEWAY_URL', 'https://push.test.example/send')
    monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
    monkeypatch.setattr(config, '_config_instance', None)
    yield
    config._config_instance = None


@pytest.fixture
def session_factory(tmp_path: Path):
    """Fresh file-backed SQLite database with all tables."""
    from pricealerts.storage.db import init_db, make_engine, make_session_factory

    engine = make_engine(f"sqlite:///{tmp_path / 'alerts.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()
