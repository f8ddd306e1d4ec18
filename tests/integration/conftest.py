"""
Pytest configuration and fixtures for integration tests.
"""

import logging
from pathlib import Path

import pytest
import yaml


ROOT = Path(__file__).resolve().parents[2]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: End-to-end tests wiring feed, gap detector, log and aggregator"
    )


@pytest.fixture(autouse=True)
def setup_logging(caplog):
    """
    Setup logging for all tests.

    This fixture runs automatically for all tests and ensures
    log output is captured and displayed.
    """
    caplog.set_level(logging.INFO)

    # Set specific loggers to appropriate levels
    logging.getLogger('tape_vwap.gap').setLevel(logging.INFO)
    logging.getLogger('tape_vwap.aggregation').setLevel(logging.INFO)
    logging.getLogger('tape_vwap.connectors.message_validator').setLevel(logging.WARNING)


@pytest.fixture
def sample_ticks():
    return ROOT / "data" / "sample_ticks.csv"


@pytest.fixture
def policy_dir():
    return ROOT / "config" / "policies"


@pytest.fixture
def config_file(tmp_path, policy_dir):
    """Shipped config with every output redirected under tmp_path."""
    with open(ROOT / "config" / "config.yaml") as f:
        config = yaml.safe_load(f)

    config['policy'] = str(policy_dir / "all_venues.yaml")
    config['backfill'].update({'timeout_seconds': 2, 'backoff_base_seconds': 0.01, 'backoff_max_seconds': 0.05})
    config['snapshots']['dir'] = str(tmp_path / "state")
    config['monitoring'].update({
        'log_file': str(tmp_path / "logs" / "vwap.log"),
        'metrics_dir': str(tmp_path / "metrics"),
    })

    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration test markers.

    This automatically marks all tests in the integration directory
    as 'integration' tests.
    """
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
