"""Seeding of the reconciler's runtime configuration keys."""

import pytest
from unittest.mock import call, patch

from scripts import init_default_configs
from scripts.init_default_configs import initialize_configs


pytestmark = pytest.mark.unit


def test_sets_missing_keys(mock_redis_client):
    stats = initialize_configs(mock_redis_client)

    assert stats == {"set": 2, "skipped": 0, "total": 2}
    mock_redis_client.set.assert_has_calls([
        call("alertsync:config:reconcile_interval", "600"),
        call("alertsync:config:alert_fetch_timeout", "30"),
    ], any_order=True)


def test_existing_values_kept_without_force(mock_redis_client):
    mock_redis_client.get.return_value = "120"

    stats = initialize_configs(mock_redis_client)

    assert stats["skipped"] == 2
    mock_redis_client.set.assert_not_called()


def test_force_overwrites(mock_redis_client):
    mock_redis_client.get.return_value = "120"

    stats = initialize_configs(mock_redis_client, force=True, prefix="custom")

    assert stats["set"] == 2
    mock_redis_client.set.assert_any_call("custom:reconcile_interval", "600")


@patch('scripts.init_default_configs.get_redis_connection')
def test_dry_run_touches_nothing(mock_connect):
    with patch('sys.argv', ['init_default_configs.py', '--dry-run']):
        assert init_default_configs.main() == 0
    mock_connect.assert_not_called()


@patch('scripts.init_default_configs.get_redis_connection', side_effect=ConnectionError("refused"))
def test_redis_failure_returns_nonzero(mock_connect):
    with patch('sys.argv', ['init_default_configs.py']):
        assert init_default_configs.main() == 1
