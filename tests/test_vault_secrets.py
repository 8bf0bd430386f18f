import threading

import pytest
from unittest.mock import patch

from alertsync.vault_secrets import fetch_secrets, start_vault_token_renewal, vault_enabled


pytestmark = pytest.mark.unit


class TestFetchSecrets:

    @patch.dict('os.environ', {
        'DB_PASS': 'env_db_pass',
        'GRAFANA_API_KEY': 'env_grafana',
        'API_KEY': 'env_api_key',
    }, clear=True)
    def test_environment_fallback_without_vault(self, mock_config):
        mock_config.VAULT_ADDR = None
        mock_config.VAULT_ROLE_ID = None

        client, secrets = fetch_secrets(mock_config)

        assert client is None
        assert secrets['DB_USER'] == 'alertsync'
        assert secrets['DB_PASS_CURRENT'] == 'env_db_pass'
        assert secrets['DB_PASS_NEXT'] is None
        assert secrets['GRAFANA_API_KEY'] == 'env_grafana'
        assert secrets['API_KEY'] == 'env_api_key'

    @patch('alertsync.vault_secrets.hvac.Client')
    def test_approle_login_and_kv_read(self, mock_client_cls, mock_config, mock_vault_client, tmp_path):
        secret_file = tmp_path / "secret_id"
        secret_file.write_text("s.secret-id\n")
        mock_config.VAULT_SECRET_ID_FILE = str(secret_file)
        mock_client_cls.return_value = mock_vault_client

        client, secrets = fetch_secrets(mock_config)

        assert client is mock_vault_client
        mock_vault_client.auth.approle.login.assert_called_once_with(role_id='test-role', secret_id='s.secret-id')
        mock_vault_client.secrets.kv.v2.read_secret_version.assert_called_once_with(path='secret/alertsync')
        assert secrets['DB_PASS_CURRENT'] == 'db_password'
        assert secrets['DB_PASS_NEXT'] == 'db_password_next'
        assert secrets['GRAFANA_API_KEY'] == 'glsa_vault_token'

    @patch('alertsync.vault_secrets.hvac.Client')
    def test_missing_secret_id_file_raises(self, mock_client_cls, mock_config, tmp_path):
        mock_config.VAULT_SECRET_ID_FILE = str(tmp_path / "missing")

        with pytest.raises(FileNotFoundError):
            fetch_secrets(mock_config)

    @patch('alertsync.vault_secrets.hvac.Client')
    def test_failed_authentication_raises(self, mock_client_cls, mock_config, mock_vault_client, tmp_path):
        secret_file = tmp_path / "secret_id"
        secret_file.write_text("s.secret-id")
        mock_config.VAULT_SECRET_ID_FILE = str(secret_file)
        mock_vault_client.is_authenticated.return_value = False
        mock_client_cls.return_value = mock_vault_client

        with pytest.raises(PermissionError):
            fetch_secrets(mock_config)


def test_vault_enabled_requires_addr_and_role(mock_config):
    assert vault_enabled(mock_config) is True
    mock_config.VAULT_ROLE_ID = None
    assert vault_enabled(mock_config) is False


def test_token_renewal_renews_when_below_threshold(mock_config, mock_vault_client):
    mock_config.VAULT_RENEW_CHECK_INTERVAL = 0.01
    mock_vault_client.auth.token.lookup_self.return_value = {"data": {"ttl": 60, "renewable": True}}
    stop_event = threading.Event()

    def renew_and_stop():
        stop_event.set()
        return {"auth": {"lease_duration": 7200}}

    mock_vault_client.auth.token.renew_self.side_effect = renew_and_stop

    thread = start_vault_token_renewal(mock_config, mock_vault_client, stop_event)
    thread.join(timeout=2)

    assert not thread.is_alive()
    mock_vault_client.auth.token.renew_self.assert_called()
