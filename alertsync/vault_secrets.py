#!/usr/bin/env python3
"""
Secret loading for alertsync services.

With VAULT_ADDR and VAULT_ROLE_ID set, secrets are read from Vault KV v2
via AppRole and the token is renewed in the background. Without Vault the
same keys are read from the environment (local development, CI).
"""

import os
import logging
import threading
from typing import Any, Dict, Optional, Tuple

import hvac

logger = logging.getLogger(__name__)

def _secrets_from_mapping(data: Dict[str, Any], default_db_user: str) -> Dict[str, Optional[str]]:
    return {
        'DB_USER': data.get('DB_USER') or default_db_user,
        'DB_PASS_CURRENT': data.get('DB_PASS_CURRENT') or data.get('DB_PASS'),
        'DB_PASS_NEXT': data.get('DB_PASS_NEXT'),
        'GRAFANA_API_KEY': data.get('GRAFANA_API_KEY'),
        'REDIS_PASS': data.get('REDIS_PASS'),
        'API_KEY': data.get('API_KEY'),
    }


def vault_enabled(config) -> bool:
    return bool(getattr(config, 'VAULT_ADDR', None) and getattr(config, 'VAULT_ROLE_ID', None))


def fetch_secrets(config) -> Tuple[Optional[hvac.Client], Dict[str, Optional[str]]]:
    """
    Load service secrets.

    Returns:
        (vault_client, secrets). vault_client is None when Vault is not configured.

    Raises:
        Exception: Any Vault or file error; callers treat it as fatal.
    """
    if not vault_enabled(config):
        logger.info("Vault not configured; reading secrets from environment")
        return None, _secrets_from_mapping(dict(os.environ), config.DB_USER)

    logger.info(f"Connecting to Vault at {config.VAULT_ADDR}...")
    vault_client = hvac.Client(url=config.VAULT_ADDR)

    if not os.path.exists(config.VAULT_SECRET_ID_FILE):
        raise FileNotFoundError(f"Vault secret ID file not found: {config.VAULT_SECRET_ID_FILE}")

    with open(config.VAULT_SECRET_ID_FILE, 'r') as f:
        secret_id = f.read().strip()

    if not secret_id:
        raise ValueError("Vault secret ID file is empty")

    auth_response = vault_client.auth.approle.login(
        role_id=config.VAULT_ROLE_ID,
        secret_id=secret_id
    )

    if not vault_client.is_authenticated():
        raise PermissionError("Vault authentication failed.")

    logger.info("Successfully authenticated to Vault")
    logger.info(f"Token TTL: {auth_response['auth']['lease_duration']}s")

    response = vault_client.secrets.kv.v2.read_secret_version(path=config.VAULT_SECRETS_PATH)
    secrets = _secrets_from_mapping(response['data']['data'], config.DB_USER)

    logger.info("Successfully loaded secrets from Vault")
    return vault_client, secrets


def start_vault_token_renewal(config, vault_client: hvac.Client, stop_event: threading.Event) -> threading.Thread:
    """Starts a background daemon thread for Vault token renewal."""

    def renewal_loop():
        logger.info("Vault token renewal thread started")
        while not stop_event.wait(config.VAULT_RENEW_CHECK_INTERVAL):
            try:
                token_info = vault_client.auth.token.lookup_self()['data']
                ttl = token_info['ttl']
                renewable = token_info.get('renewable', False)

                logger.debug(f"Vault token TTL: {ttl}s, Renewable: {renewable}")

                if renewable and ttl < config.VAULT_TOKEN_RENEW_THRESHOLD:
                    logger.info(f"Renewing Vault token (TTL: {ttl}s)...")
                    renew_response = vault_client.auth.token.renew_self()
                    logger.info(f"Vault token renewed. New TTL: {renew_response['auth']['lease_duration']}s")
                elif not renewable and ttl < config.VAULT_TOKEN_RENEW_THRESHOLD:
                    logger.warning(
                        f"Vault token is not renewable and has {ttl}s remaining! "
                        "Service restart will be needed before expiry."
                    )

            except Exception as e:
                logger.error(f"Error in Vault token renewal: {e}")

        logger.info("Vault token renewal thread stopped")

    thread = threading.Thread(target=renewal_loop, daemon=True, name="VaultTokenRenewal")
    thread.start()
    return thread
