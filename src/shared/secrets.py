"""
Secrets and keychain integration — retrieves database credentials from
the system keychain.

Credentials are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) and are
retrieved at runtime.  Development machines without a keychain may use
``USER_SYNC_<KEY_NAME>`` environment variables instead.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

logger = logging.getLogger("shared.secrets")

_SERVICE = "user-sync"


def _env_key(key_name: str) -> str:
    return f"USER_SYNC_{key_name.upper().replace('-', '_')}"


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service user-sync key <key_name>

    Falls back to environment variables (``USER_SYNC_<KEY_NAME>``) if
    ``secret-tool`` is not available (e.g. in development environments).

    Args:
        key_name: The key identifier (e.g. ``"source_db_password"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except Exception:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.info("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = _SERVICE) -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when nothing is configured.

    Used for database passwords: a store reached over a Unix socket with
    peer authentication needs no password at all.
    """
    try:
        return get_secret(key_name, service=service)
    except RuntimeError:
        logger.info("No secret configured for '%s'; connecting without one", key_name)
        return None
