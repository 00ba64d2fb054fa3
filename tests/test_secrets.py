"""
Unit tests for shared.secrets keychain lookup with env fallback.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from shared.secrets import get_optional_secret, get_secret


def _completed(stdout):
    result = MagicMock()
    result.stdout = stdout
    return result


class TestGetSecret:
    def test_keychain_value(self):
        with patch("shared.secrets.subprocess.run", return_value=_completed("s3cret\n")) as run:
            assert get_secret("chat_db_password") == "s3cret"
        args = run.call_args.args[0]
        assert args == ["secret-tool", "lookup", "service", "user-sync", "key", "chat_db_password"]

    def test_env_fallback_when_secret_tool_missing(self, monkeypatch):
        monkeypatch.setenv("USER_SYNC_SOURCE_DB_PASSWORD", "from-env")
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            assert get_secret("source_db_password") == "from-env"

    def test_env_fallback_when_keychain_empty(self, monkeypatch):
        monkeypatch.setenv("USER_SYNC_CHAT_DB_PASSWORD", "from-env")
        with patch("shared.secrets.subprocess.run", return_value=_completed("")):
            assert get_secret("chat_db_password") == "from-env"

    def test_timeout_falls_back(self, monkeypatch):
        monkeypatch.setenv("USER_SYNC_CHAT_DB_PASSWORD", "from-env")
        timeout = subprocess.TimeoutExpired(cmd="secret-tool", timeout=10)
        with patch("shared.secrets.subprocess.run", side_effect=timeout):
            assert get_secret("chat_db_password") == "from-env"

    def test_missing_everywhere_raises(self, monkeypatch):
        monkeypatch.delenv("USER_SYNC_CHAT_DB_PASSWORD", raising=False)
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(RuntimeError, match="USER_SYNC_CHAT_DB_PASSWORD"):
                get_secret("chat_db_password")


class TestGetOptionalSecret:
    def test_none_when_unconfigured(self, monkeypatch):
        monkeypatch.delenv("USER_SYNC_SOURCE_DB_PASSWORD", raising=False)
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            assert get_optional_secret("source_db_password") is None

    def test_value_when_configured(self):
        with patch("shared.secrets.subprocess.run", return_value=_completed("pw")):
            assert get_optional_secret("source_db_password") == "pw"
