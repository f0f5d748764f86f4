"""Tests for VaultConfig."""
import pytest
from pydantic import ValidationError

from civic_vault.vault import VaultConfig, parse_subject_list


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        config = VaultConfig()
        assert config.max_unlock_attempts == 3
        assert config.entry_lifetime_days == 365
        assert config.refresh_window_days == 30
        assert config.session_ttl == 300
        assert config.biometric_match_rate == 0.85
        assert config.bootstrap_subjects == []
        assert config.store_path is None


class TestValidation:
    """Tests for field and model validators."""

    @pytest.mark.parametrize("n", [3, 1000, 2 ** 14 + 1])
    def test_scrypt_cost_power_of_two(self, n):
        with pytest.raises(ValidationError):
            VaultConfig(scrypt_n=n)

    def test_bootstrap_subjects_validated(self):
        with pytest.raises(ValidationError):
            VaultConfig(bootstrap_subjects=["did:civic:ok", "not-a-did"])

    def test_refresh_window_shorter_than_lifetime(self):
        with pytest.raises(ValidationError):
            VaultConfig(entry_lifetime_days=30, refresh_window_days=30)

    def test_match_rate_bounds(self):
        with pytest.raises(ValidationError):
            VaultConfig(biometric_match_rate=1.5)


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CIVIC_VAULT_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("CIVIC_VAULT_MATCH_RATE", "0.5")
        monkeypatch.setenv("CIVIC_VAULT_BOOTSTRAP_SUBJECTS", " did:civic:a , ,did:civic:b ")
        monkeypatch.setenv("CIVIC_VAULT_STORE_PATH", "/tmp/vault.json")
        config = VaultConfig.from_env()
        assert config.max_unlock_attempts == 5
        assert config.biometric_match_rate == 0.5
        assert config.bootstrap_subjects == ["did:civic:a", "did:civic:b"]
        assert config.store_path == "/tmp/vault.json"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("CIVIC_VAULT_MAX_ATTEMPTS", "5")
        assert VaultConfig.from_env(max_unlock_attempts=7).max_unlock_attempts == 7

    def test_blank_values_ignored(self, monkeypatch):
        monkeypatch.setenv("CIVIC_VAULT_SESSION_TTL", "   ")
        assert VaultConfig.from_env().session_ttl == 300

    def test_invalid_environment(self, monkeypatch):
        monkeypatch.setenv("CIVIC_VAULT_MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            VaultConfig.from_env()


@pytest.mark.parametrize("raw, expected", [
    (None, []),
    ("", []),
    ("  ", []),
    ("did:civic:a", ["did:civic:a"]),
    ("did:civic:a,,did:civic:b,", ["did:civic:a", "did:civic:b"]),
])
def test_parse_subject_list(raw, expected):
    assert parse_subject_list(raw) == expected
