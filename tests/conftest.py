"""Shared fixtures for civic_vault tests."""
import random
from datetime import datetime, timedelta, timezone

import pytest

from civic_vault.biometric import BiometricSessionManager
from civic_vault.identity import ActivityProfileStore, IdentityMinter
from civic_vault.reputation import SimulatedReputationAssembler
from civic_vault.refresh import RefreshProtocol
from civic_vault.telemetry import VaultTelemetry
from civic_vault.vault import VaultConfig, VaultStore

START = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _config(**overrides) -> VaultConfig:
    defaults = {
        "scrypt_n": 2 ** 4,  # cheap hashing for tests
        "scrypt_r": 1,
        "biometric_match_rate": 1.0,
    }
    defaults.update(overrides)
    return VaultConfig(**defaults)


@pytest.fixture
def make_config():
    """Factory for test configs with cheap hashing and a certain match."""
    return _config


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config(tmp_path):
    return _config(export_dir=str(tmp_path / "exports"))


@pytest.fixture
def telemetry(clock):
    return VaultTelemetry(clock=clock)


@pytest.fixture
def profiles(clock):
    return ActivityProfileStore.with_demo_profiles(rng=random.Random(7), clock=clock)


@pytest.fixture
def minter(config, profiles, telemetry, clock):
    return IdentityMinter(config=config, profiles=profiles, telemetry=telemetry, clock=clock)


@pytest.fixture
def store(config, telemetry, clock):
    return VaultStore(config=config, telemetry=telemetry, clock=clock)


@pytest.fixture
def sessions(config, telemetry, clock):
    return BiometricSessionManager(
        config=config, telemetry=telemetry, rng=random.Random(11), clock=clock,
    )


@pytest.fixture
def assembler(config, telemetry, clock):
    return SimulatedReputationAssembler(config=config, telemetry=telemetry, clock=clock)


@pytest.fixture
def protocol(store, minter, sessions, assembler, telemetry, clock):
    return RefreshProtocol(
        store, minter, sessions, assembler=assembler, telemetry=telemetry, clock=clock,
    )
