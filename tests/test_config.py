"""Tests for upload configuration and run config validation."""

import json

import pytest

from common.constants import DEFAULT_CHUNK_SIZE_BYTES, DEFAULT_GAS_MULTIPLIER
from uploader.config import Config, build_run_config
from uploader.exceptions import InvalidConfigurationError


def test_config_defaults_when_file_missing(tmp_path):
    """Test that a missing config file yields the defaults."""
    config = Config(tmp_path / '.raidchain' / 'config.json')

    assert config.data['chunk_size_bytes'] == DEFAULT_CHUNK_SIZE_BYTES
    assert config.data['allocator_kind'] == 'round-robin'
    assert config.data['confirmation_kind'] == 'polling'
    assert config.data['gas_multiplier'] == DEFAULT_GAS_MULTIPLIER


def test_config_loads_existing_file(tmp_path):
    """Test stored values override defaults."""
    config_path = tmp_path / 'config.json'
    with open(config_path, 'w') as f:
        json.dump({'allocator_kind': 'burst', 'chunk_size_bytes': 'auto'}, f)

    config = Config(config_path)

    assert config.data['allocator_kind'] == 'burst'
    assert config.data['chunk_size_bytes'] == 'auto'
    assert config.data['confirmation_kind'] == 'polling'


def test_config_save_round_trip(tmp_path):
    """Test saving and reloading configuration."""
    config_path = tmp_path / 'nested' / 'config.json'
    config = Config(config_path)
    config.set('confirmation_kind', 'tx-event')
    config.save()

    assert Config(config_path).data['confirmation_kind'] == 'tx-event'


def test_config_rejects_unknown_key(tmp_path):
    """Test setting a key that does not exist."""
    config = Config(tmp_path / 'config.json')

    with pytest.raises(InvalidConfigurationError):
        config.set('colour', 'blue')


def test_config_corrupt_file(tmp_path):
    """Test that an unreadable config file is reported."""
    config_path = tmp_path / 'config.json'
    config_path.write_text('{not json')

    with pytest.raises(InvalidConfigurationError):
        Config(config_path)


def test_to_run_config_with_overrides(tmp_path):
    """Test building a validated run configuration."""
    config = Config(tmp_path / 'config.json')

    run_config = config.to_run_config(allocator_kind='sequential', target_endpoint='data-0')

    assert run_config.allocator_kind == 'sequential'
    assert run_config.target_endpoint == 'data-0'
    assert run_config.confirmation_timeout == 60.0


class TestRunConfigValidation:
    """Test RunConfig validation errors."""

    @pytest.mark.parametrize('values', [
        {'chunk_size_bytes': 0},
        {'chunk_size_bytes': 'big'},
        {'allocator_kind': 'random'},
        {'confirmation_kind': 'carrier-pigeon'},
        {'confirmation_timeout_ms': 0},
        {'poll_interval_ms': -1},
        {'max_retries_per_chunk': -1},
        {'gas_multiplier': 0.5},
        {'allocator_kind': 'sequential'},
    ])
    def test_invalid_values(self, values):
        with pytest.raises(InvalidConfigurationError):
            build_run_config(**values)

    def test_durations_in_seconds(self):
        run_config = build_run_config(confirmation_timeout_ms=1500, poll_interval_ms=250, run_timeout_ms=60000)

        assert run_config.confirmation_timeout == 1.5
        assert run_config.poll_interval == 0.25
        assert run_config.run_timeout == 60.0
