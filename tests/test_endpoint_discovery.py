"""Tests for endpoint discovery snapshots."""

import json

import pytest

from common.endpoint_discovery import (
    DiscoveryError,
    MissingIndexEndpointError,
    NoDataEndpointsError,
    load_endpoints_file,
    snapshot_from_records,
)
from common.types import EndpointRole


def record(name, role='data'):
    return {
        'name': name,
        'role': role,
        'rpc_address': f'http://{name}:26657/',
        'rest_address': f'http://{name}:1317',
    }


RECORDS = [record('data-0'), record('data-1'), record('meta-0', 'index'), record('data-2')]


class TestSnapshotFromRecords:
    """Test snapshot validation."""

    def test_valid_records(self):
        snapshot = snapshot_from_records(RECORDS)

        assert [e.name for e in snapshot.data_endpoints] == ['data-0', 'data-1', 'data-2']
        assert snapshot.index_endpoint.role == EndpointRole.INDEX
        assert snapshot.data_endpoints[0].rpc_address == 'http://data-0:26657'
        assert snapshot.get('meta-0') is snapshot.index_endpoint
        assert snapshot.get('nope') is None

    def test_websocket_url(self):
        snapshot = snapshot_from_records(RECORDS)

        assert snapshot.data_endpoints[1].websocket_url == 'ws://data-1:26657/websocket'

    def test_missing_index_endpoint(self):
        with pytest.raises(MissingIndexEndpointError):
            snapshot_from_records([record('data-0')])

    def test_two_index_endpoints(self):
        with pytest.raises(MissingIndexEndpointError):
            snapshot_from_records([record('data-0'), record('meta-0', 'index'), record('meta-1', 'index')])

    def test_no_data_endpoints(self):
        with pytest.raises(NoDataEndpointsError):
            snapshot_from_records([record('meta-0', 'index')])

    def test_duplicate_names(self):
        with pytest.raises(DiscoveryError):
            snapshot_from_records([record('data-0'), record('data-0'), record('meta-0', 'index')])

    def test_invalid_role(self):
        with pytest.raises(DiscoveryError):
            snapshot_from_records([record('data-0', 'storage'), record('meta-0', 'index')])

    def test_select_first_n(self):
        snapshot = snapshot_from_records(RECORDS).select(2)

        assert [e.name for e in snapshot.data_endpoints] == ['data-0', 'data-1']
        assert len(snapshot.all_endpoints()) == 3

    def test_select_too_many(self):
        with pytest.raises(DiscoveryError):
            snapshot_from_records(RECORDS).select(4)


class TestLoadEndpointsFile:
    """Test loading discovery records from disk."""

    def test_load_from_path(self, tmp_path):
        path = tmp_path / 'endpoints.json'
        path.write_text(json.dumps({'endpoints': RECORDS}))

        snapshot = load_endpoints_file(str(path))

        assert len(snapshot.data_endpoints) == 3

    def test_load_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / 'endpoints.json'
        path.write_text(json.dumps({'endpoints': RECORDS}))
        monkeypatch.setenv('RAIDCHAIN_ENDPOINTS_FILE', str(path))

        assert load_endpoints_file().index_endpoint.name == 'meta-0'

    def test_no_path(self, monkeypatch):
        monkeypatch.delenv('RAIDCHAIN_ENDPOINTS_FILE', raising=False)

        with pytest.raises(DiscoveryError):
            load_endpoints_file()

    def test_malformed_file(self, tmp_path):
        path = tmp_path / 'endpoints.json'
        path.write_text(json.dumps(['not', 'a', 'dict']))

        with pytest.raises(DiscoveryError):
            load_endpoints_file(str(path))


def test_discovery_errors_share_root():
    """Test that structural discovery errors can be caught as DiscoveryError."""
    for error in (MissingIndexEndpointError, NoDataEndpointsError):
        assert issubclass(error, DiscoveryError)

    with pytest.raises(DiscoveryError):
        snapshot_from_records([])
