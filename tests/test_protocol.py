"""Tests for ledger write messages, chunk keys and run statistics."""

import json

import pytest

from common.constants import CHUNK_MESSAGE_TYPE_URL, MANIFEST_MESSAGE_TYPE_URL
from common.protocol import StoreChunkMessage, StoreManifestMessage, chunk_index_from_key, chunk_key
from uploader.performance_tracker import PerformanceTracker


class TestChunkKeys:

    def test_key_format(self):
        assert chunk_key("9f86d081", 12) == "9f86d081-12"

    @pytest.mark.parametrize("key, index", [("abc-0", 0), ("a-b-c-17", 17), ("x-0042", 42)])
    def test_index_from_key(self, key, index):
        assert chunk_index_from_key(key) == index

    @pytest.mark.parametrize("key", ["abc", "abc-", "abc-1x"])
    def test_key_without_index(self, key):
        with pytest.raises(ValueError):
            chunk_index_from_key(key)


class TestMessages:
    """Test JSON encoding of ledger write messages."""

    def test_chunk_message_encodes_data_as_base64(self):
        message = StoreChunkMessage(creator="cosmos1abc", index="h-0", data=b"\x00\xffdata")

        encoded = json.loads(message.to_json())

        assert encoded["typeUrl"] == CHUNK_MESSAGE_TYPE_URL
        assert encoded["value"]["data"] == "AP9kYXRh"
        assert StoreChunkMessage.from_json(message.to_json()) == message

    def test_manifest_message(self):
        message = StoreManifestMessage(creator="cosmos1abc", url="uploads/a.bin", manifest='{"chunks":[]}')

        encoded = json.loads(message.to_json())

        assert encoded["typeUrl"] == MANIFEST_MESSAGE_TYPE_URL
        assert encoded["value"]["url"] == "uploads/a.bin"
        assert StoreManifestMessage.from_json(message.to_json()) == message


class TestPerformanceTracker:
    """Test run statistics."""

    def test_report_aggregates_counts(self):
        tracker = PerformanceTracker()
        tracker.start()
        for name in ["data-0", "data-1", "data-0"]:
            tracker.record_submission()
            tracker.record_confirmation(name, 100, 1024)
        tracker.record_submission()
        tracker.record_failure()
        tracker.record_retry()
        tracker.stop()

        stats = tracker.report()

        assert stats.total_tx == 4
        assert stats.success_tx == 3
        assert stats.failed_tx == 1
        assert stats.total_gas_used == 300
        assert stats.avg_gas_per_tx == 100
        assert stats.used_endpoints == ["data-0", "data-1"]
        assert stats.chunks_per_endpoint == {"data-0": 2, "data-1": 1}
        assert stats.retries == 1
        assert stats.bytes_uploaded == 3072

    def test_report_before_start(self):
        stats = PerformanceTracker().report()

        assert stats.duration_ms == 0
        assert stats.avg_gas_per_tx == 0
        assert stats.throughput_kbps == 0.0
