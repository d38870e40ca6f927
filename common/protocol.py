"""Ledger write messages and chunk key helpers (serialization formats)."""

from dataclasses import dataclass
import base64
import json

from common.constants import CHUNK_MESSAGE_TYPE_URL, MANIFEST_MESSAGE_TYPE_URL


def chunk_key(prefix: str, index: int) -> str:
    """Build the ledger index key for a chunk: '<prefix>-<index>'."""
    return f"{prefix}-{index}"


def chunk_index_from_key(key: str) -> int:
    """
    Extract the numeric position suffix from a chunk key.

    Raises:
        ValueError: If the key has no numeric suffix
    """
    suffix = key.rsplit("-", 1)[-1]
    if not suffix.isdigit():
        raise ValueError(f"Chunk key '{key}' has no numeric index suffix")
    return int(suffix)


@dataclass
class StoreChunkMessage:
    """Write of one chunk payload to a data endpoint."""
    creator: str
    index: str
    data: bytes

    type_url = CHUNK_MESSAGE_TYPE_URL

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'typeUrl': self.type_url,
            'value': {
                'creator': self.creator,
                'index': self.index,
                'data': base64.b64encode(self.data).decode('ascii'),
            }
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'StoreChunkMessage':
        """Deserialize from JSON bytes."""
        value = json.loads(data)['value']
        return cls(
            creator=value['creator'],
            index=value['index'],
            data=base64.b64decode(value['data'])
        )


@dataclass
class StoreManifestMessage:
    """Write of a serialized manifest to the index endpoint."""
    creator: str
    url: str
    manifest: str

    type_url = MANIFEST_MESSAGE_TYPE_URL

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'typeUrl': self.type_url,
            'value': {
                'creator': self.creator,
                'url': self.url,
                'manifest': self.manifest,
            }
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'StoreManifestMessage':
        """Deserialize from JSON bytes."""
        value = json.loads(data)['value']
        return cls(creator=value['creator'], url=value['url'], manifest=value['manifest'])
