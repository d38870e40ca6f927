"""Splitting of a source byte stream into ordered, fixed-size chunks."""

import hashlib
import io
import math
import os
from typing import BinaryIO, List, Optional, Union

from common.constants import BLOCK_SIZE_LIMIT_BYTES
from common.logging_config import get_logger
from common.protocol import chunk_key
from common.types import Chunk
from uploader.exceptions import InvalidConfigurationError, SourceReadError

logger = get_logger(__name__)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read up to `size` bytes, looping over short reads until EOF."""
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def split(stream: BinaryIO, chunk_size_bytes: int, key_prefix: Optional[str] = None) -> List[Chunk]:
    """
    Split a byte stream into contiguous chunks of exactly `chunk_size_bytes`.

    The final chunk may be shorter. Concatenating the chunks in index order
    reproduces the stream exactly.

    Args:
        stream: Readable binary stream
        chunk_size_bytes: Chunk size in bytes
        key_prefix: Prefix of the chunk ledger keys (defaults to the
            lowercase SHA-256 of the whole stream)

    Returns:
        List of chunks with dense indices 0..n-1 (empty for an empty stream)

    Raises:
        InvalidConfigurationError: If chunk_size_bytes is not positive
        SourceReadError: If the stream cannot be read completely
    """
    if not isinstance(chunk_size_bytes, int) or chunk_size_bytes <= 0:
        raise InvalidConfigurationError(f"chunk_size_bytes must be a positive integer, got {chunk_size_bytes!r}")

    digest = hashlib.sha256()
    payloads = []

    try:
        while True:
            data = _read_exact(stream, chunk_size_bytes)
            if not data:
                break
            digest.update(data)
            payloads.append(data)
            if len(data) < chunk_size_bytes:
                break
    except (OSError, ValueError) as e:
        raise SourceReadError(f"Failed to read source after {len(payloads)} chunk(s): {e}") from e

    prefix = key_prefix or digest.hexdigest()
    chunks = [
        Chunk(index=index, data=data, key=chunk_key(prefix, index))
        for index, data in enumerate(payloads)
    ]

    total = sum(len(p) for p in payloads)
    logger.info(f"Split {total} bytes into {len(chunks)} chunk(s) of up to {chunk_size_bytes} bytes")
    return chunks


def split_file(path: str, chunk_size_bytes: int, key_prefix: Optional[str] = None) -> List[Chunk]:
    """
    Split a file on disk.

    Raises:
        SourceReadError: If the file cannot be opened or read
    """
    try:
        f = open(path, 'rb')
    except OSError as e:
        raise SourceReadError(f"Cannot open source file {path}: {e}") from e

    with f:
        return split(f, chunk_size_bytes, key_prefix)


def resolve_chunk_size(setting: Union[int, str], file_size: int, endpoint_count: int) -> int:
    """
    Resolve a configured chunk size to bytes.

    "auto" spreads the file over the data endpoints: ceil(file size /
    endpoint count), capped at the block size limit.

    Args:
        setting: Positive integer or "auto"
        file_size: Source size in bytes
        endpoint_count: Number of data endpoints in the pool

    Raises:
        InvalidConfigurationError: On a non-positive size or unknown setting
    """
    if setting == "auto":
        if endpoint_count <= 0:
            raise InvalidConfigurationError("'auto' chunk size needs at least one data endpoint")
        size = math.ceil(file_size / endpoint_count) if file_size > 0 else 1
        return max(1, min(size, BLOCK_SIZE_LIMIT_BYTES))

    if isinstance(setting, int) and not isinstance(setting, bool) and setting > 0:
        return setting

    raise InvalidConfigurationError(f"Invalid chunk size setting: {setting!r}")


def source_size(stream: BinaryIO) -> Optional[int]:
    """Remaining size of a seekable stream, or None if it cannot seek."""
    try:
        position = stream.tell()
        end = stream.seek(0, os.SEEK_END)
        stream.seek(position)
        return end - position
    except (OSError, AttributeError, ValueError):
        return None


def buffer_source(stream: BinaryIO) -> io.BytesIO:
    """
    Read an unseekable source into memory so its size is known.

    Raises:
        SourceReadError: If the source cannot be read
    """
    try:
        return io.BytesIO(stream.read())
    except (OSError, ValueError) as e:
        raise SourceReadError(f"Failed to buffer source: {e}") from e
