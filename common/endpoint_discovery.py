"""Endpoint discovery snapshot for one upload run."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from common.logging_config import get_logger
from common.types import Endpoint, EndpointRole

logger = get_logger(__name__)

ENDPOINTS_FILE_ENV = "RAIDCHAIN_ENDPOINTS_FILE"


class DiscoveryError(Exception):
    """Raised when the discovered endpoint set is structurally invalid."""
    pass


class MissingIndexEndpointError(DiscoveryError):
    """Raised when discovery does not yield exactly one index endpoint."""
    pass


class NoDataEndpointsError(DiscoveryError):
    """Raised when discovery yields no data endpoints."""
    pass


@dataclass(frozen=True)
class EndpointSnapshot:
    """
    Read-only view of the endpoints resolved at run start.

    Attributes:
        data_endpoints: Endpoints accepting chunk writes, in discovery order
        index_endpoint: Endpoint holding manifests
    """
    data_endpoints: List[Endpoint]
    index_endpoint: Endpoint

    def get(self, name: str) -> Optional[Endpoint]:
        if self.index_endpoint.name == name:
            return self.index_endpoint
        for endpoint in self.data_endpoints:
            if endpoint.name == name:
                return endpoint
        return None

    def select(self, count: Optional[int]) -> 'EndpointSnapshot':
        """
        Narrow the snapshot to the first `count` data endpoints.

        Args:
            count: Number of data endpoints to keep (None or 0 keeps all)

        Raises:
            DiscoveryError: If more endpoints are requested than were discovered
        """
        if not count:
            return self
        if count > len(self.data_endpoints):
            raise DiscoveryError(
                f"Requested {count} data endpoints but only {len(self.data_endpoints)} are available"
            )
        return EndpointSnapshot(
            data_endpoints=self.data_endpoints[:count],
            index_endpoint=self.index_endpoint
        )

    def all_endpoints(self) -> List[Endpoint]:
        return [*self.data_endpoints, self.index_endpoint]


def _endpoint_from_record(record: Dict[str, Any]) -> Endpoint:
    try:
        return Endpoint(
            name=record['name'],
            role=EndpointRole(record['role']),
            rpc_address=record['rpc_address'].rstrip('/'),
            rest_address=record['rest_address'].rstrip('/'),
        )
    except (KeyError, ValueError) as e:
        raise DiscoveryError(f"Invalid endpoint record {record!r}: {e}") from e


def snapshot_from_records(records: Iterable[Dict[str, Any]]) -> EndpointSnapshot:
    """
    Build and validate a snapshot from discovery records.

    Args:
        records: Dicts with name, role ('data' | 'index'), rpc_address, rest_address

    Returns:
        EndpointSnapshot

    Raises:
        DiscoveryError: On duplicate names, zero data endpoints or not exactly
            one index endpoint
    """
    endpoints = [_endpoint_from_record(r) for r in records]

    names = [e.name for e in endpoints]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise DiscoveryError(f"Duplicate endpoint names: {duplicates}")

    index_endpoints = [e for e in endpoints if e.role == EndpointRole.INDEX]
    data_endpoints = [e for e in endpoints if e.role == EndpointRole.DATA]

    if len(index_endpoints) != 1:
        raise MissingIndexEndpointError(
            f"Expected exactly one index endpoint, found {len(index_endpoints)}"
        )
    if not data_endpoints:
        raise NoDataEndpointsError("No data endpoints discovered")

    logger.info(
        f"Endpoint discovery: {len(data_endpoints)} data endpoint(s) "
        f"{[e.name for e in data_endpoints]}, index endpoint '{index_endpoints[0].name}'"
    )

    return EndpointSnapshot(data_endpoints=data_endpoints, index_endpoint=index_endpoints[0])


def load_endpoints_file(path: Optional[str] = None) -> EndpointSnapshot:
    """
    Load a snapshot from a JSON file of the form {"endpoints": [...]}.

    Args:
        path: File path (defaults to $RAIDCHAIN_ENDPOINTS_FILE)

    Raises:
        DiscoveryError: If no path is configured or the file is malformed
    """
    path = path or os.environ.get(ENDPOINTS_FILE_ENV)
    if not path:
        raise DiscoveryError(f"No endpoints file given and {ENDPOINTS_FILE_ENV} is not set")

    try:
        with open(Path(path), 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise DiscoveryError(f"Cannot read endpoints file {path}: {e}") from e

    records = data.get('endpoints') if isinstance(data, dict) else None
    if not isinstance(records, list):
        raise DiscoveryError(f"Endpoints file {path} has no 'endpoints' list")

    return snapshot_from_records(records)
