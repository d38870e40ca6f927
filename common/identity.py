"""Signing identity interfaces supplied by the surrounding deployment."""

from typing import Protocol, Union

from common.protocol import StoreChunkMessage, StoreManifestMessage

LedgerMessage = Union[StoreChunkMessage, StoreManifestMessage]


class SigningIdentity(Protocol):
    """
    Account able to produce signed writes for one endpoint.

    Implementations hold key material; nothing in this project persists it.
    """

    @property
    def address(self) -> str:
        ...

    def sign(self, message: LedgerMessage, cost: int) -> bytes:
        """Return the signed transaction bytes for `message` with gas limit `cost`."""
        ...


class SigningIdentityProvider(Protocol):

    def identity_for(self, endpoint_name: str) -> SigningIdentity:
        ...
