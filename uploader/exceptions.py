"""Custom exception classes for the upload engine."""

from typing import List, Optional, Sequence


class UploadException(Exception):
    """
    Base exception class for all upload-engine errors.
    """
    pass


class SourceReadError(UploadException, IOError):
    """
    Raised when the source stream cannot be fully read.
    """
    pass


class InvalidConfigurationError(UploadException):
    """
    Raised when the run configuration is malformed.
    """
    pass


class EmptyEndpointPoolError(UploadException):
    """
    Raised when an allocation is requested against an empty endpoint pool.
    """
    pass


class EndpointNotFoundError(UploadException):
    """
    Raised when a named endpoint is not part of the current snapshot.
    """
    pass


class NoEndpointAvailable(UploadException):
    """
    Raised when every endpoint failed its load query.
    """
    pass


class EndpointUnavailableError(UploadException):
    """
    Raised when an endpoint cannot be reached for a read.
    """
    pass


class SubmissionError(UploadException):
    """
    Raised when a write could not be submitted (transport error or rejection).
    """

    def __init__(self, reason: str, endpoint_name: Optional[str] = None):
        self.reason = reason
        self.endpoint_name = endpoint_name
        prefix = f"[{endpoint_name}] " if endpoint_name else ""
        super().__init__(f"{prefix}{reason}")


class SubscriptionLost(UploadException):
    """
    Raised when the inclusion event channel of an endpoint disconnects.
    """
    pass


class ConfirmationTimeout(UploadException):
    """
    Raised when a confirmation deadline passes.

    The write may still be included later; callers must not assume it was lost.
    """

    def __init__(self, transaction_ref: str, timeout: float):
        self.transaction_ref = transaction_ref
        self.timeout = timeout
        super().__init__(f"Transaction {transaction_ref} not confirmed within {timeout:.1f}s")


class IncompleteUploadError(UploadException):
    """
    Raised when the manifest is built before every chunk is confirmed.
    """

    def __init__(self, missing_indices: Sequence[int]):
        self.missing_indices = list(missing_indices)
        preview = self.missing_indices[:10]
        more = "..." if len(self.missing_indices) > 10 else ""
        super().__init__(f"{len(self.missing_indices)} chunk(s) unconfirmed: {preview}{more}")


class ManifestAlreadyCommittedError(UploadException):
    """
    Raised when a manifest is committed a second time.
    """
    pass


class ManifestNotFoundError(UploadException):
    """
    Raised when the index endpoint has no manifest under the requested key.
    """
    pass


class ChunkNotFoundError(UploadException):
    """
    Raised when a data endpoint has no chunk under the requested key.
    """
    pass


class VerificationMismatch(UploadException):
    """
    Raised when reconstructed bytes differ from the source.
    """

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        super().__init__(message)


class UploadFailedError(UploadException):
    """
    Raised when an upload run ends with unconfirmed chunks or an unconfirmed manifest.

    Attributes:
        failed_indices: Chunk indices that never confirmed
        ambiguous_writes: Timed-out writes that may still land on the ledger
        results: Chunk writes that were confirmed before the run failed
    """

    def __init__(
        self,
        message: str,
        failed_indices: Sequence[int],
        ambiguous_writes: Optional[List] = None,
        results: Optional[List] = None
    ):
        self.failed_indices = sorted(failed_indices)
        self.ambiguous_writes = list(ambiguous_writes or [])
        self.results = list(results or [])
        super().__init__(message)
