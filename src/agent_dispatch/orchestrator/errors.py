"""Job store error hierarchy."""

from __future__ import annotations


class JobStoreError(RuntimeError):
    """Base error raised by the job store."""

    transient = False


class JobNotFoundError(JobStoreError):
    """Job does not exist or is not in the state the operation requires."""


class JobStateError(JobStoreError):
    """Requested manual transition is not allowed from the current status."""


class JobStoreUnavailableError(JobStoreError):
    """Store connectivity failure; the caller should retry with backoff."""

    transient = True
