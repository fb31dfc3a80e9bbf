"""
Exception hierarchy shared by the clients and the orchestrators.

The remote platform is inconsistent about how it reports problems, so the
classification helpers on ``RemoteAPIError`` look at both the status code
and the message text.
"""

import re
from typing import Any, Optional

_RATE_LIMIT_RE = re.compile(r"rate.?limit|too many requests|too_many_requests", re.I)
_ALREADY_ATTACHED_RE = re.compile(r"already (attached|exists|associated)|already been attached", re.I)
_DUPLICATE_JOB_RE = re.compile(r"already (running|in progress|exists|has)|active indexing job|duplicate", re.I)


class AgentKBError(Exception):
    """Base class for all service errors."""


class RemoteAPIError(AgentKBError):
    """Non-2xx response (or transport failure) from the remote AI platform."""

    def __init__(self, status_code: Optional[int], message: str, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.body = body

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.status_code}: {self.message}"
        return self.message

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or bool(_RATE_LIMIT_RE.search(self.message or ""))

    @property
    def is_already_attached(self) -> bool:
        return bool(_ALREADY_ATTACHED_RE.search(self.message or ""))

    @property
    def is_duplicate_job(self) -> bool:
        if self.status_code == 409:
            return True
        return bool(_DUPLICATE_JOB_RE.search(self.message or ""))


class DocumentStoreError(AgentKBError):
    def __init__(self, message: str, status_code: Optional[int] = None, error: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error = error


class DocumentConflictError(DocumentStoreError):
    """Write rejected because the caller's revision is stale."""


class DocumentNotFoundError(DocumentStoreError):
    pass


class StorageError(AgentKBError):
    pass


class MoveVerificationError(StorageError):
    """The copy never became visible at the destination; the source was kept."""


class ProvisioningError(AgentKBError):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ProvisioningAuthError(ProvisioningError):
    pass


class IndexingError(AgentKBError):
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RemoteAPIError):
        return exc.is_rate_limited
    return bool(_RATE_LIMIT_RE.search(str(exc)))
