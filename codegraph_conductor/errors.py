"""Error taxonomy shared by the conductor, workers and providers.

Every error carries a stable ``code``, a ``retryable`` flag, a human message
and (once it crosses the conductor boundary) the ``request_id`` of the call
that produced it.  :meth:`ConductorError.to_dict` is what callers see; it
never contains a traceback.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ConductorError(Exception):
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            payload["details"] = self.details
        if self.request_id:
            payload["requestId"] = self.request_id
        return payload


class UnknownOperation(ConductorError):
    code = "UNKNOWN_OPERATION"

    def __init__(self, operation: str, **kwargs: Any) -> None:
        super().__init__(f"Unknown operation: '{operation}'", **kwargs)
        self.operation = operation


class AgentBusyError(ConductorError):
    """The target worker is at its concurrency limit. Retry with backoff."""

    code = "AGENT_BUSY"
    retryable = True

    def __init__(self, worker: str, in_flight: int, limit: int, **kwargs: Any) -> None:
        super().__init__(
            f"Worker '{worker}' is busy ({in_flight}/{limit} in flight)",
            details={"worker": worker, "inFlight": in_flight, "limit": limit},
            **kwargs,
        )
        self.worker = worker
        self.in_flight = in_flight
        self.limit = limit


class ValidationError(ConductorError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, issues: Optional[List[Dict[str, str]]] = None, **kwargs: Any) -> None:
        super().__init__(message, details=issues or [], **kwargs)
        self.issues = issues or []


class NotFoundError(ConductorError):
    code = "NOT_FOUND"


class ProviderError(ConductorError):
    """Upstream embedding or rerank failure."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderTimeout(ProviderError):
    code = "PROVIDER_TIMEOUT"
    retryable = True


class EmbeddingMismatchError(ConductorError):
    """Query and stored vectors come from different models or dimensions."""

    code = "EMBEDDING_MISMATCH"


class StorageError(ConductorError):
    code = "STORAGE_ERROR"


class OperationCancelled(ConductorError):
    code = "CANCELLED"


class OperationError(ConductorError):
    """Any other worker failure, normalized at the conductor boundary."""

    code = "OPERATION_FAILED"

    def __init__(self, kind: str, message: str, cause: Optional[BaseException] = None, **kwargs: Any) -> None:
        super().__init__(message, details={"kind": kind}, **kwargs)
        self.kind = kind
        self.cause = cause
