"""
Error taxonomy for mix operations.

Every failure a lobby operation can produce is one of these. The HTTP layer
turns them into JSON responses using ``status_code``; nothing here is meant
to escape as an unhandled exception.
"""
from typing import Any, Dict, List, Optional


class MixError(Exception):
    """Base exception for mix lobby operations."""
    status_code: int = 500
    error_type: str = "MixError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "error": self.error_type,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MixError):
    """Malformed identifiers, wrong roster size, unknown map id."""
    status_code = 400
    error_type = "ValidationError"


class InsufficientPlayersError(ValidationError):
    error_type = "InsufficientPlayers"

    def __init__(self, count: int, required: int = 10):
        self.count = count
        self.required = required
        super().__init__(
            f"Balancing requires exactly {required} players, got {count}",
            {"count": count, "required": required},
        )


class AuthenticationError(MixError):
    status_code = 401
    error_type = "AuthenticationError"

    def __init__(self, message: str = "Player identity required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class AuthorizationError(MixError):
    """Caller is not allowed to perform the operation (creator gate, ban turn)."""
    status_code = 403
    error_type = "AuthorizationError"


class NotFoundError(MixError):
    status_code = 404
    error_type = "NotFound"


class ConflictError(MixError):
    """
    Operation no longer valid for the current state, or lost a race.

    Callers are expected to re-read the mix and decide whether to retry.
    """
    status_code = 409
    error_type = "ConflictError"


class MixFullError(ConflictError):
    error_type = "MixFull"

    def __init__(self, mix_id: str, capacity: int):
        super().__init__(
            f"Mix {mix_id} already has {capacity} players",
            {"mix_id": mix_id, "capacity": capacity},
        )


class StorageError(MixError):
    """Underlying record store or change channel failure. Never auto-retried."""
    status_code = 503
    error_type = "StorageError"


class PartialFinalizeError(StorageError):
    """
    Some rating increments failed while finalizing.

    The mix stays ``live``. ``credited`` lists every player holding a credit
    for this mix (including ones credited by an earlier attempt), so the
    finalize can be re-issued and only ``failed`` players are retried.
    """
    error_type = "PartialFinalize"

    def __init__(self, mix_id: str, credited: List[str], failed: List[str]):
        self.mix_id = mix_id
        self.credited = list(credited)
        self.failed = list(failed)
        super().__init__(
            f"Rating update incomplete for mix {mix_id}: {len(failed)} player(s) not credited",
            {"mix_id": mix_id, "credited": self.credited, "failed": self.failed},
        )
