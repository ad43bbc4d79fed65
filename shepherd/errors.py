"""Error taxonomy shared by the store, the Bridge and the Gateway.

Every error carries a ``kind`` string. The Bridge maps kinds 1:1 onto HTTP
status codes and the Gateway reports them back to the agent unchanged, so a
failure keeps its meaning across both process boundaries.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ShepherdError(Exception):
    """Base class for all control-plane errors."""

    kind = "internal"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class ValidationError(ShepherdError, ValueError):
    """Malformed input, illegal transition or proposal schema violation."""

    kind = "validation"


class ForbiddenTransitionError(ValidationError):
    """A transition that only the operator may perform was requested by the agent."""

    kind = "forbidden"


class NotFoundError(ShepherdError, LookupError):
    """Unknown task, feature or requirement."""

    kind = "not_found"


class PersistenceError(ShepherdError):
    """Writing the store failed; the mutation was not applied and may be retried."""

    kind = "persistence"


class MigrationError(ShepherdError):
    """The on-disk schema version is not one this build understands."""

    kind = "migration"


class TransportError(ShepherdError):
    """The Gateway could not complete a round trip to the Bridge."""

    kind = "transport"


class BridgeUnavailableError(TransportError):
    """No Bridge answered within the port-wait ceiling."""

    kind = "bridge_unavailable"


class BridgeError(TransportError):
    """The Bridge answered with a non-success status."""

    kind = "bridge_error"

    def __init__(self, status: int, payload: Any, message: Optional[str] = None):
        self.status = status
        self.payload = payload
        if message is None:
            message = _describe_payload(payload)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        if isinstance(self.payload, dict) and isinstance(self.payload.get("error"), dict):
            data["bridge_kind"] = self.payload["error"].get("kind")
        return data


def _describe_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return str(payload)
