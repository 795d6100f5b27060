from typing import Optional


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class StateSourceError(BridgeError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class EntityNotFound(StateSourceError):
    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Entity not found: {entity_id}", status=404)
        self.entity_id = entity_id


class Unauthorized(StateSourceError):
    def __init__(self, message: str = "Unauthorized - check your access token", status: int = 401) -> None:
        super().__init__(message, status=status)


class MalformedEntityId(BridgeError, ValueError):
    def __init__(self, entity_id: object) -> None:
        super().__init__(f"Malformed entity id: {entity_id!r}")
        self.entity_id = entity_id


class DiscoveryError(BridgeError):
    pass


class SessionError(BridgeError):
    pass


class DeliveryError(BridgeError):
    """A notification channel rejected or failed to deliver a message."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
