"""Exception hierarchy for the session sync engine.

Collaborators raise these; the store and coordinator convert them
into status fields and result values at the public boundary.
"""
from __future__ import annotations


class SessionSyncError(Exception):
    """Base exception for all session sync errors."""


class TransientConnectionError(SessionSyncError):
    """A network call or channel connect failed and may be retried."""
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Connection to {target} failed: {reason}")


class AuthRequiredError(SessionSyncError):
    """The owner is not authenticated. Never retried."""
    def __init__(self, target: str, status: int | None = None):
        self.target = target
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Authentication required for {target}{detail}")


class ResourceNotFoundError(SessionSyncError):
    """The resource has no runtime session on the server."""
    def __init__(self, resource_id: int):
        self.resource_id = resource_id
        super().__init__(f"No session found for resource {resource_id}")


class RestartCommandError(SessionSyncError):
    """The restart command was rejected or could not be delivered."""
    def __init__(self, resource_id: int, reason: str):
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Restart of resource {resource_id} failed: {reason}")


class MalformedEventError(SessionSyncError):
    """A push event could not be parsed into a PushEvent."""
    def __init__(self, event_name: str, reason: str):
        self.event_name = event_name
        self.reason = reason
        super().__init__(f"Malformed event '{event_name}': {reason}")
