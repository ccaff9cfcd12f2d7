"""REST collaborator contract used by the store and restart coordinator."""
from __future__ import annotations

import abc

from .models import GenerationJob, RestartAck, SessionStatus


class SessionApi(abc.ABC):
    """Backend calls the engine depends on.

    Implementations raise AuthRequiredError, ResourceNotFoundError,
    TransientConnectionError or RestartCommandError; the engine turns
    those into state and result values.
    """

    @abc.abstractmethod
    async def get_session_status(self, resource_id: int) -> SessionStatus:
        """Fetch when the resource's runtime session started."""

    @abc.abstractmethod
    async def restart(self, resource_id: int) -> RestartAck:
        """Queue a restart of the resource's runtime session."""

    async def get_generation_job(self, resource_id: int) -> GenerationJob | None:
        """Return the content-generation job for a resource, if any."""
        return None

    async def reload(self, resource_id: int) -> RestartAck:
        """Ask the running app to reload without restarting."""
        raise NotImplementedError
