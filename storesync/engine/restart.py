"""Restart command issuing and reconciliation.

A restart moves the session to RESTARTING and calls the REST restart
command. The session becomes ACTIVE again only when the matching
app-restarted event arrives, or when a reconciling status fetch shows
a session started after the request was issued. The event may beat
the command's own response; the store keeps whichever came first.
"""
from __future__ import annotations

import asyncio
import logging

from .api import SessionApi
from .config import SyncConfig
from .errors import AuthRequiredError, SessionSyncError
from .models import RestartRequest, RestartResult
from .store import SIGN_IN_MESSAGE, SessionStateStore

logger = logging.getLogger(__name__)

RESTART_ERROR_MESSAGE = "Failed to restart"


class RestartCoordinator:
    """Issues restarts for one store and waits for their confirmation."""

    def __init__(
        self,
        store: SessionStateStore,
        api: SessionApi,
        *,
        config: SyncConfig,
    ) -> None:
        self._store = store
        self._api = api
        self._config = config
        self._inflight: asyncio.Task[RestartResult] | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._disposed = False

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def reconciling(self) -> bool:
        return self._reconcile_task is not None and not self._reconcile_task.done()

    async def restart(self, resource_id: int) -> RestartResult:
        """Restart the session. A call during an in-flight restart joins it."""
        store = self._store
        if resource_id != store.resource_id:
            return RestartResult(
                accepted=False, state=store.state,
                error=f"Unknown resource {resource_id}",
            )
        if self._disposed:
            return RestartResult(accepted=False, state=store.state, error="disposed")
        if not self.in_flight:
            self._inflight = asyncio.get_running_loop().create_task(
                self._issue(resource_id), name=f"restart:{resource_id}",
            )
        task = self._inflight
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # dispose() cancelled the command; the caller itself was not.
            if self._disposed and task.cancelled():
                return RestartResult(accepted=False, state=store.state, error="disposed")
            raise

    async def _issue(self, resource_id: int) -> RestartResult:
        store = self._store
        if store.inert:
            return RestartResult(accepted=False, state=store.state, error=SIGN_IN_MESSAGE)

        request = RestartRequest(resource_id=resource_id)
        if not store.begin_restart(request):
            return RestartResult(
                accepted=False, state=store.state,
                error=f"Cannot restart from state {store.state.value}",
            )
        logger.info("Restarting resource %s", resource_id)

        try:
            ack = await self._api.restart(resource_id)
        except AuthRequiredError:
            store.sign_out()
            return RestartResult(
                accepted=False, state=store.state, error=SIGN_IN_MESSAGE, request=request,
            )
        except SessionSyncError as exc:
            logger.warning("Restart of %s failed: %s", resource_id, exc)
            store.fail_restart(request, RESTART_ERROR_MESSAGE)
            return RestartResult(
                accepted=False, state=store.state, error=RESTART_ERROR_MESSAGE, request=request,
            )

        if not ack.accepted:
            message = ack.message or RESTART_ERROR_MESSAGE
            logger.warning("Restart of %s rejected: %s", resource_id, message)
            store.fail_restart(request, message)
            return RestartResult(
                accepted=False, state=store.state, error=message, request=request,
            )

        if store.pending_restart is request:
            logger.info(
                "Restart of %s accepted (job %s); waiting for confirmation",
                resource_id, ack.job_id,
            )
            self._start_reconcile(request)
        return RestartResult(accepted=True, state=store.state, request=request)

    def _start_reconcile(self, request: RestartRequest) -> None:
        interval = self._config.restart_reconcile_seconds
        if interval <= 0 or self._disposed:
            return
        if self.reconciling:
            self._reconcile_task.cancel()
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._reconcile_loop(request, interval),
            name=f"reconcile:{request.resource_id}",
        )

    async def _reconcile_loop(self, request: RestartRequest, interval: float) -> None:
        store = self._store
        try:
            while not store.disposed and store.pending_restart is request:
                await asyncio.sleep(interval)
                if store.pending_restart is not request:
                    return
                try:
                    await store.reconcile()
                except Exception:
                    logger.exception(
                        "Reconciling fetch for %s raised; polling again", request.resource_id,
                    )
        except asyncio.CancelledError:
            logger.debug("Reconcile loop for %s stopped", request.resource_id)
            raise

    def dispose(self) -> None:
        """Cancel the in-flight command and the reconcile loop."""
        if self._disposed:
            return
        self._disposed = True
        for task in (self._inflight, self._reconcile_task):
            if task is not None and not task.done():
                task.cancel()
        self._inflight = None
        self._reconcile_task = None
