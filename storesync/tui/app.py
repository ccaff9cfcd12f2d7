"""storesync TUI: Textual application class."""

from __future__ import annotations

import logging

from textual import work
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.widgets import Footer, Header, RichLog, Static

from storesync.engine.api import SessionApi
from storesync.engine.channel import EventChannelManager, TransportFactory
from storesync.engine.config import SyncConfig
from storesync.engine.models import SessionSnapshot
from storesync.engine.publish import JobTracker, PublishTracker
from storesync.engine.session import SessionContext, SessionHandle
from storesync.tui.widgets.session_timer import SessionTimer

logger = logging.getLogger(__name__)


class StoreSyncApp(App):
    """Live session timer and build activity for one resource."""

    TITLE = "storesync"
    SUB_TITLE = "Session monitor"

    BINDINGS = [
        ("r", "restart", "Restart"),
        ("f", "refresh", "Refresh"),
        ("c", "reconnect", "Reconnect"),
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        resource_id: int,
        owner_id: str | None,
        *,
        config: SyncConfig,
        api: SessionApi,
        transport_factory: TransportFactory,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.resource_id = resource_id
        self.owner_id = owner_id
        self._config = config
        self._api = api
        self._transport_factory = transport_factory
        self._channels: EventChannelManager | None = None
        self._context: SessionContext | None = None
        self._handle: SessionHandle | None = None
        self._jobs: JobTracker | None = None
        self._publish: PublishTracker | None = None
        self._last_line = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical():
            yield Static(f"Resource {self.resource_id}", id="resource-label")
            yield SessionTimer(id="session-timer")
            yield Static("", id="publish-status")
            yield RichLog(id="activity", max_lines=self._config.activity_buffer_size)
        yield Footer()

    async def on_mount(self) -> None:
        # Engine objects need the running loop, so they are built here.
        self._channels = EventChannelManager(self._config, self._transport_factory)
        self._context = SessionContext(
            self.owner_id, config=self._config, api=self._api, channels=self._channels,
        )
        self._jobs = JobTracker(
            self.resource_id, self.owner_id, self._channels, config=self._config,
        )
        self._jobs.on_change(self._on_job_activity)
        self._publish = PublishTracker(
            self.owner_id, self._channels, resource_filter=self.resource_id,
        )
        self._publish.on_change(self._on_publish_change)

        handle = await self._context.open(
            self.resource_id, on_expire=self._on_expire, load=False,
        )
        self._handle = handle
        handle.on_change(self._on_snapshot)
        self._on_snapshot(handle.snapshot())
        self._refresh()

    async def on_unmount(self) -> None:
        for tracker in (self._jobs, self._publish):
            if tracker is not None:
                tracker.dispose()
        if self._context is not None:
            self._context.dispose()
        if self._channels is not None:
            await self._channels.aclose()
        close = getattr(self._api, "close", None)
        if close is not None:
            await close()

    # ── Engine callbacks ──────────────────────────────────────

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        try:
            self.query_one(SessionTimer).update_snapshot(snapshot)
        except Exception:
            logger.debug("Timer widget not mounted", exc_info=True)

    def _on_expire(self, resource_id: int) -> None:
        self.notify(f"Session for resource {resource_id} expired", severity="warning")

    def _on_job_activity(self, resource_id: int) -> None:
        if self._jobs is None:
            return
        lines = self._jobs.lines
        log = self.query_one("#activity", RichLog)
        if lines and lines[-1] is not self._last_line:
            line = self._last_line = lines[-1]
            style = "red" if line.channel in ("stderr", "error") else "dim"
            log.write(f"[{style}]{line.text}[/{style}]")
        elif self._jobs.last_event is not None:
            event = self._jobs.last_event
            log.write(f"[cyan]{event.kind.value}[/cyan]")

    def _on_publish_change(self, resource_id: int) -> None:
        if self._publish is None:
            return
        label = self.query_one("#publish-status", Static)
        progress = self._publish.progress(resource_id)
        if progress is not None:
            label.update(f"Publishing: {progress.progress}% {progress.step}")
            return
        outcome = self._publish.outcome(resource_id)
        if outcome is None:
            label.update("")
        elif outcome.succeeded:
            label.update(f"[green]Published[/green] {outcome.platform or ''}")
        else:
            label.update(f"[red]Publish failed:[/red] {outcome.error}")

    # ── Actions ───────────────────────────────────────────────

    def action_restart(self) -> None:
        self._restart()

    def action_refresh(self) -> None:
        self._refresh()

    def action_reconnect(self) -> None:
        if self._handle is not None and self._handle.reconnect():
            self.notify("Reconnecting...")

    @work(group="restart")
    async def _restart(self) -> None:
        if self._handle is None:
            return
        result = await self._handle.restart()
        if not result.accepted:
            self.notify(result.error or "Restart failed", severity="error")

    @work(exclusive=True, group="refresh")
    async def _refresh(self) -> None:
        if self._handle is None:
            return
        result = await self._handle.refresh()
        if not result.ok and result.error:
            self.notify(result.error, severity="error")
