"""Session timer: one-line countdown for a resource's runtime session."""

from __future__ import annotations

from typing import Optional

from textual.reactive import reactive
from textual.widget import Widget
from rich.text import Text

from storesync.engine.models import SessionSnapshot, SessionState


def format_remaining(seconds: Optional[int]) -> str:
    """Format remaining seconds as M:SS."""
    if seconds is None:
        return "--:--"
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins}:{secs:02d}"


class SessionTimer(Widget):
    """Countdown with connection dot, coloured by session state."""

    DEFAULT_CSS = """
    SessionTimer {
        height: 1;
        width: auto;
        min-width: 24;
        padding: 0 1;
    }
    """

    state: reactive[str] = reactive(SessionState.IDLE.value)
    remaining: reactive[Optional[int]] = reactive(None)
    error: reactive[Optional[str]] = reactive(None)
    connected: reactive[bool] = reactive(False)
    requires_sign_in: reactive[bool] = reactive(False)
    generating: reactive[bool] = reactive(False)

    def update_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.state = snapshot.state.value
        self.remaining = snapshot.remaining_seconds
        self.error = snapshot.last_error
        self.connected = snapshot.is_connected
        self.requires_sign_in = snapshot.requires_sign_in
        self.generating = snapshot.generation_in_progress

    def render(self) -> Text:
        bar = Text()
        dot_style = "green" if self.connected else "dim"
        bar.append("● ", style=dot_style)

        if self.requires_sign_in:
            bar.append("Login required", style="dim")
            return bar
        state = self.state
        if state == SessionState.LOADING.value:
            bar.append("Loading...", style="dim")
        elif state == SessionState.RESTARTING.value:
            bar.append("Restarting...", style="cyan")
        elif self.error:
            bar.append(self.error, style="red bold")
        elif state == SessionState.EXPIRED.value:
            bar.append("Session expired", style="yellow bold")
            bar.append("  (r to restart)", style="dim")
        elif state == SessionState.NOT_STARTED.value:
            label = "Generating..." if self.generating else "Not started"
            bar.append(label, style="dim")
        elif state == SessionState.WARNING.value:
            bar.append(format_remaining(self.remaining), style="dark_orange bold")
        elif state == SessionState.ACTIVE.value:
            bar.append(format_remaining(self.remaining), style="green bold")
        else:
            bar.append("--:--", style="dim")
        return bar
