"""Turns successive snapshots of one printer into notification events and
drives that printer's live session.

Transition detection needs memory that a single snapshot cannot carry
(previous status, the milestone watermark, the session handle). All of it
lives on the printer's ``PrinterContext`` and every mutation happens under
``ctx.transition_lock``.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import NotificationSettings
from .errors import SessionError
from .models import EventKind, NotificationEvent, PrinterSnapshot, PrintStatus
from .sync import PrinterContext

logger = logging.getLogger(__name__)

_START_FROM = frozenset({PrintStatus.IDLE, PrintStatus.PREPARING, PrintStatus.UNKNOWN})

# Kinds that open and close a live session.
SESSION_OPENERS = frozenset({EventKind.STARTED})
SESSION_CLOSERS = frozenset({EventKind.COMPLETED, EventKind.FAILED})


def transition_events(
    previous: Optional[PrintStatus], snapshot: PrinterSnapshot
) -> List[NotificationEvent]:
    """Status-change events between two consecutive ticks.

    ``previous`` of None is the first snapshot seen for the printer; it sets
    the baseline and yields nothing. Resumes are always reported here; the
    caller decides whether to forward them.
    """
    current = snapshot.status
    if previous is None or previous == current:
        return []

    if current == PrintStatus.RUNNING:
        if previous in _START_FROM:
            return [NotificationEvent(EventKind.STARTED, snapshot)]
        if previous == PrintStatus.PAUSED:
            return [NotificationEvent(EventKind.RESUMED, snapshot)]
    elif current == PrintStatus.PAUSED:
        if previous == PrintStatus.RUNNING:
            return [NotificationEvent(EventKind.PAUSED, snapshot)]
    elif current == PrintStatus.FINISHED:
        return [NotificationEvent(EventKind.COMPLETED, snapshot)]
    elif current == PrintStatus.FAILED:
        return [NotificationEvent(EventKind.FAILED, snapshot)]
    return []


def next_milestone(progress: int, interval: int, watermark: int) -> Optional[int]:
    """The milestone crossed by ``progress``, or None if it was already announced."""
    if interval <= 0:
        return None
    milestone = (max(0, progress) // interval) * interval
    if milestone > watermark and 0 < milestone < 100:
        return milestone
    return None


def detect_events(
    previous: Optional[PrintStatus],
    snapshot: PrinterSnapshot,
    watermark: int,
    milestone_interval: int = 0,
) -> Tuple[List[NotificationEvent], int]:
    """Pure transition step: returns (events, new watermark)."""
    events = transition_events(previous, snapshot)
    if any(e.kind is EventKind.STARTED for e in events):
        watermark = 0

    if snapshot.status == PrintStatus.RUNNING:
        milestone = next_milestone(snapshot.progress, milestone_interval, watermark)
        if milestone is not None:
            watermark = milestone
            events.append(NotificationEvent(EventKind.MILESTONE, snapshot, milestone=milestone))
    return events, watermark


def is_event_enabled(event: NotificationEvent, settings: NotificationSettings) -> bool:
    if not settings.enabled:
        return False
    return {
        EventKind.STARTED: settings.notify_on_start,
        EventKind.PAUSED: settings.notify_on_pause,
        EventKind.RESUMED: settings.notify_on_resume,
        EventKind.COMPLETED: settings.notify_on_complete,
        EventKind.FAILED: settings.notify_on_failed,
        EventKind.MILESTONE: settings.milestones_enabled,
    }[event.kind]


def session_attributes(ctx: PrinterContext, snapshot: PrinterSnapshot) -> Dict[str, Any]:
    """Values fixed for the lifetime of one live session."""
    return {
        "printer_id": ctx.prefix,
        "display_name": ctx.display_name,
        "filename": snapshot.filename,
        "started_at": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
        "model": snapshot.model.value if snapshot.model else None,
    }


class LiveSessionManager:
    """Owns the calling discipline for one session backend.

    At most one handle per printer: ``start`` always ends the tracked
    handle first and still starts if that end fails, ``end`` with nothing
    tracked is a no-op. Backend failures surface as ``SessionError`` and
    leave the context without a handle.
    """

    def __init__(self, backend) -> None:
        self.backend = backend

    async def start(self, ctx: PrinterContext, snapshot: PrinterSnapshot) -> str:
        try:
            await self.end(ctx, snapshot)
        except SessionError as e:
            # The stale handle is already dropped; a new session is still requested.
            ctx.last_session_error = str(e)
            logger.warning("[%s] Ending previous live session failed: %s", ctx.prefix, e)
        try:
            handle = await self.backend.start(
                session_attributes(ctx, snapshot), snapshot.content_state()
            )
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(f"Session start failed: {e}") from e
        ctx.session_handle = handle
        logger.info("[%s] Live session started: %s", ctx.prefix, handle)
        return handle

    async def update(self, ctx: PrinterContext, snapshot: PrinterSnapshot) -> None:
        if ctx.session_handle is None:
            return
        try:
            await self.backend.update(ctx.session_handle, snapshot.content_state())
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(f"Session update failed: {e}") from e

    async def end(self, ctx: PrinterContext, snapshot: Optional[PrinterSnapshot] = None) -> None:
        handle = ctx.session_handle
        if handle is None:
            return
        # Drop the handle before calling out; a failed end must not leave a
        # stale handle that blocks the next start.
        ctx.session_handle = None
        final_state = snapshot.content_state() if snapshot is not None else None
        try:
            await self.backend.end(handle, final_state)
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(f"Session end failed: {e}") from e
        logger.info("[%s] Live session ended: %s", ctx.prefix, handle)


class PrintStateMachine:
    """Per-snapshot transition detection, notification fan-out and session driving.

    Transitions drive the live session whether or not the matching
    notification kind is enabled; the toggles only filter what reaches the
    notifier.
    """

    def __init__(self, settings: NotificationSettings, notifier=None, sessions: Optional[LiveSessionManager] = None) -> None:
        self.settings = settings
        self.notifier = notifier
        self.sessions = sessions

    async def stop(self, ctx: PrinterContext) -> None:
        """End the printer's live session, if any, when monitoring stops."""
        if self.sessions is None:
            return
        async with ctx.transition_lock:
            try:
                await self.sessions.end(ctx, ctx.snapshot)
            except SessionError as e:
                ctx.last_session_error = str(e)
                logger.warning("[%s] Live session error on stop: %s", ctx.prefix, e)

    async def process(self, ctx: PrinterContext, snapshot: PrinterSnapshot) -> List[NotificationEvent]:
        """Feed one published snapshot; returns the events passed to the notifier."""
        async with ctx.transition_lock:
            previous = ctx.previous_status
            events, ctx.milestone_watermark = detect_events(
                previous,
                snapshot,
                ctx.milestone_watermark,
                self.settings.milestone_interval if self.settings.milestones_enabled else 0,
            )
            ctx.previous_status = snapshot.status
            ctx.previous_progress = snapshot.progress

            await self._drive_session(ctx, snapshot, events)

            emitted = [e for e in events if is_event_enabled(e, self.settings)]
            for event in emitted:
                logger.info("[%s] Event %s at %s%%", ctx.prefix, event, snapshot.progress)
                if self.notifier is not None:
                    await self.notifier.notify(event)
            return emitted

    async def _drive_session(
        self, ctx: PrinterContext, snapshot: PrinterSnapshot, events: List[NotificationEvent]
    ) -> None:
        if self.sessions is None:
            return
        kinds = {e.kind for e in events}
        try:
            if kinds & SESSION_OPENERS:
                await self.sessions.start(ctx, snapshot)
            elif kinds & SESSION_CLOSERS or snapshot.status == PrintStatus.IDLE:
                await self.sessions.end(ctx, snapshot)
            else:
                await self.sessions.update(ctx, snapshot)
            ctx.last_session_error = None
        except SessionError as e:
            ctx.last_session_error = str(e)
            logger.warning("[%s] Live session error: %s", ctx.prefix, e)
