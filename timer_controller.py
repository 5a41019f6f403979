"""
Active timer for the signed-in user.
One TimerController per session owns the running time entry (if any), publishes immutable
snapshots to subscribers, and derives the elapsed display from the persisted start time,
never from a counter, so a reload (refresh) or missed ticks cannot skew it.
The store enforces "one running entry per user"; the controller never issues a start or
resume while it still holds a running entry.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from activity_logger import ActivityLogger
from database_manager import DatabaseManager
from models import TimeEntry

log = logging.getLogger("timetrack.timer")

# Failures that end an operation without a state change.
STORE_ERRORS = (ValueError, SQLAlchemyError, OSError)

_ONE_SECOND = timedelta(seconds=1)
_FAILED = object()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive values (as stored) are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, floored. Negative if end precedes start (clock skew is not clamped)."""
    return (as_utc(end) - as_utc(start)) // _ONE_SECOND


def format_elapsed(seconds: int) -> str:
    """Format seconds as HH:MM:SS."""
    sign = "-" if seconds < 0 else ""
    seconds = abs(int(seconds))
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{sign}{h:02d}:{m:02d}:{s:02d}"


class TimerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class ActiveEntry:
    """Confirmed store row of the running entry. Replaced, never mutated."""

    id: int
    owner_id: int
    project_id: int
    project_name: str
    project_path: str
    description: str
    started_at: datetime
    ended_at: datetime | None
    duration_seconds: int
    is_running: bool

    @classmethod
    def from_row(cls, entry: TimeEntry) -> "ActiveEntry":
        project = entry.project
        return cls(
            id=entry.id,
            owner_id=entry.owner_id,
            project_id=entry.project_id,
            project_name=project.name if project is not None else "",
            project_path=project.get_full_path() if project is not None else "",
            description=entry.description or "",
            started_at=as_utc(entry.started_at),
            ended_at=as_utc(entry.ended_at) if entry.ended_at is not None else None,
            duration_seconds=entry.duration_seconds or 0,
            is_running=bool(entry.is_running),
        )


@dataclass(frozen=True)
class TimerSnapshot:
    state: TimerState
    entry: ActiveEntry | None = None
    elapsed_seconds: int = 0

    @property
    def is_running(self) -> bool:
        return self.state is TimerState.RUNNING


IDLE = TimerSnapshot(TimerState.IDLE)

Subscriber = Callable[[TimerSnapshot], Any]


class TimerController:
    """Start/stop/pause/resume/refresh the user's timer against the store.

    Operations return True when the store confirmed the change (the state transitioned or,
    for refresh, was re-read) and False otherwise: a precondition no-op or a store failure.
    Failures are logged and kept in ``last_error``; the published state is left as it was.
    Operations are not serialized: overlapping calls race and the last confirmation wins.
    ``last_error`` belongs to the most recent store call to finish, so a failed call's error
    is cleared when an overlapping call succeeds after it; check the returned bool instead.
    """

    def __init__(
        self,
        db: DatabaseManager,
        activity: ActivityLogger | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        tick_interval: float = 1.0,
    ) -> None:
        self.db = db
        self.activity = activity if activity is not None else ActivityLogger(db)
        self.tick_interval = tick_interval
        self.last_error: Exception | None = None
        self._clock = clock
        self._snapshot = IDLE
        self._subscribers: list[Subscriber] = []
        self._tick_task: asyncio.Task | None = None

    # --- Published state (read-only) ---

    @property
    def snapshot(self) -> TimerSnapshot:
        return self._snapshot

    @property
    def state(self) -> TimerState:
        return self._snapshot.state

    @property
    def active_entry(self) -> ActiveEntry | None:
        return self._snapshot.entry

    @property
    def elapsed_seconds(self) -> int:
        return self._snapshot.elapsed_seconds

    @property
    def is_running(self) -> bool:
        return self._snapshot.is_running

    @property
    def is_ticking(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call callback with every new snapshot. Returns a function that unsubscribes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, snapshot: TimerSnapshot) -> None:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                log.exception("Timer subscriber %r failed", callback)

    # --- Elapsed-time recomputation ---

    def tick(self) -> int:
        """Recompute elapsed seconds from the entry's start time and publish it."""
        entry = self._snapshot.entry
        if entry is None:
            return 0
        elapsed = elapsed_between(entry.started_at, self._clock())
        self._publish(TimerSnapshot(TimerState.RUNNING, entry, elapsed))
        return elapsed

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def _start_ticking(self) -> None:
        self._stop_ticking()
        self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())

    def _stop_ticking(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None and not task.done():
            task.cancel()

    def _enter_running(self, row: TimeEntry, elapsed: int | None = None) -> None:
        entry = ActiveEntry.from_row(row)
        if elapsed is None:
            elapsed = elapsed_between(entry.started_at, self._clock())
        self._publish(TimerSnapshot(TimerState.RUNNING, entry, elapsed))
        self._start_ticking()

    def _enter_idle(self) -> None:
        self._stop_ticking()
        self._publish(IDLE)

    # --- Store access ---

    async def _call_store(self, what: str, fn: Callable, *args, **kwargs):
        """Run a store call off the event loop. Returns _FAILED (logged, kept in last_error) on failure.
        Any call that succeeds resets last_error, including one that overlapped a failure."""
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except STORE_ERRORS as e:
            self.last_error = e
            log.exception("Error %s", what)
            return _FAILED
        self.last_error = None
        return result

    def _signed_in(self) -> bool:
        return self.db.current_user_id is not None

    # --- Operations ---

    async def start(self, project_id: int | None, description: str | None = None) -> bool:
        """Start timing project_id. A running entry is stopped first; if that stop fails, nothing is started."""
        if not project_id or not self._signed_in():
            log.debug("Ignoring start: project=%r user=%r", project_id, self.db.current_user_id)
            return False
        if self._snapshot.entry is not None and not await self.stop():
            return False
        description = description or ""
        row = await self._call_store(
            "starting timer", self.db.insert_time_entry, project_id, description, self._clock()
        )
        if row is _FAILED:
            return False
        self._enter_running(row, elapsed=0)
        log.info("Started timer: entry %s on project %s", row.id, project_id)
        await self.activity.log(
            "started_timer",
            "time_entry",
            row.id,
            {"projectName": row.project.name if row.project else None, "description": description},
        )
        return True

    async def stop(self) -> bool:
        """End the running entry as a finished session."""
        entry = await self._finish("stopping timer", "stopped")
        if entry is None:
            return False
        await self.activity.log(
            "stopped_timer",
            "time_entry",
            entry.id,
            {"projectName": entry.project_name, "duration": entry.duration_seconds},
        )
        return True

    async def pause(self) -> bool:
        """Persist the same stopped shape as stop(), without the activity record. Continue with resume()."""
        return await self._finish("pausing timer", "paused") is not None

    async def _finish(self, what: str, done: str) -> ActiveEntry | None:
        entry = self._snapshot.entry
        if entry is None or not self._signed_in():
            return None
        now = self._clock()
        duration = elapsed_between(entry.started_at, now)
        if duration < 0:
            log.warning("Entry %s ends %ss before it started; clock skew?", entry.id, -duration)
        row = await self._call_store(
            what,
            self.db.update_time_entry,
            entry.id,
            ended_at=now,
            duration_seconds=duration,
            is_running=False,
        )
        if row is _FAILED:
            return None
        self._enter_idle()
        log.info("Timer %s: entry %s after %ss", done, entry.id, duration)
        return ActiveEntry.from_row(row)

    async def resume(self, entry_id: int | None) -> bool:
        """Run a stopped entry again from now. A different running entry is stopped first."""
        if not entry_id or not self._signed_in():
            return False
        current = self._snapshot.entry
        if current is not None:
            if current.id == entry_id:
                return False
            if not await self.stop():
                return False
        row = await self._call_store(
            "resuming timer",
            self.db.update_time_entry,
            entry_id,
            require_stopped=True,
            started_at=self._clock(),
            ended_at=None,
            is_running=True,
        )
        if row is _FAILED:
            return False
        self._enter_running(row, elapsed=0)
        log.info("Resumed timer: entry %s", entry_id)
        return True

    async def refresh(self) -> bool:
        """Adopt whatever running entry the store holds for the user (session start, reconnect, reload)."""
        if not self._signed_in():
            self.reset()
            return False
        row = await self._call_store("fetching active entry", self.db.get_running_entry)
        if row is _FAILED:
            return False
        if row is None:
            self._enter_idle()
        else:
            self._enter_running(row)
        return True

    def reset(self) -> None:
        """Tear down session state (sign-out): cancel the tick and go idle. Touches nothing in the store."""
        self.last_error = None
        self._enter_idle()
