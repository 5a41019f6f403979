"""
Database manager for Timetrack: the store behind the timer.
Owns the SQLAlchemy engine and sessions; every user-scoped operation is filtered by owner.
Supports local SQLite (default) or a remote database (e.g. hosted PostgreSQL) via DATABASE_URL.
"""
import os
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, joinedload, sessionmaker

from models import ActivityLog, Base, Client, Project, TimeEntry, User, utcnow

# Actions shown under the "time" filter of the activity feed.
TIME_ACTIONS = (
    "started_timer",
    "stopped_timer",
    "created_time_entry",
    "updated_time_entry",
    "deleted_time_entry",
)
ACTIVITY_CATEGORIES = ("all", "time", "projects", "clients")

_UPDATABLE_ENTRY_FIELDS = {
    "project_id",
    "description",
    "started_at",
    "ended_at",
    "duration_seconds",
    "is_running",
}


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime for storage: aware values are converted to UTC, naive values are taken as UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _required_name(name: str | None, what: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError(f"{what} name is required.")
    return name


class DatabaseManager:
    """Database as an object: owns engine and sessions, exposes operations as methods."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        database_url: str | None = None,
        current_user_id: int | None = None,
        engine: Engine | None = None,
    ) -> None:
        """Pass engine to share an existing connection pool (one manager per signed-in user)."""
        self._current_user_id = current_user_id
        if engine is None:
            url = database_url or os.environ.get("DATABASE_URL")
            if not url:
                if db_path is None:
                    db_path = Path(__file__).resolve().parent / "timetrack.db"
                url = f"sqlite:///{db_path}"
            connect_args = {}
            if url.startswith("sqlite"):
                # Store calls are dispatched to worker threads by the timer controller.
                connect_args["check_same_thread"] = False
            engine = create_engine(url, echo=False, connect_args=connect_args)
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=self._engine, autocommit=False, autoflush=False
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def current_user_id(self) -> int | None:
        """Current user id for this manager (read-only)."""
        return self._current_user_id

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        """Yield a new session (context manager)."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def _require_user(self) -> None:
        """Raise if current_user_id is not set (required for everything but users)."""
        if self._current_user_id is None:
            raise ValueError("Current user is not set.")

    def _project_query(self, session: Session):
        return session.query(Project).filter(Project.owner_id == self._current_user_id)

    def _time_entry_query(self, session: Session):
        """Query TimeEntry for the current owner, with project and client loaded."""
        return (
            session.query(TimeEntry)
            .options(joinedload(TimeEntry.project).joinedload(Project.client))
            .filter(TimeEntry.owner_id == self._current_user_id)
        )

    def _load_entry(self, session: Session, entry_id: int) -> TimeEntry | None:
        return self._time_entry_query(session).filter(TimeEntry.id == entry_id).first()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        Base.metadata.create_all(self._engine)

    # --- Users ---

    def create_user(self, username: str) -> User:
        """Create a user. Works without current_user_id."""
        username = (username or "").strip()
        if not username:
            raise ValueError("Username is required.")
        with self._session() as session:
            user = User(username=username)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def get_user_by_username(self, username: str) -> User | None:
        with self._session() as session:
            return session.query(User).filter(User.username == (username or "").strip()).first()

    # --- Clients and projects ---

    def _client_query(self, session: Session):
        return session.query(Client).filter(Client.owner_id == self._current_user_id)

    def _get_client(self, session: Session, client_id: int) -> Client:
        client = self._client_query(session).filter(Client.id == client_id).first()
        if client is None:
            raise ValueError("Client not found.")
        return client

    def _get_project(self, session: Session, project_id: int) -> Project:
        project = (
            self._project_query(session)
            .options(joinedload(Project.client))
            .filter(Project.id == project_id)
            .first()
        )
        if project is None:
            raise ValueError("Project not found.")
        return project

    def add_client(self, name: str, email: str | None = None, color: str = "#3B82F6") -> Client:
        """Add a new client. Returns the created Client."""
        self._require_user()
        name = _required_name(name, "Client")
        with self._session() as session:
            client = Client(
                owner_id=self._current_user_id,
                name=name,
                email=email,
                color=color,
            )
            session.add(client)
            session.flush()
            self._record(session, "created_client", "client", client.id, {"clientName": name})
            session.commit()
            session.refresh(client)
            return client

    def update_client(
        self,
        client_id: int,
        *,
        name: str | None = None,
        email: str | None = None,
        color: str | None = None,
    ) -> Client:
        """Update one of the current user's clients. None leaves a field unchanged."""
        self._require_user()
        with self._session() as session:
            client = self._get_client(session, client_id)
            if name is not None:
                client.name = _required_name(name, "Client")
            if email is not None:
                client.email = email.strip() or None
            if color is not None:
                client.color = color
            self._record(session, "updated_client", "client", client.id, {"clientName": client.name})
            session.commit()
            session.refresh(client)
            return client

    def delete_client(self, client_id: int) -> None:
        """Delete a client. Its projects are kept, without a client."""
        self._require_user()
        with self._session() as session:
            client = self._get_client(session, client_id)
            self._project_query(session).filter(Project.client_id == client_id).update(
                {Project.client_id: None}, synchronize_session=False
            )
            self._record(session, "deleted_client", "client", client.id, {"clientName": client.name})
            session.delete(client)
            session.commit()

    def get_clients(self) -> list[Client]:
        """Return the current user's clients, by name."""
        self._require_user()
        with self._session() as session:
            return list(self._client_query(session).order_by(Client.name).all())

    def add_project(
        self,
        name: str,
        client_id: int | None = None,
        *,
        description: str | None = None,
        color: str = "#3B82F6",
        hourly_rate: float | None = None,
        is_active: bool = True,
    ) -> Project:
        """Add a new project, optionally under one of the current user's clients."""
        self._require_user()
        name = _required_name(name, "Project")
        with self._session() as session:
            if client_id is not None:
                self._get_client(session, client_id)
            project = Project(
                owner_id=self._current_user_id,
                client_id=client_id,
                name=name,
                description=description,
                color=color,
                hourly_rate=hourly_rate,
                is_active=is_active,
            )
            session.add(project)
            session.flush()
            self._record(
                session, "created_project", "project", project.id, {"projectName": name, "clientId": client_id}
            )
            session.commit()
            session.refresh(project)
            return project

    def update_project(
        self,
        project_id: int,
        *,
        name: str | None = None,
        client_id: int | None = None,
        description: str | None = None,
        color: str | None = None,
        hourly_rate: float | None = None,
    ) -> Project:
        """Update one of the current user's projects. None leaves a field unchanged."""
        self._require_user()
        with self._session() as session:
            project = self._get_project(session, project_id)
            if name is not None:
                project.name = _required_name(name, "Project")
            if client_id is not None:
                self._get_client(session, client_id)
                project.client_id = client_id
            if description is not None:
                project.description = description
            if color is not None:
                project.color = color
            if hourly_rate is not None:
                if hourly_rate < 0:
                    raise ValueError("Hourly rate must be non-negative.")
                project.hourly_rate = hourly_rate
            self._record(
                session,
                "updated_project",
                "project",
                project.id,
                {"projectName": project.name, "clientId": project.client_id},
            )
            session.commit()
            return self._get_project(session, project_id)

    def set_project_active(self, project_id: int, is_active: bool) -> Project:
        """Activate or deactivate a project. Inactive projects are hidden from the timer picker."""
        self._require_user()
        with self._session() as session:
            project = self._get_project(session, project_id)
            project.is_active = is_active
            self._record(
                session,
                "activated_project" if is_active else "deactivated_project",
                "project",
                project.id,
                {"projectName": project.name, "status": "active" if is_active else "inactive"},
            )
            session.commit()
            return self._get_project(session, project_id)

    def delete_project(self, project_id: int) -> None:
        """Delete a project and its time entries. Refused while one of them is running."""
        self._require_user()
        with self._session() as session:
            project = self._get_project(session, project_id)
            running = (
                session.query(TimeEntry)
                .filter(TimeEntry.project_id == project_id, TimeEntry.is_running == True)  # noqa: E712
                .first()
            )
            if running is not None:
                raise ValueError("Stop the running timer before deleting its project.")
            session.query(TimeEntry).filter(TimeEntry.project_id == project_id).delete(
                synchronize_session=False
            )
            self._record(session, "deleted_project", "project", project.id, {"projectName": project.name})
            session.delete(project)
            session.commit()

    def get_projects(self, active_only: bool = False) -> list[Project]:
        """Return the current user's projects with their client loaded, sorted by full path."""
        self._require_user()
        with self._session() as session:
            q = self._project_query(session).options(joinedload(Project.client))
            if active_only:
                q = q.filter(Project.is_active == True)  # noqa: E712
            projects = q.all()
        return sorted(projects, key=lambda p: p.get_full_path().lower())

    def get_projects_with_full_paths(self, active_only: bool = True) -> list[tuple[int, str]]:
        """Return list of (project_id, 'Client > Project') for the timer dropdown, sorted by path."""
        return [(p.id, p.get_full_path()) for p in self.get_projects(active_only)]

    # --- Time entries ---

    def insert_time_entry(
        self,
        project_id: int,
        description: str | None = None,
        started_at: datetime | None = None,
    ) -> TimeEntry:
        """Insert a running time entry for the given project. Returns it with project loaded.
        Raises ValueError if the project does not belong to the current user; IntegrityError
        if the user already has a running entry."""
        self._require_user()
        with self._session() as session:
            project = self._project_query(session).filter(Project.id == project_id).first()
            if project is None:
                raise ValueError("Project not found.")
            entry = TimeEntry(
                owner_id=self._current_user_id,
                project_id=project_id,
                description=description or "",
                started_at=to_naive_utc(started_at) or utcnow(),
                duration_seconds=0,
                is_running=True,
            )
            session.add(entry)
            session.commit()
            return self._load_entry(session, entry.id)

    def update_time_entry(
        self, entry_id: int, *, require_stopped: bool = False, **patch
    ) -> TimeEntry:
        """Apply patch to one of the current user's time entries. Returns it with project loaded.
        With require_stopped=True, a running entry is rejected."""
        self._require_user()
        unknown = set(patch) - _UPDATABLE_ENTRY_FIELDS
        if unknown:
            raise ValueError(f"Unknown time entry field(s): {', '.join(sorted(unknown))}.")
        with self._session() as session:
            entry = (
                session.query(TimeEntry)
                .filter(TimeEntry.id == entry_id, TimeEntry.owner_id == self._current_user_id)
                .first()
            )
            if entry is None:
                raise ValueError("Time entry not found.")
            if require_stopped and entry.is_running:
                raise ValueError("Time entry is already running.")
            if "project_id" in patch:
                if self._project_query(session).filter(Project.id == patch["project_id"]).first() is None:
                    raise ValueError("Project not found.")
            for key, value in patch.items():
                if key in ("started_at", "ended_at"):
                    value = to_naive_utc(value)
                elif key == "description":
                    value = value or ""
                setattr(entry, key, value)
            session.commit()
            return self._load_entry(session, entry_id)

    def edit_time_entry(
        self,
        entry_id: int,
        *,
        description: str | None = None,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> TimeEntry:
        """Edit a time entry by hand. None leaves a field unchanged.
        Giving a running entry an end time stops it; duration is recomputed from start and end."""
        self._require_user()
        with self._session() as session:
            entry = self._load_entry(session, entry_id)
            if entry is None:
                raise ValueError("Time entry not found.")
            if description is not None:
                entry.description = description.strip()
            if started_at is not None:
                entry.started_at = to_naive_utc(started_at)
            if ended_at is not None:
                entry.ended_at = to_naive_utc(ended_at)
                entry.is_running = False
            if entry.ended_at is not None and not entry.is_running:
                if entry.ended_at < entry.started_at:
                    raise ValueError("End time must be after start time.")
                entry.duration_seconds = (entry.ended_at - entry.started_at) // timedelta(seconds=1)
            self._record(
                session,
                "updated_time_entry",
                "time_entry",
                entry.id,
                {
                    "projectName": entry.project.name,
                    "duration": entry.duration_seconds,
                    "startTime": entry.started_at.isoformat(),
                    "endTime": entry.ended_at.isoformat() if entry.ended_at else None,
                },
            )
            session.commit()
            return self._load_entry(session, entry_id)

    def delete_time_entry(self, entry_id: int) -> None:
        """Delete one of the current user's time entries (running or not)."""
        self._require_user()
        with self._session() as session:
            entry = self._load_entry(session, entry_id)
            if entry is None:
                raise ValueError("Time entry not found.")
            self._record(
                session,
                "deleted_time_entry",
                "time_entry",
                entry.id,
                {"projectName": entry.project.name, "duration": entry.duration_seconds},
            )
            session.delete(entry)
            session.commit()

    def get_running_entry(self) -> TimeEntry | None:
        """Return the current user's running time entry, if any."""
        self._require_user()
        with self._session() as session:
            return (
                self._time_entry_query(session)
                .filter(TimeEntry.is_running == True)  # noqa: E712
                .order_by(TimeEntry.started_at.desc())
                .first()
            )

    def get_recent_entries(self, limit: int = 10) -> list[TimeEntry]:
        """Return the current user's latest time entries, newest first."""
        self._require_user()
        with self._session() as session:
            return list(
                self._time_entry_query(session)
                .order_by(TimeEntry.started_at.desc(), TimeEntry.id.desc())
                .limit(limit)
                .all()
            )

    def get_time_report(
        self,
        since: datetime,
        until: datetime,
        project_id: int | None = None,
    ) -> dict:
        """
        Summarize stopped entries whose started_at falls in [since, until].
        Returns {"total_seconds", "earnings", "by_project": {path: seconds}, "by_day": {iso date: seconds}}.
        Earnings use each project's hourly_rate (none counts as 0).
        """
        self._require_user()
        with self._session() as session:
            q = self._time_entry_query(session).filter(
                TimeEntry.is_running == False,  # noqa: E712
                TimeEntry.started_at >= to_naive_utc(since),
                TimeEntry.started_at <= to_naive_utc(until),
            )
            if project_id is not None:
                q = q.filter(TimeEntry.project_id == project_id)
            entries = q.order_by(TimeEntry.started_at).all()
            total = 0
            earnings = 0.0
            by_project: dict[str, int] = defaultdict(int)
            by_day: dict[str, int] = defaultdict(int)
            for e in entries:
                seconds = e.duration_seconds or 0
                total += seconds
                earnings += seconds / 3600 * (e.project.hourly_rate or 0.0)
                by_project[e.project.get_full_path()] += seconds
                by_day[e.started_at.date().isoformat()] += seconds
        return {
            "total_seconds": total,
            "earnings": round(earnings, 2),
            "by_project": dict(by_project),
            "by_day": dict(by_day),
        }

    # --- Activity log ---

    def _record(
        self,
        session: Session,
        action: str,
        entity_type: str | None,
        entity_id: int | str | None,
        details: dict | None = None,
    ) -> ActivityLog:
        """Add an activity row to session; it commits with the change it describes."""
        row = ActivityLog(
            user_id=self._current_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=dict(details or {}),
        )
        session.add(row)
        return row

    def log_activity(
        self,
        action: str,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        details: dict | None = None,
    ) -> ActivityLog:
        """Append an entry to the current user's activity log."""
        self._require_user()
        with self._session() as session:
            row = self._record(session, action, entity_type, entity_id, details)
            session.commit()
            session.refresh(row)
            return row

    def get_activity_logs(self, category: str = "all", limit: int = 50) -> list[ActivityLog]:
        """Return the current user's activity, newest first, filtered by category
        ('all', 'time', 'projects' or 'clients')."""
        self._require_user()
        if category not in ACTIVITY_CATEGORIES:
            raise ValueError(f"Unknown activity category: {category}")
        with self._session() as session:
            q = session.query(ActivityLog).filter(ActivityLog.user_id == self._current_user_id)
            if category == "time":
                q = q.filter(ActivityLog.action.in_(TIME_ACTIONS))
            elif category == "projects":
                q = q.filter(ActivityLog.entity_type == "project")
            elif category == "clients":
                q = q.filter(ActivityLog.entity_type == "client")
            return list(
                q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
            )
