"""
Timetrack: Flet UI over the active timer.
Sign in by username; the timer view subscribes to the session's TimerController and
shows the running entry, recent entries (editable, with Resume and Delete), projects and
clients, a weekly report and the activity feed.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable

import flet as ft
from sqlalchemy.exc import SQLAlchemyError

from activity_logger import ActivityLogger
from app_logger import get_logger
from database_manager import ACTIVITY_CATEGORIES, DatabaseManager
from settings import Settings
from timer_controller import TimerController, TimerSnapshot, format_elapsed, utc_now

__version__ = "v0.1.0"

DATETIME_FMT = "%Y-%m-%d %H:%M"
REPORT_DAYS = 7

# Errors a store call can raise for a user action; shown as a snack bar.
STORE_ERRORS = (ValueError, SQLAlchemyError)

log = logging.getLogger("timetrack.ui")


def format_eur(amount: float) -> str:
    """Format amount in EUR for display."""
    return f"€ {amount:.2f}"


def parse_datetime(s: str) -> datetime | None:
    """Parse YYYY-MM-DD HH:MM."""
    s = (s or "").strip()
    if not s:
        return None
    try:
        return datetime.strptime(s, DATETIME_FMT)
    except ValueError:
        return None


class TimetrackApp:
    """One signed-in session: owns the controller and the timer view."""

    def __init__(self, page: ft.Page, db: DatabaseManager, settings: Settings) -> None:
        self.page = page
        self.db = db
        self.activity = ActivityLogger(db)
        self.timer = TimerController(db, self.activity, tick_interval=settings.tick_interval)
        self.elapsed_label = ft.Text("00:00:00", size=48, weight=ft.FontWeight.W_500)
        self.running_label = ft.Text("Not running", size=14)
        self.project_dd = ft.Dropdown(label="Project", width=400)
        self.description_tf = ft.TextField(label="Description (optional)", width=400)
        self.new_project_tf = ft.TextField(label="New project", width=200)
        self.new_client_tf = ft.TextField(label="Client (optional)", width=190)
        self.recent_column = ft.Column(spacing=4)
        self.projects_column = ft.Column(spacing=2)
        self.clients_column = ft.Column(spacing=2)
        self.report_column = ft.Column(spacing=2)
        self.activity_column = ft.Column(spacing=2)
        self.activity_filter = ft.Dropdown(
            label="Activity",
            value="all",
            width=160,
            options=[ft.DropdownOption(key=c, text=c.capitalize()) for c in ACTIVITY_CATEGORIES],
            on_select=lambda _: self._refresh_activity(),
        )
        self._unsubscribe: Callable[[], None] | None = None

    def _toast(self, message: str) -> None:
        self.page.snack_bar = ft.SnackBar(ft.Text(message), open=True)
        self.page.update()

    def _on_snapshot(self, snapshot: TimerSnapshot) -> None:
        self.elapsed_label.value = format_elapsed(snapshot.elapsed_seconds)
        if snapshot.entry is None:
            self.running_label.value = "Not running"
        else:
            desc = f" - {snapshot.entry.description}" if snapshot.entry.description else ""
            self.running_label.value = f"{snapshot.entry.project_path}{desc}"
        self.page.update()

    def _failure_text(self, action: str) -> str:
        err = self.timer.last_error
        return f"Could not {action} the timer: {err}" if err else f"Could not {action} the timer."

    # --- Lists ---

    def _refresh_projects(self) -> None:
        options = self.db.get_projects_with_full_paths()
        self.project_dd.options = [ft.DropdownOption(key=str(pid), text=path) for pid, path in options]
        if options and self.project_dd.value not in {str(pid) for pid, _ in options}:
            self.project_dd.value = str(options[0][0])

    def _refresh_recent(self) -> None:
        rows: list[ft.Control] = []
        for e in self.db.get_recent_entries(limit=10):
            label = e.project.get_full_path() if e.project else "?"
            start_val = e.started_at.strftime(DATETIME_FMT)
            end_val = e.ended_at.strftime(DATETIME_FMT) if e.ended_at and not e.is_running else ""
            duration = "running" if e.is_running else format_elapsed(e.duration_seconds or 0)
            rows.append(
                ft.Row(
                    [
                        ft.Text(label, width=220),
                        ft.TextField(
                            value=e.description or "",
                            width=200,
                            on_blur=lambda ev, eid=e.id, old=e.description or "": self._on_description_blur(
                                eid, old, ev.control.value
                            ),
                        ),
                        ft.TextField(
                            value=start_val,
                            width=150,
                            on_blur=lambda ev, eid=e.id, old=start_val: self._on_time_blur(
                                eid, "started_at", old, ev.control.value
                            ),
                        ),
                        ft.TextField(
                            value=end_val,
                            width=150,
                            hint_text="Running" if e.is_running else None,
                            on_blur=lambda ev, eid=e.id, old=end_val: self._on_time_blur(
                                eid, "ended_at", old, ev.control.value
                            ),
                        ),
                        ft.Text(duration, width=90),
                        ft.TextButton(
                            "Resume",
                            icon=ft.Icons.PLAY_ARROW,
                            disabled=e.is_running,
                            on_click=lambda _, eid=e.id: self.page.run_task(self.on_resume, eid),
                        ),
                        ft.IconButton(
                            icon=ft.Icons.DELETE,
                            tooltip="Delete entry",
                            on_click=lambda _, eid=e.id: self.page.run_task(self.on_delete_entry, eid),
                        ),
                    ],
                    spacing=8,
                )
            )
        self.recent_column.controls = rows or [ft.Text("No time recorded yet.", size=14)]

    def _refresh_manage(self) -> None:
        project_rows: list[ft.Control] = []
        for p in self.db.get_projects():
            project_rows.append(
                ft.Row(
                    [
                        ft.TextField(
                            value=p.name,
                            width=200,
                            on_blur=lambda ev, pid=p.id, old=p.name: self._on_project_rename(pid, old, ev.control.value),
                        ),
                        ft.Text(p.client.name if p.client else "No client", width=160),
                        ft.Checkbox(
                            label="Active",
                            value=bool(p.is_active),
                            on_change=lambda ev, pid=p.id: self._on_project_active(pid, bool(ev.control.value)),
                        ),
                        ft.IconButton(
                            icon=ft.Icons.DELETE,
                            tooltip="Delete project and its time",
                            on_click=lambda _, pid=p.id: self._on_project_delete(pid),
                        ),
                    ]
                )
            )
        self.projects_column.controls = project_rows or [ft.Text("No projects yet.", size=14)]
        client_rows: list[ft.Control] = []
        for c in self.db.get_clients():
            client_rows.append(
                ft.Row(
                    [
                        ft.TextField(
                            value=c.name,
                            width=200,
                            on_blur=lambda ev, cid=c.id, old=c.name: self._on_client_rename(cid, old, ev.control.value),
                        ),
                        ft.Text(c.email or "", width=160),
                        ft.IconButton(
                            icon=ft.Icons.DELETE,
                            tooltip="Delete client (projects are kept)",
                            on_click=lambda _, cid=c.id: self._on_client_delete(cid),
                        ),
                    ]
                )
            )
        self.clients_column.controls = client_rows or [ft.Text("No clients yet.", size=14)]

    def _refresh_report(self) -> None:
        until = utc_now()
        report = self.db.get_time_report(until - timedelta(days=REPORT_DAYS), until)
        lines: list[ft.Control] = [
            ft.Text(
                f"Last {REPORT_DAYS} days · Total {format_elapsed(report['total_seconds'])} · {format_eur(report['earnings'])}",
                size=14,
                weight=ft.FontWeight.W_500,
            )
        ]
        for path, seconds in sorted(report["by_project"].items(), key=lambda item: -item[1]):
            lines.append(ft.Text(f"{path}: {format_elapsed(seconds)}", size=12))
        self.report_column.controls = lines

    def _refresh_activity(self) -> None:
        logs = self.db.get_activity_logs(self.activity_filter.value or "all", limit=30)
        self.activity_column.controls = [
            ft.Text(f"{a.created_at.strftime(DATETIME_FMT)}  {a.action.replace('_', ' ')}  {a.details or ''}", size=12)
            for a in logs
        ] or [ft.Text("No activity.", size=12)]
        self.page.update()

    def _refresh_lists(self) -> None:
        self._refresh_recent()
        self._refresh_report()
        self._refresh_activity()

    def _refresh_all(self) -> None:
        self._refresh_projects()
        self._refresh_manage()
        self._refresh_lists()

    # --- Handlers ---

    async def on_start(self, _=None) -> None:
        if not self.project_dd.value:
            self._toast("Select a project.")
            return
        ok = await self.timer.start(int(self.project_dd.value), (self.description_tf.value or "").strip())
        if not ok:
            self._toast(self._failure_text("start"))
        self._refresh_lists()

    async def on_stop(self, _=None) -> None:
        if not self.timer.is_running:
            return
        if not await self.timer.stop():
            self._toast(self._failure_text("stop"))
        self._refresh_lists()

    async def on_pause(self, _=None) -> None:
        if not self.timer.is_running:
            return
        if not await self.timer.pause():
            self._toast(self._failure_text("pause"))
        self._refresh_lists()

    async def on_resume(self, entry_id: int) -> None:
        if not await self.timer.resume(entry_id):
            self._toast(self._failure_text("resume"))
        self._refresh_lists()

    async def on_add_project(self, _=None) -> None:
        name = (self.new_project_tf.value or "").strip()
        client_name = (self.new_client_tf.value or "").strip()
        if not name:
            self._toast("Enter a project name.")
            return
        try:
            client_id = None
            if client_name:
                clients = {c.name: c.id for c in self.db.get_clients()}
                client_id = clients.get(client_name)
                if client_id is None:
                    client_id = self.db.add_client(client_name).id
            project = self.db.add_project(name, client_id)
        except STORE_ERRORS as err:
            log.warning("Could not add project %r: %s", name, err)
            self._toast(f"Could not add project: {err}")
            return
        self.new_project_tf.value = ""
        self._refresh_all()
        self.project_dd.value = str(project.id)
        self.page.update()

    # Time entries: a change to the entry the timer holds is picked up by refresh().

    async def _edit_entry(self, entry_id: int, **fields) -> None:
        try:
            self.db.edit_time_entry(entry_id, **fields)
        except STORE_ERRORS as err:
            self._toast(str(err))
        else:
            self._toast("Entry updated.")
        await self._sync_timer(entry_id)

    async def _sync_timer(self, entry_id: int) -> None:
        active = self.timer.active_entry
        if active is not None and active.id == entry_id and not await self.timer.refresh():
            self._toast("Could not reload the running timer.")
        self._refresh_lists()

    def _on_description_blur(self, entry_id: int, old: str, value: str) -> None:
        value = (value or "").strip()
        if value != old:
            self.page.run_task(self._edit_entry, entry_id, description=value)

    def _on_time_blur(self, entry_id: int, field: str, old: str, value: str) -> None:
        value = (value or "").strip()
        if value == old or (not value and field == "ended_at"):
            return
        when = parse_datetime(value)
        if when is None:
            self._toast("Use YYYY-MM-DD HH:MM (UTC).")
            return
        self.page.run_task(self._edit_entry, entry_id, **{field: when})

    async def on_delete_entry(self, entry_id: int) -> None:
        try:
            self.db.delete_time_entry(entry_id)
        except STORE_ERRORS as err:
            self._toast(str(err))
        await self._sync_timer(entry_id)

    # Projects and clients

    def _manage(self, action: Callable[[], object], done: str) -> None:
        try:
            action()
        except STORE_ERRORS as err:
            self._toast(str(err))
        else:
            self._toast(done)
        self._refresh_all()

    def _on_project_rename(self, project_id: int, old: str, value: str) -> None:
        value = (value or "").strip()
        if value != old:
            self._manage(lambda: self.db.update_project(project_id, name=value), "Project renamed.")

    def _on_project_active(self, project_id: int, is_active: bool) -> None:
        self._manage(
            lambda: self.db.set_project_active(project_id, is_active),
            "Project activated." if is_active else "Project deactivated.",
        )

    def _on_project_delete(self, project_id: int) -> None:
        self._manage(lambda: self.db.delete_project(project_id), "Project deleted.")

    def _on_client_rename(self, client_id: int, old: str, value: str) -> None:
        value = (value or "").strip()
        if value != old:
            self._manage(lambda: self.db.update_client(client_id, name=value), "Client renamed.")

    def _on_client_delete(self, client_id: int) -> None:
        self._manage(lambda: self.db.delete_client(client_id), "Client deleted.")

    # --- Lifecycle ---

    async def start_session(self) -> None:
        """Subscribe the view and adopt any entry left running (reload / other device)."""
        self._unsubscribe = self.timer.subscribe(self._on_snapshot)
        if not await self.timer.refresh():
            self._toast("Could not load the running timer.")
        self._refresh_lists()

    def end_session(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.timer.reset()

    def build(self, username: str, on_sign_out: Callable[[], None]) -> ft.Control:
        self._refresh_projects()
        self._refresh_manage()

        def _sign_out(_):
            self.end_session()
            on_sign_out()

        top_bar = ft.Row(
            [
                ft.Text(f"Timetrack {__version__}", size=20, weight=ft.FontWeight.BOLD),
                ft.Text(f"Signed in as {username}", size=14),
                ft.TextButton("Sign out", icon=ft.Icons.LOGOUT, on_click=_sign_out),
            ],
            alignment=ft.MainAxisAlignment.SPACE_BETWEEN,
        )
        return ft.Column(
            [
                top_bar,
                ft.Divider(),
                ft.Row(
                    [
                        self.new_project_tf,
                        self.new_client_tf,
                        ft.ElevatedButton("Add project", icon=ft.Icons.ADD, on_click=self.on_add_project),
                    ]
                ),
                self.project_dd,
                self.description_tf,
                self.elapsed_label,
                self.running_label,
                ft.Row(
                    [
                        ft.ElevatedButton("Start", icon=ft.Icons.PLAY_ARROW, on_click=self.on_start),
                        ft.OutlinedButton("Pause", icon=ft.Icons.PAUSE, on_click=self.on_pause),
                        ft.OutlinedButton("Stop", icon=ft.Icons.STOP, on_click=self.on_stop),
                    ],
                    spacing=12,
                ),
                ft.Divider(),
                ft.Text("Recent entries", size=16, weight=ft.FontWeight.W_500),
                self.recent_column,
                ft.Divider(),
                ft.Text("Report", size=16, weight=ft.FontWeight.W_500),
                self.report_column,
                ft.Divider(),
                ft.Text("Projects", size=16, weight=ft.FontWeight.W_500),
                self.projects_column,
                ft.Text("Clients", size=16, weight=ft.FontWeight.W_500),
                self.clients_column,
                ft.Divider(),
                ft.Row([ft.Text("Activity", size=16, weight=ft.FontWeight.W_500), self.activity_filter]),
                self.activity_column,
            ],
            scroll=ft.ScrollMode.AUTO,
            expand=True,
        )


def _build_sign_in_view(
    page: ft.Page,
    login_db: DatabaseManager,
    on_success: Callable[[int, str], None],
) -> ft.Control:
    """Username form. Unknown usernames are created."""
    username_field = ft.TextField(label="Username", autofocus=True, width=300)
    error_text = ft.Text("", color=ft.Colors.RED, visible=False)

    def _do_sign_in(_):
        username = (username_field.value or "").strip()
        if not username:
            error_text.value = "Enter a username."
            error_text.visible = True
            page.update()
            return
        try:
            user = login_db.get_user_by_username(username)
            if user is None:
                user = login_db.create_user(username)
                log.info("Created user %s", username)
        except STORE_ERRORS as err:
            log.exception("Sign-in failed for %s", username)
            error_text.value = str(err)
            error_text.visible = True
            page.update()
            return
        on_success(user.id, user.username)

    username_field.on_submit = _do_sign_in
    return ft.Column(
        [
            ft.Text("Timetrack", size=28, weight=ft.FontWeight.BOLD),
            ft.Container(height=24),
            username_field,
            ft.Container(height=12),
            error_text,
            ft.ElevatedButton("Sign in", on_click=_do_sign_in),
        ],
        horizontal_alignment=ft.CrossAxisAlignment.CENTER,
        alignment=ft.MainAxisAlignment.CENTER,
        expand=True,
    )


async def main(page: ft.Page) -> None:
    settings = Settings.from_env()
    get_logger(level=settings.log_level, log_dir=settings.log_dir, console=True)
    login_db = DatabaseManager(database_url=settings.database_url)
    login_db.init_db()
    page.title = "Timetrack"

    async def go_main(user_id: int, username: str) -> None:
        page.controls.clear()
        db = DatabaseManager(engine=login_db.engine, current_user_id=user_id)
        app = TimetrackApp(page, db, settings)
        page.add(ft.SafeArea(ft.Container(app.build(username, show_sign_in), expand=True)))
        page.update()
        await app.start_session()
        log.info("Signed in as %s", username)

    def on_sign_in(uid: int, uname: str) -> None:
        page.run_task(go_main, uid, uname)

    def show_sign_in() -> None:
        page.controls.clear()
        page.add(ft.SafeArea(ft.Container(_build_sign_in_view(page, login_db, on_sign_in), expand=True)))
        page.update()

    show_sign_in()


if __name__ == "__main__":
    ft.run(main)
