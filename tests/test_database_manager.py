"""
Pytest suite for database_manager.py.
Focus: project paths, owner-scoped filtering, client/project maintenance, time entry insert/update/edit/
delete, the store's one-running-entry guarantee, activity records, activity log filters and the time report.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from database_manager import DatabaseManager, to_naive_utc


# --- Users, clients, projects ---


class TestUsersAndProjects:
    def test_create_user_requires_name(self, db_no_user: DatabaseManager):
        with pytest.raises(ValueError, match="Username is required"):
            db_no_user.create_user("   ")

    def test_get_user_by_username(self, db_with_two_users):
        db, user1_id, _ = db_with_two_users
        user = db.get_user_by_username(" alice ")
        assert user is not None
        assert user.id == user1_id
        assert db.get_user_by_username("nobody") is None

    def test_operations_without_user_raise(self, db_no_user: DatabaseManager):
        with pytest.raises(ValueError, match="Current user is not set"):
            db_no_user.get_running_entry()

    def test_project_paths_include_client(self, db_user1: DatabaseManager):
        """Projects under a client read 'Client > Project'; others just their name."""
        client = db_user1.add_client("Acme")
        p1 = db_user1.add_project("Website", client.id)
        p2 = db_user1.add_project("Internal")
        paths = dict(db_user1.get_projects_with_full_paths())
        assert paths[p1.id] == "Acme > Website"
        assert paths[p2.id] == "Internal"

    def test_clients_are_owner_scoped(self, db_user1: DatabaseManager, db_user2: DatabaseManager):
        db_user1.add_client("Zeta")
        db_user1.add_client("Acme", email="billing@acme.test")
        db_user2.add_client("Other")
        assert [c.name for c in db_user1.get_clients()] == ["Acme", "Zeta"]
        assert [c.name for c in db_user2.get_clients()] == ["Other"]

    def test_inactive_projects_hidden_by_default(self, db_user1: DatabaseManager):
        db_user1.add_project("Old", is_active=False)
        db_user1.add_project("New")
        assert [p for _, p in db_user1.get_projects_with_full_paths()] == ["New"]
        assert [p for _, p in db_user1.get_projects_with_full_paths(active_only=False)] == ["New", "Old"]

    def test_project_under_other_users_client_rejected(self, db_user1: DatabaseManager, db_user2: DatabaseManager):
        client = db_user1.add_client("Acme")
        with pytest.raises(ValueError, match="Client not found"):
            db_user2.add_project("Sneaky", client.id)

    def test_managers_can_share_an_engine(self, db_with_two_users, db_user1: DatabaseManager):
        """One engine per app; each signed-in user gets a manager scoped to their id."""
        login_db, _, user2_id = db_with_two_users
        scoped = DatabaseManager(engine=login_db.engine, current_user_id=user2_id)
        assert scoped.engine is login_db.engine
        assert scoped.current_user_id == user2_id
        scoped.add_client("Shared")
        assert [c.name for c in scoped.get_clients()] == ["Shared"]
        assert db_user1.get_clients() == []

    def test_blank_names_rejected(self, db_user1: DatabaseManager):
        with pytest.raises(ValueError, match="Client name is required"):
            db_user1.add_client("  ")
        with pytest.raises(ValueError, match="Project name is required"):
            db_user1.add_project("")


# --- Client and project maintenance ---


class TestClientAndProjectMaintenance:
    def test_create_records_activity(self, db_user1: DatabaseManager, projects):
        clients = db_user1.get_activity_logs("clients")
        assert [(a.action, a.details) for a in clients] == [("created_client", {"clientName": "Acme"})]
        assert [a.details["projectName"] for a in db_user1.get_activity_logs("projects")] == ["Docs", "Website"]

    def test_update_client(self, db_user1: DatabaseManager, projects):
        client = db_user1.get_clients()[0]
        updated = db_user1.update_client(client.id, name=" Acme Corp ", email="ops@acme.test")
        assert updated.name == "Acme Corp"
        assert updated.email == "ops@acme.test"
        assert updated.color == client.color
        paths = [p for _, p in db_user1.get_projects_with_full_paths()]
        assert paths == ["Acme Corp > Docs", "Acme Corp > Website"]
        latest = db_user1.get_activity_logs("clients")[0]
        assert latest.action == "updated_client"
        assert latest.details == {"clientName": "Acme Corp"}

    def test_update_other_users_client_not_found(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        client = db_user1.get_clients()[0]
        with pytest.raises(ValueError, match="Client not found"):
            db_user2.update_client(client.id, name="Mine")
        with pytest.raises(ValueError, match="Client not found"):
            db_user2.delete_client(client.id)

    def test_delete_client_keeps_projects(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        client = db_user1.get_clients()[0]
        db_user1.delete_client(client.id)
        assert db_user1.get_clients() == []
        paths = dict(db_user1.get_projects_with_full_paths())
        assert paths[p1] == "Website"
        latest = db_user1.get_activity_logs("clients")[0]
        assert (latest.action, latest.entity_id) == ("deleted_client", str(client.id))

    def test_update_project(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        other = db_user1.add_client("Globex")
        project = db_user1.update_project(p1, name="Web shop", client_id=other.id, hourly_rate=80.0)
        assert project.get_full_path() == "Globex > Web shop"
        assert project.hourly_rate == 80.0
        latest = db_user1.get_activity_logs("projects")[0]
        assert latest.action == "updated_project"
        assert latest.details == {"projectName": "Web shop", "clientId": other.id}

    def test_update_project_rejects_bad_values(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        with pytest.raises(ValueError, match="Client not found"):
            db_user1.update_project(p1, client_id=9999)
        with pytest.raises(ValueError, match="non-negative"):
            db_user1.update_project(p1, hourly_rate=-1.0)
        with pytest.raises(ValueError, match="Project not found"):
            db_user1.update_project(9999, name="Ghost")

    def test_set_project_active(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        assert db_user1.set_project_active(p1, False).is_active is False
        assert p1 not in dict(db_user1.get_projects_with_full_paths())
        assert p1 in {p.id for p in db_user1.get_projects()}
        db_user1.set_project_active(p1, True)
        assert p1 in dict(db_user1.get_projects_with_full_paths())
        logs = db_user1.get_activity_logs("projects", limit=2)
        assert [(a.action, a.details["status"]) for a in logs] == [
            ("activated_project", "active"),
            ("deactivated_project", "inactive"),
        ]

    def test_delete_project_removes_its_entries(self, db_user1: DatabaseManager, projects):
        p1, p2 = projects
        start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        e = db_user1.insert_time_entry(p1, "gone", start)
        db_user1.update_time_entry(e.id, is_running=False, ended_at=start + timedelta(minutes=5), duration_seconds=300)
        kept = db_user1.insert_time_entry(p2, "kept", start + timedelta(hours=1))
        db_user1.delete_project(p1)
        assert [e.id for e in db_user1.get_recent_entries()] == [kept.id]
        assert p1 not in {p.id for p in db_user1.get_projects()}
        latest = db_user1.get_activity_logs("projects")[0]
        assert latest.action == "deleted_project"
        assert latest.details == {"projectName": "Website"}

    def test_delete_project_with_running_entry_refused(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        db_user1.insert_time_entry(p1)
        with pytest.raises(ValueError, match="Stop the running timer"):
            db_user1.delete_project(p1)
        assert db_user1.get_running_entry().project_id == p1


# --- Time entries ---


class TestTimeEntries:
    def test_insert_creates_running_entry_with_project(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        started = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        entry = db_user1.insert_time_entry(p1, "Work", started)
        assert entry.id is not None
        assert entry.is_running is True
        assert entry.ended_at is None
        assert entry.duration_seconds == 0
        assert entry.started_at == to_naive_utc(started)
        assert entry.project.name == "Website"
        assert entry.project.get_full_path() == "Acme > Website"

    def test_insert_on_other_users_project_rejected(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        p1, _ = projects
        with pytest.raises(ValueError, match="Project not found"):
            db_user2.insert_time_entry(p1)

    def test_second_running_entry_rejected_by_store(self, db_user1: DatabaseManager, projects):
        """The store itself allows at most one running entry per user."""
        p1, p2 = projects
        db_user1.insert_time_entry(p1)
        with pytest.raises(IntegrityError):
            db_user1.insert_time_entry(p2)

    def test_running_entries_of_different_users_allowed(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        p1, _ = projects
        other = db_user2.add_project("Theirs")
        db_user1.insert_time_entry(p1)
        db_user2.insert_time_entry(other.id)
        assert db_user1.get_running_entry().project_id == p1
        assert db_user2.get_running_entry().project_id == other.id

    def test_update_stops_entry(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        started = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        entry = db_user1.insert_time_entry(p1, None, started)
        ended = started + timedelta(seconds=125)
        stopped = db_user1.update_time_entry(entry.id, ended_at=ended, duration_seconds=125, is_running=False)
        assert stopped.is_running is False
        assert stopped.ended_at == to_naive_utc(ended)
        assert stopped.duration_seconds == 125
        assert stopped.description == ""
        assert db_user1.get_running_entry() is None

    def test_update_unknown_field_rejected(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        entry = db_user1.insert_time_entry(p1)
        with pytest.raises(ValueError, match="Unknown time entry field"):
            db_user1.update_time_entry(entry.id, owner_id=99)

    def test_update_require_stopped(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        entry = db_user1.insert_time_entry(p1)
        with pytest.raises(ValueError, match="already running"):
            db_user1.update_time_entry(entry.id, require_stopped=True, is_running=True)

    def test_update_other_users_entry_not_found(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        p1, _ = projects
        entry = db_user1.insert_time_entry(p1)
        with pytest.raises(ValueError, match="Time entry not found"):
            db_user2.update_time_entry(entry.id, is_running=False)

    def test_user_cannot_see_other_users_running_entry(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        p1, _ = projects
        db_user1.insert_time_entry(p1)
        assert db_user2.get_running_entry() is None

    def test_recent_entries_newest_first(self, db_user1: DatabaseManager, projects):
        p1, p2 = projects
        base = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        for i, project_id in enumerate((p1, p2, p1)):
            e = db_user1.insert_time_entry(project_id, f"e{i}", base + timedelta(hours=i))
            db_user1.update_time_entry(e.id, is_running=False, ended_at=base + timedelta(hours=i, minutes=30))
        recent = db_user1.get_recent_entries(limit=2)
        assert [e.description for e in recent] == ["e2", "e1"]
        assert recent[1].project.name == "Docs"

    def test_edit_stopped_entry_recomputes_duration(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        e = db_user1.insert_time_entry(p1, "draft", start)
        db_user1.update_time_entry(e.id, is_running=False, ended_at=start + timedelta(minutes=10), duration_seconds=600)
        edited = db_user1.edit_time_entry(
            e.id, description=" final ", started_at=start - timedelta(minutes=5), ended_at=start + timedelta(minutes=20, seconds=30.9)
        )
        assert edited.description == "final"
        assert edited.duration_seconds == 25 * 60 + 30
        assert edited.is_running is False
        latest = db_user1.get_activity_logs("time")[0]
        assert latest.action == "updated_time_entry"
        assert latest.details["projectName"] == "Website"
        assert latest.details["duration"] == 25 * 60 + 30
        assert latest.details["endTime"] == to_naive_utc(start + timedelta(minutes=20, seconds=30.9)).isoformat()

    def test_edit_end_time_stops_running_entry(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        e = db_user1.insert_time_entry(p1, None, start)
        edited = db_user1.edit_time_entry(e.id, ended_at=start + timedelta(hours=1))
        assert edited.is_running is False
        assert edited.duration_seconds == 3600
        assert db_user1.get_running_entry() is None

    def test_edit_description_of_running_entry_keeps_it_running(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        e = db_user1.insert_time_entry(p1)
        edited = db_user1.edit_time_entry(e.id, description="on call")
        assert edited.is_running is True
        assert edited.ended_at is None
        assert edited.duration_seconds == 0
        assert db_user1.get_activity_logs("time")[0].details["endTime"] is None

    def test_edit_end_before_start_rejected(self, db_user1: DatabaseManager, projects):
        p1, _ = projects
        start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        e = db_user1.insert_time_entry(p1, None, start)
        with pytest.raises(ValueError, match="End time must be after start time"):
            db_user1.edit_time_entry(e.id, ended_at=start - timedelta(seconds=1))
        assert db_user1.get_running_entry().id == e.id
        assert db_user1.get_activity_logs("time") == []

    def test_delete_time_entry(self, db_user1: DatabaseManager, db_user2: DatabaseManager, projects):
        p1, _ = projects
        e = db_user1.insert_time_entry(p1)
        with pytest.raises(ValueError, match="Time entry not found"):
            db_user2.delete_time_entry(e.id)
        db_user1.delete_time_entry(e.id)
        assert db_user1.get_recent_entries() == []
        assert db_user1.get_running_entry() is None
        latest = db_user1.get_activity_logs("time")[0]
        assert latest.action == "deleted_time_entry"
        assert latest.details == {"projectName": "Website", "duration": 0}


# --- Activity log ---


class TestActivityLog:
    def test_log_and_filter_by_category(self, db_user1: DatabaseManager):
        db_user1.log_activity("started_timer", "time_entry", 1, {"projectName": "Website"})
        db_user1.log_activity("created_project", "project", 7, {"name": "Docs"})
        db_user1.log_activity("created_client", "client", 3)
        assert len(db_user1.get_activity_logs()) == 3
        time_logs = db_user1.get_activity_logs("time")
        assert [a.action for a in time_logs] == ["started_timer"]
        assert time_logs[0].entity_id == "1"
        assert time_logs[0].details == {"projectName": "Website"}
        assert [a.action for a in db_user1.get_activity_logs("projects")] == ["created_project"]
        assert [a.action for a in db_user1.get_activity_logs("clients")] == ["created_client"]

    def test_unknown_category_rejected(self, db_user1: DatabaseManager):
        with pytest.raises(ValueError, match="Unknown activity category"):
            db_user1.get_activity_logs("boards")

    def test_activity_is_owner_scoped(self, db_user1: DatabaseManager, db_user2: DatabaseManager):
        db_user1.log_activity("stopped_timer", "time_entry", 1)
        assert db_user2.get_activity_logs() == []


# --- Report ---


class TestTimeReport:
    def test_totals_earnings_and_breakdowns(self, db_user1: DatabaseManager, projects):
        p1, p2 = projects
        day1 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        day2 = day1 + timedelta(days=1)
        for project_id, start, seconds in ((p1, day1, 3600), (p2, day1 + timedelta(hours=2), 1800), (p1, day2, 1800)):
            e = db_user1.insert_time_entry(project_id, None, start)
            db_user1.update_time_entry(
                e.id, is_running=False, ended_at=start + timedelta(seconds=seconds), duration_seconds=seconds
            )
        # A running entry is not counted.
        db_user1.insert_time_entry(p2, None, day2 + timedelta(hours=3))
        report = db_user1.get_time_report(day1, day2 + timedelta(days=1))
        assert report["total_seconds"] == 3600 + 1800 + 1800
        assert report["earnings"] == pytest.approx(90.0)
        assert report["by_project"] == {"Acme > Website": 5400, "Acme > Docs": 1800}
        assert report["by_day"] == {"2025-03-01": 5400, "2025-03-02": 1800}

    def test_report_for_one_project(self, db_user1: DatabaseManager, projects):
        p1, p2 = projects
        start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        e = db_user1.insert_time_entry(p2, None, start)
        db_user1.update_time_entry(e.id, is_running=False, ended_at=start, duration_seconds=60)
        report = db_user1.get_time_report(start, start + timedelta(days=1), project_id=p1)
        assert report["total_seconds"] == 0
        assert report["by_project"] == {}
