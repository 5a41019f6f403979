from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; all timestamps are stored as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    clients = relationship("Client", back_populates="owner")
    projects = relationship("Project", back_populates="owner")
    time_entries = relationship("TimeEntry", back_populates="owner")


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_client_owner_name"),)
    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    color = Column(String, default="#3B82F6", nullable=False)

    owner = relationship("User", back_populates="clients")
    projects = relationship("Project", back_populates="client")


class Project(Base):
    __tablename__ = "projects"
    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    color = Column(String, default="#3B82F6", nullable=False)
    hourly_rate = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    owner = relationship("User", back_populates="projects")
    client = relationship("Client", back_populates="projects")
    time_entries = relationship("TimeEntry", back_populates="project")

    def get_full_path(self) -> str:
        """'Client > Project', or just the project name when it has no client."""
        if self.client is None:
            return self.name
        return f"{self.client.name} > {self.name}"


class TimeEntry(Base):
    __tablename__ = "time_entries"
    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    description = Column(String, default="", nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, default=0, nullable=False)
    is_running = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = relationship("User", back_populates="time_entries")
    project = relationship("Project", back_populates="time_entries")


# The store's own guarantee: at most one running entry per owner.
Index(
    "uq_time_entries_one_running",
    TimeEntry.owner_id,
    unique=True,
    sqlite_where=TimeEntry.is_running == True,  # noqa: E712
    postgresql_where=TimeEntry.is_running == True,  # noqa: E712
)


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    details = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
