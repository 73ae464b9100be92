"""
Local job-tracking tables that take part in cloud sync.

The CRUD services own these rows. The sync engine only ever writes the two
mapping columns (cloud_id, last_synced_at) and, during a pull, the fields
of rows it reconciles from the remote store.
"""
from datetime import date, datetime
from typing import Dict, Optional, Type

from sqlmodel import Field, SQLModel

from jobtracker.db.types import UTCDateTime, utcnow

# Columns maintained by the sync engine, never part of an outbox payload.
SYNC_COLUMNS = frozenset({"id", "cloud_id", "last_synced_at"})


class Company(SQLModel, table=True):
    __tablename__ = "companies"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    website: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    size: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    cloud_id: Optional[str] = Field(default=None, unique=True, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Contact(SQLModel, table=True):
    __tablename__ = "contacts"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: Optional[int] = Field(default=None, foreign_key="companies.id")
    first_name: str
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    position: Optional[str] = None
    linkedin_url: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    cloud_id: Optional[str] = Field(default=None, unique=True, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Application(SQLModel, table=True):
    """A job application, the central record of the tracker."""

    __tablename__ = "applications"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: Optional[int] = Field(default=None, foreign_key="companies.id")
    contact_id: Optional[int] = Field(default=None, foreign_key="contacts.id")
    title: str
    position: str
    job_url: Optional[str] = None
    application_channel: Optional[str] = None
    salary_range: Optional[str] = None
    work_type: Optional[str] = None  # "full-time", "part-time", "contract", ...
    location: Optional[str] = None
    remote_possible: bool = False
    status: str = "draft"  # "draft", "applied", "in-review", "interview", "offer", ...
    priority: int = 1  # 1..5
    application_date: Optional[date] = None
    deadline: Optional[date] = None
    follow_up_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    cloud_id: Optional[str] = Field(default=None, unique=True, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Reminder(SQLModel, table=True):
    __tablename__ = "reminders"

    id: Optional[int] = Field(default=None, primary_key=True)
    application_id: Optional[int] = Field(default=None, foreign_key="applications.id")
    title: str
    description: Optional[str] = None
    reminder_date: date
    reminder_type: Optional[str] = None  # "deadline", "follow_up", "interview", "custom"
    is_completed: bool = False
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    priority: int = 2
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    cloud_id: Optional[str] = Field(default=None, unique=True, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


# Pull order matters only for readability of logs; push order is outbox order.
SYNCABLE_MODELS: Dict[str, Type[SQLModel]] = {
    "applications": Application,
    "companies": Company,
    "contacts": Contact,
    "reminders": Reminder,
}

SYNCABLE_TABLES = tuple(SYNCABLE_MODELS)


def model_for_table(table: str) -> Type[SQLModel]:
    """Return the model class for a syncable table name.

    Raises:
        KeyError: if the table does not take part in sync.
    """
    return SYNCABLE_MODELS[table]


def payload_columns(table: str) -> frozenset:
    """Column names a payload for this table may carry."""
    return frozenset(model_for_table(table).model_fields) - SYNC_COLUMNS
