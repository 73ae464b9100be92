"""Key/value settings rows shared with the rest of the application."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from jobtracker.db.types import UTCDateTime, utcnow


class UserSetting(SQLModel, table=True):
    """A JSON-encoded value stored under a unique key and a category."""

    __tablename__ = "user_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(unique=True, index=True)
    value: str  # JSON string
    category: str = Field(default="general")
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
