"""SQLModel engine construction for the local store."""
from sqlmodel import SQLModel, create_engine


def build_engine(database_url: str):
    """Create an engine for the given URL with every table and migration applied."""
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},  # SQLite only; shared with FastAPI threads
    )
    # Import all models so metadata is populated before create_all
    from jobtracker.models.outbox import OutboxItem  # noqa
    from jobtracker.models.records import Application, Company, Contact, Reminder  # noqa
    from jobtracker.models.settings import UserSetting  # noqa
    from jobtracker.models.sync import SyncLog  # noqa
    SQLModel.metadata.create_all(engine)
    from jobtracker.db.migrations import run_migrations
    run_migrations(engine)
    return engine
