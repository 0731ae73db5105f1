# chatrelay/core/database.py

from sqlmodel import SQLModel, create_engine


def make_engine(url: str, **kwargs):
    """Create an engine, adding the SQLite threading flag when needed."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)


def init_db(engine) -> None:
    """Initialize the database, creating all tables."""
    # Register the table classes on SQLModel.metadata
    import chatrelay.models  # noqa: F401
    import chatrelay.data_schemas  # noqa: F401

    SQLModel.metadata.create_all(engine)
