# src/vulnscan_core/engine/db.py
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from vulnscan_core.engine.models import Base


def create_session_factory(database_url: str) -> sessionmaker:
    """Create the engine, make sure tables exist and return a session factory."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, connect_args=connect_args)

    if engine.dialect.name == "sqlite":
        # sqlite ignores ON DELETE CASCADE unless foreign keys are switched on
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
