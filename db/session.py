from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Connects app to PostgreSQL database


def resolve_database_url(database_url: Optional[str] = None) -> str:
    # An explicit DATABASE_URL wins (tests point this at SQLite)
    if database_url:
        return database_url

    # Get database connection details from environment variables
    db_host = os.getenv("DB_HOST")
    db_port = os.getenv("DB_PORT", "5432")  # Default PostgreSQL port
    db_name = os.getenv("DB_NAME")
    db_user = os.getenv("DB_USER")
    db_password = os.getenv("DB_PASSWORD")
    instance_connection_name = os.getenv("INSTANCE_CONNECTION_NAME") # For Cloud SQL Proxy

    # If INSTANCE_CONNECTION_NAME is set, DB_HOST is not required for connection string
    required_vars_for_tcp = ["DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"]
    required_vars_for_socket = ["DB_NAME", "DB_USER", "DB_PASSWORD", "INSTANCE_CONNECTION_NAME"]

    if instance_connection_name:
        missing_vars = [var for var in required_vars_for_socket if not os.getenv(var)]
        if missing_vars:
            raise ValueError(f"Missing required environment variables for Cloud SQL (socket): {', '.join(missing_vars)}")
        # Construct PostgreSQL connection URL for Cloud SQL (Unix socket)
        return f"postgresql+psycopg2://{db_user}:{db_password}@/{db_name}?host=/cloudsql/{instance_connection_name}"

    missing_vars = [var for var in required_vars_for_tcp if not os.getenv(var)]
    if missing_vars:
        raise ValueError(f"Missing required environment variables for TCP: {', '.join(missing_vars)}")
    # Construct PostgreSQL connection URL for TCP (e.g., local development)
    return f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"


def create_db_engine(database_url: Optional[str] = None, store_timeout_seconds: float = 5.0) -> Engine:
    url = resolve_database_url(database_url)

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": store_timeout_seconds},
        )

        # SQLite leaves foreign keys off unless asked per connection
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    # The Wire / Link That Lets Us Pass Data from App -> db
    # Note: echo=True will log all SQL statements, set to False in production
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=store_timeout_seconds,
        connect_args={"connect_timeout": max(1, int(store_timeout_seconds))},
    )


# When We Start, Create the DB Tables if they don't exist
def init_db(engine: Engine) -> None:
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)
