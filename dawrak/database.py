from contextlib import contextmanager
import logging
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlmodel import Session, SQLModel, create_engine

from .config import DATABASE_ECHO, DATABASE_URL, SQLITE_BUSY_TIMEOUT


logger = logging.getLogger(__name__)

# Columns added after the first deployments, per table, with the DDL used to
# bring an older table up to date.
COLUMN_MIGRATIONS = {
    "queue": {
        "is_paused": "ALTER TABLE queue ADD COLUMN is_paused BOOLEAN NOT NULL DEFAULT 0",
        "last_called_at": "ALTER TABLE queue ADD COLUMN last_called_at DATETIME",
        "epoch": "ALTER TABLE queue ADD COLUMN epoch INTEGER NOT NULL DEFAULT 1",
        "reset_at": "ALTER TABLE queue ADD COLUMN reset_at DATETIME",
    },
    "ticket": {
        "claim_token": "ALTER TABLE ticket ADD COLUMN claim_token VARCHAR(32)",
    },
}


def build_engine(database_url: str = DATABASE_URL, echo: bool = DATABASE_ECHO) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
    )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record) -> None:
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn) -> None:
        # Take the write lock up front so concurrent writers queue on the busy
        # timeout instead of failing on a shared-to-reserved lock upgrade.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine()


def migrate_tables(target: Engine) -> None:
    if target.dialect.name != "sqlite":
        return
    with target.begin() as conn:
        for table, migrations in COLUMN_MIGRATIONS.items():
            columns = {
                row[1]
                for row in conn.exec_driver_sql(f"PRAGMA table_info({table})")
            }
            for column, ddl in migrations.items():
                if column not in columns:
                    logger.info("Adding column %s.%s", table, column)
                    conn.exec_driver_sql(ddl)


def init_db(target: Optional[Engine] = None) -> None:
    target = target or engine
    SQLModel.metadata.create_all(target)
    migrate_tables(target)


@contextmanager
def get_session(target: Optional[Engine] = None) -> Iterator[Session]:
    with Session(target or engine) as session:
        yield session
