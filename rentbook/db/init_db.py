import logging

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from rentbook.db.base import Base
from rentbook.db.session import Database

logger = logging.getLogger(__name__)


def create_database(database: Database) -> None:
    """Create the PostgreSQL database named in the URL if it doesn't exist."""
    url = database.url
    if database.is_sqlite or not url.database:
        return

    con = psycopg2.connect(
        user=url.username,
        password=url.password,
        host=url.host or "localhost",
        port=url.port or 5432,
        dbname="postgres",
    )
    try:
        con.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cur = con.cursor()
        cur.execute("SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s", (url.database,))
        if cur.fetchone():
            logger.info("Database %s already exists.", url.database)
        else:
            logger.info("Database %s does not exist. Creating...", url.database)
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(url.database)))
            logger.info("Database %s created successfully.", url.database)
        cur.close()
    finally:
        con.close()


def init_db(database: Database) -> None:
    """Create the database (PostgreSQL only) and every table."""
    create_database(database)
    Base.metadata.create_all(bind=database.engine)
    logger.info("Schema ready on %s.", database.url.render_as_string(hide_password=True))
