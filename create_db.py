import logging
import os

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from sqlalchemy.engine import make_url
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def create_database(database_url):
    """Create the PostgreSQL database named in ``database_url`` if it is missing.

    Connects to the server's default ``postgres`` database to do so. Returns
    True when the database was created, False when it already existed.
    """
    url = make_url(database_url.replace('postgres://', 'postgresql://', 1))
    if not url.drivername.startswith('postgresql'):
        raise ValueError(f"Not a PostgreSQL URL: {url.drivername}")
    if not url.database:
        raise ValueError("DATABASE_URL does not name a database")

    conn = psycopg2.connect(
        dbname="postgres",
        user=url.username,
        password=url.password,
        host=url.host or "localhost",
        port=url.port or 5432,
    )
    try:
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cur = conn.cursor()
        try:
            cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (url.database,))
            if cur.fetchone():
                logger.info("Database '%s' already exists.", url.database)
                return False

            logger.info("Database does not exist. Creating...")
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(url.database)))
            logger.info("Database '%s' created successfully.", url.database)
            return True
        finally:
            cur.close()
    finally:
        conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    load_dotenv()
    create_database(os.environ["DATABASE_URL"])
