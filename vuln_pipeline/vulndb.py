# vuln_pipeline/vulndb.py
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from platformdirs import user_data_path

from .advisories import AdvisorySource, load_feed
from .ecosystems import canonical_ecosystem
from .exceptions import AdvisorySourceUnavailableError
from .models import Advisory

logger = logging.getLogger(__name__)

APP_NAME = "vulngate"
DB_FILENAME = "advisories.sqlite"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS advisories (
        advisory_id TEXT NOT NULL, ecosystem TEXT NOT NULL, package_name TEXT NOT NULL,
        severity TEXT NOT NULL, affected_range TEXT NOT NULL, fixed_version TEXT,
        title TEXT, aliases TEXT,
        PRIMARY KEY (advisory_id, ecosystem, package_name)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_advisory_lookup ON advisories (ecosystem, package_name)",
    """
    CREATE TABLE IF NOT EXISTS data_source_status (
        source_name TEXT PRIMARY KEY,     -- feed file name
        last_updated_utc TEXT NOT NULL    -- ISO 8601 timestamp string
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tracked_projects (
        project_id TEXT PRIMARY KEY,
        registered_utc TEXT NOT NULL
    )
    """,
)


def default_db_path() -> Path:
    """Cross-platform user data directory, e.g. ~/.local/share/vulngate/advisories.sqlite."""
    return user_data_path(appname=APP_NAME, appauthor=False) / DB_FILENAME


class LocalAdvisorySource(AdvisorySource):
    """
    Advisory cache in a local SQLite database. One connection is shared by all
    matcher threads; every statement runs under a lock.
    """

    name = "local"

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self._lock = threading.Lock()
        self._connection: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Establishes the SQLite connection and ensures tables exist."""
        if self._connection is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                connection = sqlite3.connect(self.db_path, check_same_thread=False)
                connection.row_factory = sqlite3.Row
                for statement in SCHEMA:
                    connection.execute(statement)
                connection.commit()
            except (sqlite3.Error, OSError) as e:
                raise AdvisorySourceUnavailableError(f"Could not open advisory database {self.db_path}: {e}") from e
            self._connection = connection
            logger.debug(f"Advisory database connection established to {self.db_path}")
        return self._connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *exc_info):
        self.close()

    def insert_advisory(self, ecosystem: str, package: str, advisory: Advisory) -> None:
        sql = """INSERT OR REPLACE INTO advisories (advisory_id, ecosystem, package_name, severity, affected_range,
                 fixed_version, title, aliases) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"""
        with self._lock:
            self.connect().execute(sql, (advisory.id, canonical_ecosystem(ecosystem), package.lower(), advisory.severity,
                                         advisory.affected_version_range, advisory.fixed_version, advisory.title,
                                         json.dumps(list(advisory.aliases))))

    def import_feed(self, feed_path: str | Path) -> int:
        """Loads a JSON/YAML advisory feed into the database. Returns the number of advisories stored."""
        entries = load_feed(feed_path)
        for ecosystem, package, advisory in entries:
            self.insert_advisory(ecosystem, package, advisory)
        source_name = Path(feed_path).name
        with self._lock:
            connection = self.connect()
            connection.execute("INSERT OR REPLACE INTO data_source_status (source_name, last_updated_utc) VALUES (?, ?)",
                               (source_name, datetime.now(timezone.utc).isoformat()))
            connection.commit()
        logger.info(f"Imported {len(entries)} advisories from {source_name}")
        return len(entries)

    def lookup(self, ecosystem: str, name: str) -> list[Advisory]:
        try:
            with self._lock:
                rows = self.connect().execute(
                    "SELECT advisory_id, severity, affected_range, fixed_version, title, aliases FROM advisories "
                    "WHERE ecosystem = ? AND package_name = ? ORDER BY advisory_id",
                    (canonical_ecosystem(ecosystem), name.lower())).fetchall()
        except sqlite3.Error as e:
            raise AdvisorySourceUnavailableError(f"Advisory database lookup failed for {ecosystem}/{name}: {e}") from e
        return [
            Advisory(id=row["advisory_id"], severity=row["severity"], affected_version_range=row["affected_range"],
                     fixed_version=row["fixed_version"], title=row["title"] or "",
                     aliases=tuple(json.loads(row["aliases"] or "[]")))
            for row in rows
        ]

    def register_for_tracking(self, project_identifier: str) -> None:
        try:
            with self._lock:
                connection = self.connect()
                connection.execute("INSERT OR REPLACE INTO tracked_projects (project_id, registered_utc) VALUES (?, ?)",
                                   (project_identifier, datetime.now(timezone.utc).isoformat()))
                connection.commit()
        except sqlite3.Error as e:
            raise AdvisorySourceUnavailableError(f"Could not register '{project_identifier}': {e}") from e
        logger.info(f"Project '{project_identifier}' registered for tracking in {self.db_path}")

    def tracked_projects(self) -> list[str]:
        with self._lock:
            rows = self.connect().execute("SELECT project_id FROM tracked_projects ORDER BY project_id").fetchall()
        return [row["project_id"] for row in rows]

    def status(self) -> dict:
        """Advisory count and per-feed last update timestamps."""
        with self._lock:
            connection = self.connect()
            count = connection.execute("SELECT COUNT(*) FROM advisories").fetchone()[0]
            feeds = {row["source_name"]: datetime.fromisoformat(row["last_updated_utc"])
                     for row in connection.execute("SELECT source_name, last_updated_utc FROM data_source_status")}
        return {"path": str(self.db_path), "advisories": count, "feeds": feeds}
