"""SQLite persistence: the peers table, migrations and the PeerStore."""

import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from hubmap.errors import PersistenceError
from hubmap.models import Endpoint, GeoData, HubInfo, PeerRecord

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS peers (
    network           TEXT NOT NULL,
    address           TEXT NOT NULL,
    last_seen         TEXT,
    gossip_address    TEXT,
    gossip_family     INTEGER,
    gossip_port       INTEGER,
    gossip_dns_name   TEXT,
    rpc_address       TEXT,
    rpc_family        INTEGER,
    rpc_port          INTEGER,
    rpc_dns_name      TEXT,
    count             INTEGER,
    hub_version       TEXT,
    app_version       TEXT,
    peer_timestamp    TEXT,
    country           TEXT,
    country_code      TEXT,
    region            TEXT,
    region_name       TEXT,
    city              TEXT,
    zip               TEXT,
    latitude          REAL,
    longitude         REAL,
    hosting           INTEGER,
    org               TEXT,
    geo_fetched_at    TEXT,
    version           TEXT,
    is_syncing        INTEGER,
    nickname          TEXT,
    root_hash         TEXT,
    num_messages      INTEGER,
    num_fid_events    INTEGER,
    num_fname_events  INTEGER,
    peer_id           TEXT,
    hub_operator_fid  INTEGER,
    latency           INTEGER,
    info_fetched_at   TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    PRIMARY KEY (network, address)
);

CREATE INDEX IF NOT EXISTS peers_geo_fetched_at ON peers (geo_fetched_at);
CREATE INDEX IF NOT EXISTS peers_info_fetched_at ON peers (info_fetched_at);
"""

# Columns refreshed by every ingestion; everything else survives an upsert.
_INGEST_COLUMNS = (
    "last_seen",
    "gossip_address",
    "gossip_family",
    "gossip_port",
    "gossip_dns_name",
    "rpc_address",
    "rpc_family",
    "rpc_port",
    "rpc_dns_name",
    "peer_timestamp",
    "hub_version",
    "app_version",
    "count",
)

_GEO_COLUMNS = (
    "country",
    "country_code",
    "region",
    "region_name",
    "city",
    "zip",
    "latitude",
    "longitude",
    "hosting",
    "org",
)

_INFO_COLUMNS = (
    "version",
    "is_syncing",
    "nickname",
    "root_hash",
    "num_messages",
    "num_fid_events",
    "num_fname_events",
    "peer_id",
    "hub_operator_fid",
    "latency",
)

_FETCHED_AT_COLUMNS = ("geo_fetched_at", "info_fetched_at")

_UPDATABLE_COLUMNS = frozenset(
    _INGEST_COLUMNS + _GEO_COLUMNS + _INFO_COLUMNS + _FETCHED_AT_COLUMNS
)


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database.

    Returns:
        An open ``sqlite3.Connection`` in WAL journal mode with
        ``sqlite3.Row`` rows.
    """
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    # Connections stay thread-confined; PeerStore.close may run on another thread.
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 30000")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


class PeerStore:
    """Thread-safe access to the ``peers`` table.

    Each thread gets its own connection, so the three pipelines never
    share a connection or a lock.  Every write is a single statement
    committed on its own: a row is updated atomically and a failure on one
    row never rolls back another.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        # Migrate eagerly so schema errors surface at startup.
        self._conn()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = init_db(self.db_path)
            except sqlite3.Error as exc:
                raise PersistenceError(
                    f"Cannot open peer store {self.db_path}: {exc}"
                ) from exc
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_peer(self, record: PeerRecord) -> None:
        """Insert *record*, or refresh its ingestion fields if the key exists.

        Only the discovery columns (last seen, endpoints, versions, count,
        peer timestamp) and ``updated_at`` change on conflict.  Enrichment
        groups and ``created_at`` are left alone.

        Raises:
            PersistenceError: If the statement fails.
        """
        now = _to_db(datetime.now(UTC))
        values = _ingest_values(record)
        columns = ("network", "address", *_INGEST_COLUMNS, "created_at", "updated_at")
        params = (record.network, record.address, *values, now, now)
        assignments = ",\n            ".join(
            f"{col} = excluded.{col}" for col in (*_INGEST_COLUMNS, "updated_at")
        )
        sql = (
            f"INSERT INTO peers ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})\n"
            f"        ON CONFLICT (network, address) DO UPDATE SET\n"
            f"            {assignments}"
        )
        self._execute_write(sql, params, "upsert", record.key)

    def update_fields(self, key: tuple[str, str], fields: dict) -> bool:
        """Update only the non-``None`` entries of *fields* on the row *key*.

        Args:
            key: ``(network, address)`` of the row.
            fields: Column name to value.  ``None`` values are skipped so
                the stored value is preserved.

        Returns:
            ``True`` if a row with *key* exists.

        Raises:
            ValueError: If *fields* names a column that cannot be updated.
            PersistenceError: If the statement fails.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")

        present = {
            col: _to_db(value) for col, value in fields.items() if value is not None
        }
        if not present:
            return self.get_peer(key) is not None

        present["updated_at"] = _to_db(datetime.now(UTC))
        assignments = ", ".join(f"{col} = ?" for col in present)
        sql = f"UPDATE peers SET {assignments} WHERE network = ? AND address = ?"
        cursor = self._execute_write(sql, (*present.values(), *key), "update", key)
        return cursor.rowcount > 0

    def update_geo(
        self, key: tuple[str, str], geo: GeoData | None, fetched_at: datetime
    ) -> bool:
        """Write the geo group (if any) together with ``geo_fetched_at``."""
        fields: dict = {"geo_fetched_at": fetched_at}
        if geo is not None:
            fields.update({col: getattr(geo, col) for col in _GEO_COLUMNS})
        return self.update_fields(key, fields)

    def update_info(
        self, key: tuple[str, str], info: HubInfo | None, fetched_at: datetime
    ) -> bool:
        """Write the hub info group (if any) together with ``info_fetched_at``.

        A ``None`` ``hub_operator_fid`` is skipped, keeping the stored value.
        """
        fields: dict = {"info_fetched_at": fetched_at}
        if info is not None:
            fields.update({col: getattr(info, col) for col in _INFO_COLUMNS})
        return self.update_fields(key, fields)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_stale(
        self,
        fetched_column: str,
        max_age: timedelta,
        limit: int,
        now: datetime | None = None,
    ) -> list[PeerRecord]:
        """Return up to *limit* peers whose *fetched_column* is missing or old.

        Never-fetched rows come first, then the oldest attempts, then key
        order.  Rows stamped since the last call fall out of the selection,
        so repeated calls walk through the whole table.

        Args:
            fetched_column: ``"geo_fetched_at"`` or ``"info_fetched_at"``.
            max_age: Rows fetched longer ago than this are stale.
            limit: Maximum number of rows to return.
            now: Reference time (default: current UTC time).

        Raises:
            ValueError: If *fetched_column* is not a fetch timestamp column.
            PersistenceError: If the query fails.
        """
        if fetched_column not in _FETCHED_AT_COLUMNS:
            raise ValueError(f"Not a fetch timestamp column: {fetched_column!r}")

        cutoff = _to_db((now or datetime.now(UTC)) - max_age)
        sql = (
            f"SELECT * FROM peers "
            f"WHERE {fetched_column} IS NULL OR {fetched_column} < ? "
            f"ORDER BY {fetched_column} IS NOT NULL, {fetched_column}, "
            f"network, address LIMIT ?"
        )
        rows = self._query(sql, (cutoff, limit))
        return [_row_to_record(row) for row in rows]

    def get_peer(self, key: tuple[str, str]) -> PeerRecord | None:
        """Return the peer stored under *key*, or ``None``."""
        rows = self._query(
            "SELECT * FROM peers WHERE network = ? AND address = ?", key
        )
        return _row_to_record(rows[0]) if rows else None

    def list_peers(self, network: str | None = None) -> list[PeerRecord]:
        """Return all peers, optionally restricted to one network."""
        if network is None:
            rows = self._query("SELECT * FROM peers ORDER BY network, address", ())
        else:
            rows = self._query(
                "SELECT * FROM peers WHERE network = ? ORDER BY address",
                (network,),
            )
        return [_row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute_write(
        self, sql: str, params: tuple, operation: str, key: tuple[str, str]
    ) -> sqlite3.Cursor:
        conn = self._conn()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(
                f"{operation} failed for peer {key[0]}/{key[1]}: {exc}"
            ) from exc
        return cursor

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            return self._conn().execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"query failed: {exc}") from exc


def _ingest_values(record: PeerRecord) -> tuple:
    gossip = record.gossip
    rpc = record.rpc
    return (
        _to_db(record.last_seen),
        gossip.address if gossip else None,
        gossip.family if gossip else None,
        gossip.port if gossip else None,
        gossip.dns_name if gossip else None,
        rpc.address if rpc else None,
        rpc.family if rpc else None,
        rpc.port if rpc else None,
        rpc.dns_name if rpc else None,
        _to_db(record.peer_timestamp),
        record.hub_version,
        record.app_version,
        record.count,
    )


def _to_db(value: object) -> object:
    """Convert Python values to their SQLite representation."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    if isinstance(value, bool):
        return int(value)
    return value


def _from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> PeerRecord:
    """Build a ``PeerRecord`` from a ``peers`` row."""
    gossip = None
    if row["gossip_address"] is not None:
        gossip = Endpoint(
            address=row["gossip_address"],
            family=row["gossip_family"] or 0,
            port=row["gossip_port"] or 0,
            dns_name=row["gossip_dns_name"] or "",
        )
    rpc = None
    if row["rpc_address"] is not None:
        rpc = Endpoint(
            address=row["rpc_address"],
            family=row["rpc_family"] or 0,
            port=row["rpc_port"] or 0,
            dns_name=row["rpc_dns_name"] or "",
        )

    geo = None
    if row["latitude"] is not None:
        geo = GeoData(
            **{col: row[col] for col in _GEO_COLUMNS if col != "hosting"},
            hosting=bool(row["hosting"]),
        )

    info = None
    if row["version"] is not None:
        info = HubInfo(
            **{col: row[col] for col in _INFO_COLUMNS if col != "is_syncing"},
            is_syncing=bool(row["is_syncing"]),
        )

    return PeerRecord(
        network=row["network"],
        address=row["address"],
        last_seen=_from_db_time(row["last_seen"]),
        gossip=gossip,
        rpc=rpc,
        count=row["count"],
        hub_version=row["hub_version"],
        app_version=row["app_version"],
        peer_timestamp=_from_db_time(row["peer_timestamp"]),
        geo=geo,
        geo_fetched_at=_from_db_time(row["geo_fetched_at"]),
        info=info,
        info_fetched_at=_from_db_time(row["info_fetched_at"]),
        created_at=_from_db_time(row["created_at"]),
        updated_at=_from_db_time(row["updated_at"]),
    )


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
