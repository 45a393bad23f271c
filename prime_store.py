import logging
import os
import sqlite3

from prime_ports import AllocationRecord, MembershipRecord

logger = logging.getLogger("primebot.store")


# =========================
# DATABASE HELPERS
# =========================
def _apply_sqlite_pragmas(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")  # ms


class SqliteMembershipStore:
    """MembershipStore backed by a single SQLite file.

    Connections are opened per call; the caller is expected to hold
    PrimeContext.write_lock around any read-modify-write sequence.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        _apply_sqlite_pragmas(conn)
        return conn

    def init_db(self):
        with self._connect() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS members (
                userId TEXT PRIMARY KEY,
                expiry INTEGER NOT NULL,
                warned INTEGER NOT NULL DEFAULT 0
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS allocations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                year INTEGER NOT NULL,
                month INTEGER NOT NULL,                   -- 1-12
                amount INTEGER NOT NULL
            );
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_allocations_ym ON allocations(year, month);")
        logger.info("store_initialized path=%s", self.db_path)

    # ---- members ----
    def get(self, user_id: str) -> MembershipRecord | None:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT userId, expiry, warned FROM members WHERE userId=?
            """, (user_id,)).fetchone()
        return _member_from_row(row) if row else None

    def upsert(self, record: MembershipRecord):
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO members(userId, expiry, warned) VALUES(?, ?, ?)
                ON CONFLICT(userId) DO UPDATE SET expiry=excluded.expiry, warned=excluded.warned
            """, (record.user_id, int(record.expiry_at), 1 if record.warned else 0))

    def delete(self, user_id: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM members WHERE userId=?", (user_id,))

    def list_all(self) -> list[MembershipRecord]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT userId, expiry, warned FROM members ORDER BY expiry ASC
            """).fetchall()
        return [_member_from_row(r) for r in rows]

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM members").fetchone()
        return int(row["n"])

    # ---- allocations ----
    def insert_allocation(self, allocation: AllocationRecord):
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT INTO allocations(year, month, amount) VALUES(?, ?, ?)
            """, (allocation.year, allocation.month, allocation.amount))
            allocation.id = int(cur.lastrowid)

    def query_allocations(
        self,
        start: tuple[int, int] | None = None,
        end: tuple[int, int] | None = None,
    ) -> list[AllocationRecord]:
        """Allocations with start <= (year, month) <= end; either bound may be open."""
        clauses: list[str] = []
        params: list[int] = []
        if start is not None:
            clauses.append("(year > ? OR (year = ? AND month >= ?))")
            params.extend([start[0], start[0], start[1]])
        if end is not None:
            clauses.append("(year < ? OR (year = ? AND month <= ?))")
            params.extend([end[0], end[0], end[1]])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT id, year, month, amount FROM allocations
                {where}
                ORDER BY year ASC, month ASC, id ASC
            """, params).fetchall()
        return [
            AllocationRecord(year=int(r["year"]), month=int(r["month"]), amount=int(r["amount"]), id=int(r["id"]))
            for r in rows
        ]


def _member_from_row(row: sqlite3.Row) -> MembershipRecord:
    return MembershipRecord(
        user_id=str(row["userId"]),
        expiry_at=int(row["expiry"]),
        warned=bool(row["warned"]),
    )
