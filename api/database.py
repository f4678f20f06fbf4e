"""
Database module for the Listing Sync Engine.
Implements SQLite persistence of the listing catalog with async support.
"""

import json
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Iterable, Set
from pathlib import Path
from contextlib import asynccontextmanager

import aiosqlite

from core.models import Listing, ListingStatus, canonicalize_url, identity_key

# Extracted fields a listing row can carry besides identity and status
FIELD_COLUMNS = [
    "title",
    "brand",
    "model",
    "year",
    "price",
    "currency",
    "mileage",
    "city",
    "description",
    "images",
]

# SQLite caps the number of bound parameters per statement
_BULK_CHUNK = 500


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so string comparison matches time order."""
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class ListingStore:
    """Async SQLite store for catalog listings keyed by canonical URL."""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            from api.config import get_config
            db_path = get_config().DATABASE_PATH
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def get_db(self):
        """Get a database connection."""
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        try:
            yield db
        finally:
            await db.close()

    async def init(self):
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.get_db() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS listings (
                    url_key TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    source_tag TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_checked_at TEXT,
                    title TEXT,
                    brand TEXT,
                    model TEXT,
                    year INTEGER,
                    price REAL,
                    currency TEXT,
                    mileage INTEGER,
                    city TEXT,
                    description TEXT,
                    images TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_listings_source ON listings(source_tag)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_listings_status_checked ON listings(status, last_checked_at)")
            await db.commit()

    async def upsert(
        self,
        url: str,
        fields: Optional[Dict[str, Any]] = None,
        status: ListingStatus = ListingStatus.ACTIVE,
        last_checked_at: Optional[datetime] = None,
        source_tag: str = "unknown",
    ) -> str:
        """
        Insert or update a listing by URL identity.

        Status is overwritten. Extracted fields are overwritten only when a
        new value is supplied. ``last_checked_at`` never moves backwards.

        Returns:
            The canonical URL stored for the listing.
        """
        canonical = canonicalize_url(url)
        if not canonical:
            raise ValueError("Listing URL must not be empty")

        fields = dict(fields or {})
        unknown = set(fields) - set(FIELD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown listing fields: {sorted(unknown)}")
        if "images" in fields and fields["images"] is not None:
            fields["images"] = json.dumps(list(fields["images"]), ensure_ascii=False)

        now = _ts(datetime.now())
        values = [fields.get(column) for column in FIELD_COLUMNS]
        columns = ", ".join(FIELD_COLUMNS)
        placeholders = ", ".join("?" for _ in FIELD_COLUMNS)
        field_updates = ", ".join(
            f"{column} = COALESCE(excluded.{column}, listings.{column})" for column in FIELD_COLUMNS
        )

        async with self.get_db() as db:
            await db.execute(
                f"""
                INSERT INTO listings
                    (url_key, url, source_tag, status, last_checked_at, {columns}, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, {placeholders}, ?, ?)
                ON CONFLICT(url_key) DO UPDATE SET
                    url = excluded.url,
                    source_tag = excluded.source_tag,
                    status = excluded.status,
                    last_checked_at = CASE
                        WHEN excluded.last_checked_at IS NOT NULL
                             AND (listings.last_checked_at IS NULL
                                  OR excluded.last_checked_at > listings.last_checked_at)
                        THEN excluded.last_checked_at
                        ELSE listings.last_checked_at
                    END,
                    {field_updates},
                    updated_at = excluded.updated_at
                """,
                (
                    identity_key(canonical),
                    canonical,
                    source_tag,
                    ListingStatus(status).value,
                    _ts(last_checked_at),
                    *values,
                    now,
                    now,
                ),
            )
            await db.commit()
        return canonical

    async def set_status(self, url: str, status: ListingStatus, last_checked_at: datetime) -> bool:
        """Overwrite the status of one listing. Returns False if it is not in the catalog."""
        changed = await self.bulk_set_status([url], status, last_checked_at)
        return changed > 0

    async def bulk_set_status(
        self,
        identifiers: Iterable[str],
        status: ListingStatus,
        last_checked_at: datetime,
    ) -> int:
        """Set status for many listings at once. Returns the number of rows updated."""
        keys = sorted({identity_key(identifier) for identifier in identifiers if identifier})
        if not keys:
            return 0

        checked = _ts(last_checked_at)
        now = _ts(datetime.now())
        updated = 0

        async with self.get_db() as db:
            for start in range(0, len(keys), _BULK_CHUNK):
                chunk = keys[start:start + _BULK_CHUNK]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = await db.execute(
                    f"""
                    UPDATE listings SET
                        status = ?,
                        last_checked_at = CASE
                            WHEN last_checked_at IS NULL OR ? > last_checked_at THEN ?
                            ELSE last_checked_at
                        END,
                        updated_at = ?
                    WHERE url_key IN ({placeholders})
                    """,
                    (ListingStatus(status).value, checked, checked, now, *chunk),
                )
                updated += cursor.rowcount
            await db.commit()

        return updated

    async def find_identifiers(self, source_tag: str) -> Set[str]:
        """All stored listing URLs for a source."""
        async with self.get_db() as db:
            cursor = await db.execute(
                "SELECT url FROM listings WHERE source_tag = ?",
                (source_tag,),
            )
            rows = await cursor.fetchall()
        return {row["url"] for row in rows}

    async def get_listing(self, url: str) -> Optional[Listing]:
        async with self.get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM listings WHERE url_key = ?",
                (identity_key(url),),
            )
            row = await cursor.fetchone()
        return self._row_to_listing(row) if row else None

    async def find_due_for_check(
        self,
        days_old: int = 7,
        unknown_days: int = 3,
        check_all: bool = False,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> List[Listing]:
        """
        Listings whose status should be re-checked.

        Active listings are due after ``days_old`` days, unknown ones after
        ``unknown_days``. With ``check_all`` every listing older than
        ``days_old`` is due regardless of status. Never-checked listings
        come first.
        """
        now = now or datetime.now()
        threshold = _ts(now - timedelta(days=days_old))
        unknown_threshold = _ts(now - timedelta(days=unknown_days))

        if check_all:
            where = "last_checked_at IS NULL OR last_checked_at < ?"
            params: List[Any] = [threshold]
        else:
            where = (
                "(status = ? AND (last_checked_at IS NULL OR last_checked_at < ?))"
                " OR (status = ? AND (last_checked_at IS NULL OR last_checked_at < ?))"
            )
            params = [
                ListingStatus.ACTIVE.value, threshold,
                ListingStatus.UNKNOWN.value, unknown_threshold,
            ]

        async with self.get_db() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM listings
                WHERE {where}
                ORDER BY last_checked_at IS NOT NULL, last_checked_at ASC
                LIMIT ?
                """,
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_listing(row) for row in rows]

    async def count_by_status(self, source_tag: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in ListingStatus}
        query = "SELECT status, COUNT(*) AS n FROM listings"
        params: tuple = ()
        if source_tag:
            query += " WHERE source_tag = ?"
            params = (source_tag,)
        query += " GROUP BY status"

        async with self.get_db() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    @staticmethod
    def _row_to_listing(row: aiosqlite.Row) -> Listing:
        images = json.loads(row["images"]) if row["images"] else []
        return Listing(
            url=row["url"],
            source_tag=row["source_tag"],
            status=ListingStatus(row["status"]),
            last_checked_at=_parse_ts(row["last_checked_at"]),
            title=row["title"],
            brand=row["brand"],
            model=row["model"],
            year=row["year"],
            price=row["price"],
            currency=row["currency"],
            mileage=row["mileage"],
            city=row["city"],
            description=row["description"],
            images=images,
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

