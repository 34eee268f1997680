"""Persistence layer for locally-assigned player judgments."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from pymac.models import Verdict, parse_steam_id64


logger = logging.getLogger(__name__)

_DB_PATH_ENV = "PYMAC_DB_PATH"


class PersistenceError(RuntimeError):
    """Raised when a judgment could not be written to or read from storage."""


class StorageUnavailableError(PersistenceError):
    """Raised when the judgment database cannot be opened at all."""


@dataclass(frozen=True)
class VerdictEntry:
    steam_id64: int
    local_verdict: Verdict = Verdict.PLAYER
    convicted: bool = False
    tags: FrozenSet[str] = frozenset()
    custom_data: Dict[str, Any] = field(default_factory=dict)
    previous_names: tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_default(self) -> bool:
        return (
            self.local_verdict == Verdict.PLAYER
            and not self.convicted
            and not self.tags
            and not self.custom_data
        )


class VerdictStore:
    """SQLite-backed store of verdict, conviction and tags keyed by SteamID64.

    Every write is a single-row upsert committed in its own transaction, so a
    crash between two saves never damages entries written earlier.
    """

    def __init__(self, db_path: Path | str):
        env_db = os.getenv(_DB_PATH_ENV)
        self._use_uri = False
        if env_db:
            db_path = env_db
        if isinstance(db_path, str) and db_path.startswith("file:"):
            self.db_path: Path | str = db_path
            self._use_uri = True
        else:
            self.db_path = Path(db_path)
        self._ensure_schema()

    @classmethod
    def open(cls, db_path: Path | str) -> "VerdictStore":
        return cls(db_path)

    def _connect(self) -> sqlite3.Connection:
        try:
            if isinstance(self.db_path, Path):
                conn = sqlite3.connect(self.db_path)
            else:
                conn = sqlite3.connect(self.db_path, uri=self._use_uri)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open verdict database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                self._create_schema(conn)
        except (OSError, sqlite3.Error, PersistenceError) as exc:
            raise StorageUnavailableError(
                f"Verdict database {self.db_path} is not usable: {exc}"
            ) from exc

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS verdicts (
                steamid INTEGER PRIMARY KEY,
                verdict TEXT NOT NULL,
                convicted INTEGER NOT NULL DEFAULT 0,
                tags_json TEXT NOT NULL,
                custom_data_json TEXT NOT NULL,
                previous_names_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()

    def load(self) -> Dict[int, VerdictEntry]:
        """Return every stored judgment keyed by SteamID64."""

        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM verdicts").fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load verdicts: {exc}") from exc
        entries = {}
        for row in rows:
            entry = self._row_to_entry(row)
            entries[entry.steam_id64] = entry
        return entries

    def get(self, steam_id64: int) -> Optional[VerdictEntry]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM verdicts WHERE steamid = ?", (steam_id64,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read verdict for {steam_id64}: {exc}") from exc
        if row is None:
            return None
        return self._row_to_entry(row)

    def save(
        self,
        steam_id64: int,
        *,
        local_verdict: Verdict | str,
        convicted: bool,
        tags: Iterable[str],
        custom_data: Mapping[str, Any] | None = None,
        previous_names: Iterable[str] | None = None,
    ) -> VerdictEntry:
        """Persist one identity's judgment fields atomically."""

        verdict = Verdict.parse(local_verdict)
        now = datetime.now(timezone.utc).isoformat()
        tags_json = json.dumps(sorted(set(tags)))
        try:
            with self._connect() as conn:
                existing = conn.execute(
                    "SELECT custom_data_json, previous_names_json FROM verdicts WHERE steamid = ?",
                    (steam_id64,),
                ).fetchone()
                if custom_data is None:
                    custom_json = existing["custom_data_json"] if existing else "{}"
                else:
                    custom_json = json.dumps(dict(custom_data))
                if previous_names is None:
                    names_json = existing["previous_names_json"] if existing else "[]"
                else:
                    names_json = json.dumps(list(previous_names))
                conn.execute(
                    """
                    INSERT INTO verdicts (
                        steamid, verdict, convicted, tags_json, custom_data_json,
                        previous_names_json, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(steamid) DO UPDATE SET
                        verdict = excluded.verdict,
                        convicted = excluded.convicted,
                        tags_json = excluded.tags_json,
                        custom_data_json = excluded.custom_data_json,
                        previous_names_json = excluded.previous_names_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        steam_id64,
                        verdict.value,
                        int(bool(convicted)),
                        tags_json,
                        custom_json,
                        names_json,
                        now,
                        now,
                    ),
                )
                conn.commit()
        except (sqlite3.Error, PersistenceError) as exc:
            raise PersistenceError(f"Failed to save verdict for {steam_id64}: {exc}") from exc
        entry = self.get(steam_id64)
        if entry is None:  # pragma: no cover
            raise PersistenceError(f"Verdict for {steam_id64} not found after save")
        return entry

    def reset(self, steam_id64: int) -> VerdictEntry:
        """Restore the default judgment, keeping the identity's row and history."""

        return self.save(steam_id64, local_verdict=Verdict.PLAYER, convicted=False, tags=())

    def record_name(self, steam_id64: int, name: str) -> None:
        """Remember ``name`` in the identity's previous-names list, if it is tracked."""

        entry = self.get(steam_id64)
        if entry is None or name in entry.previous_names:
            return
        self.save(
            steam_id64,
            local_verdict=entry.local_verdict,
            convicted=entry.convicted,
            tags=entry.tags,
            previous_names=[*entry.previous_names, name],
        )

    def import_playerlist(self, path: Path) -> int:
        """Import a legacy ``playerlist.json``; returns the number of records imported.

        Existing entries are left untouched so an import never overrides newer
        judgments.
        """

        data = json.loads(path.read_text(encoding="utf-8"))
        records = data.get("records", {}) if isinstance(data, dict) else {}
        existing = self.load()
        imported = 0
        for raw_id, record in records.items():
            try:
                steam_id = parse_steam_id64(raw_id)
                verdict = Verdict.parse(record.get("verdict"))
            except (ValueError, AttributeError) as exc:
                logger.warning("Skipping playerlist entry %s: %s", raw_id, exc)
                continue
            if steam_id in existing:
                continue
            custom_data = record.get("custom_data")
            self.save(
                steam_id,
                local_verdict=verdict,
                convicted=False,
                tags=(),
                custom_data=custom_data if isinstance(custom_data, dict) else {},
                previous_names=[str(name) for name in record.get("previous_names") or []],
            )
            imported += 1
        logger.info("Imported %s/%s playerlist records from %s", imported, len(records), path)
        return imported

    def _row_to_entry(self, row: sqlite3.Row) -> VerdictEntry:
        custom_data = json.loads(row["custom_data_json"])
        return VerdictEntry(
            steam_id64=int(row["steamid"]),
            local_verdict=Verdict.parse(row["verdict"]),
            convicted=bool(row["convicted"]),
            tags=frozenset(json.loads(row["tags_json"])),
            custom_data=custom_data if isinstance(custom_data, dict) else {},
            previous_names=tuple(json.loads(row["previous_names_json"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


__all__ = [
    "PersistenceError",
    "StorageUnavailableError",
    "VerdictEntry",
    "VerdictStore",
]
