"""Catalog persistence: SQLite tables and Parquet export.

One SQLite database collects the catalogs of every processed image, one table
per catalog kind (``objects`` and ``clumps``). Each row carries the
``file_id`` of its image so the tables can be appended to across a run.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

__all__ = ['CatalogStore', 'write_parquet', 'sqlite_ready']

logger = logging.getLogger(__name__)


def sqlite_ready(df: pd.DataFrame) -> pd.DataFrame:
    """Copy of ``df`` that SQLite accepts: list cells become JSON text."""
    out = df.copy()
    for column in out.columns:
        if out[column].dtype != object:
            continue
        values = []
        for value in out[column]:
            if isinstance(value, np.ndarray):
                value = value.tolist()
            if isinstance(value, (list, tuple)):
                value = json.dumps(value)
            values.append(value)
        out[column] = values
    return out


def write_parquet(df: pd.DataFrame, path, compression: str = "snappy") -> Path:
    """Write ``df`` to Parquet with pyarrow.

    ``compression="none"`` writes an uncompressed file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(path, engine='pyarrow',
                  compression=None if compression == "none" else compression,
                  index=False)
    logger.info("Exported %d rows to: %s", len(df), path)
    return path


class CatalogStore:
    """SQLite database holding the object and clump catalogs of a run.

    Parameters
    ----------
    db_path : path-like
        Database file; created if missing.

    Notes
    -----
    The connection is shared between threads (``check_same_thread=False``)
    and every access goes through one lock. A table's schema is taken from
    the first frame appended to it; later frames are aligned to it, with
    missing columns filled with NULL and new columns added.
    """

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        logger.info("Catalog database initialized: %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.info("Catalog database connection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _table_columns(self, table: str) -> List[str]:
        cursor = self.conn.execute(f'PRAGMA table_info("{table}")')
        return [row[1] for row in cursor.fetchall()]

    def _align(self, table: str, df: pd.DataFrame) -> pd.DataFrame:
        existing = self._table_columns(table)
        if not existing:
            return df
        for column in df.columns:
            if column not in existing:
                self.conn.execute(f'ALTER TABLE "{table}" ADD COLUMN "{column}"')
                existing.append(column)
                logger.debug("Added column %s to %s", column, table)
        missing = [c for c in existing if c not in df.columns]
        for column in missing:
            df[column] = None
        return df[existing]

    def append(self, table: str, df: pd.DataFrame, file_id: Optional[str] = None) -> int:
        """Append ``df`` to ``table``; returns the number of rows written."""
        if df.empty:
            logger.debug("No rows for table %s", table)
            return 0
        frame = sqlite_ready(df)
        if file_id is not None:
            frame.insert(0, "file_id", file_id)
        with self._lock:
            frame = self._align(table, frame)
            frame.to_sql(table, self.conn, if_exists='append', index=False)
            self.conn.commit()
        logger.debug("Saved %d rows to table %s", len(frame), table)
        return len(frame)

    def delete_file(self, file_id: str) -> None:
        """Remove the rows of one image from every table (for reprocessing)."""
        with self._lock:
            for table in self.tables():
                if "file_id" in self._table_columns(table):
                    self.conn.execute(f'DELETE FROM "{table}" WHERE file_id = ?', (file_id,))
            self.conn.commit()

    def tables(self) -> List[str]:
        cursor = self.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        return [row[0] for row in cursor.fetchall()]

    def read(self, table: str, file_id: Optional[str] = None) -> pd.DataFrame:
        """Rows of ``table`` (optionally of one image); empty if the table is missing."""
        with self._lock:
            if table not in self.tables():
                return pd.DataFrame()
            if file_id is None:
                return pd.read_sql(f'SELECT * FROM "{table}"', self.conn)
            return pd.read_sql(f'SELECT * FROM "{table}" WHERE file_id = ?',
                               self.conn, params=(file_id,))

    def export_parquet(self, directory, compression: str = "snappy",
                       stem: str = "catalog") -> Dict[str, Path]:
        """Write every non-empty table to ``{directory}/{stem}_{table}.parquet``."""
        written = {}
        for table in self.tables():
            df = self.read(table)
            if df.empty:
                logger.warning("No results to export from %s", table)
                continue
            written[table] = write_parquet(df, Path(directory) / f"{stem}_{table}.parquet",
                                           compression)
        return written
