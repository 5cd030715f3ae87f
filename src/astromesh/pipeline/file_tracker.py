"""SQLite-based file processing state tracker.

Tracks input images through the pipeline stages (registered, analyzed,
plotted). Enables idempotent processing with stop/restart, progress tracking
and failure recovery.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

STAGES = ('registered', 'analyzed', 'plotted')


class FileProcessingTracker:
    """Tracks file processing state and progress through pipeline stages.

    **Pipeline Stages:**

    1. **Registered**: input image discovered by the orchestrator
    2. **Analyzed**: products and catalogs written
    3. **Plotted**: check-image plot written

    **Database Schema:**

    SQLite table `file_processing`:

    - file_id: input file stem (e.g., field_0042)
    - input_path, products_path, plot_path
    - status: pending, processing, completed, failed
    - registered_at, analyzed_at, plotted_at (ISO format)
    - file_size_mb, num_detections, num_objects, num_clumps, error_message

    **Resumability:**

    Stages marked complete are skipped on restart. Use `reset_failed()` to
    retry failed files and `cleanup_deleted_files()` to forget inputs that
    no longer exist.

    **Thread Safety:**

    One connection shared between threads, every access under one lock.

    Example::

        tracker = FileProcessingTracker(db_path)
        if tracker.should_process(file_id, "analyzed"):
            ...
            tracker.mark_stage_complete(file_id, "analyzed", num_objects=42)
        tracker.close()
    """

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._lock = threading.Lock()

        self._init_database()
        logger.info("File tracker initialized: %s", self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS file_processing (
                    file_id TEXT PRIMARY KEY,
                    input_path TEXT NOT NULL,

                    products_path TEXT,
                    plot_path TEXT,

                    registered_at TEXT,
                    analyzed_at TEXT,
                    plotted_at TEXT,

                    status TEXT DEFAULT 'pending',
                    error_message TEXT,

                    file_size_mb REAL,
                    num_detections INTEGER,
                    num_objects INTEGER,
                    num_clumps INTEGER,

                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_status ON file_processing(status)")
            conn.commit()

    def register_file(self, file_id: str, input_path) -> bool:
        """Register a newly discovered input.

        Returns
        -------
        bool
            True if newly registered, False if already known (not an error).
        """
        conn = self._get_connection()
        input_path = Path(input_path)

        with self._lock:
            cursor = conn.execute("SELECT file_id FROM file_processing WHERE file_id = ?", (file_id,))
            if cursor.fetchone():
                return False

            file_size_mb = None
            if input_path.exists():
                file_size_mb = input_path.stat().st_size / (1024 * 1024)

            now = datetime.now(timezone.utc).isoformat()
            conn.execute("""
                INSERT INTO file_processing
                (file_id, input_path, file_size_mb, registered_at, status)
                VALUES (?, ?, ?, ?, 'pending')
            """, (file_id, str(input_path), file_size_mb, now))
            conn.commit()

            logger.debug("Registered file: %s", file_id)
            return True

    def mark_stage_complete(self, file_id: str, stage: str,
                            path: Optional[Path] = None,
                            num_detections: Optional[int] = None,
                            num_objects: Optional[int] = None,
                            num_clumps: Optional[int] = None,
                            error: Optional[str] = None):
        """Mark a pipeline stage as complete or failed for a file.

        Parameters
        ----------
        file_id : str
            File identifier (registered via register_file).
        stage : str
            'analyzed' or 'plotted'.
        path : Path, optional
            Output of the stage: products file ('analyzed') or plot ('plotted').
        num_detections, num_objects, num_clumps : int, optional
            Counts for the 'analyzed' stage.
        error : str, optional
            Failure message; sets status 'failed' and leaves the stage
            timestamp empty so the next run retries it.

        Raises
        ------
        ValueError
            If stage is not a pipeline stage.
        """
        if stage not in STAGES[1:]:
            raise ValueError(f"Invalid stage: {stage}. Must be one of {list(STAGES[1:])}")

        path_col = {'analyzed': 'products_path', 'plotted': 'plot_path'}[stage]
        now = datetime.now(timezone.utc).isoformat()

        if error:
            new_status = 'failed'
        elif stage == 'plotted':
            new_status = 'completed'
        else:
            new_status = 'processing'

        assignments = [f"{stage}_at = ?", f"{path_col} = ?", "status = ?",
                       "error_message = ?", "updated_at = ?"]
        params = [None if error else now, str(path) if path else None, new_status, error, now]
        for column, value in (("num_detections", num_detections),
                              ("num_objects", num_objects),
                              ("num_clumps", num_clumps)):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(int(value))

        conn = self._get_connection()
        with self._lock:
            conn.execute(f"UPDATE file_processing SET {', '.join(assignments)} WHERE file_id = ?",
                         (*params, file_id))
            conn.commit()

        logger.debug("Marked %s %s: %s", stage, "failed" if error else "complete", file_id)

    def get_file_status(self, file_id: str) -> Optional[Dict]:
        """Full record of a file, or None if it was never registered."""
        conn = self._get_connection()

        with self._lock:
            cursor = conn.execute("SELECT * FROM file_processing WHERE file_id = ?", (file_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_pending_files(self, stage: Optional[str] = None,
                          limit: Optional[int] = None) -> List[Dict]:
        """Files awaiting ``stage`` ('analyzed' or 'plotted'), oldest first.

        With no stage, every file neither completed nor failed.
        """
        if stage == 'analyzed':
            condition = "analyzed_at IS NULL"
        elif stage == 'plotted':
            condition = "analyzed_at IS NOT NULL AND plotted_at IS NULL"
        else:
            condition = "status != 'completed' AND status != 'failed'"

        query = f"SELECT * FROM file_processing WHERE {condition} ORDER BY registered_at"
        params = []
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._get_connection()
        with self._lock:
            cursor = conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict:
        """Progress summary: stage counts, status counts and label totals."""
        conn = self._get_connection()

        with self._lock:
            cursor = conn.execute("""
                SELECT
                    COUNT(*) as total,
                    COUNT(analyzed_at) as analyzed,
                    COUNT(plotted_at) as plotted,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) as completed,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) as failed,
                    SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) as processing,
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) as pending,
                    SUM(num_objects) as total_objects,
                    SUM(num_clumps) as total_clumps
                FROM file_processing
            """)
            row = cursor.fetchone()
            return dict(row) if row else {}

    def should_process(self, file_id: str, stage: str) -> bool:
        """True if ``stage`` has not completed for ``file_id``."""
        status = self.get_file_status(file_id)
        if not status:
            return True
        return status.get(f"{stage}_at") is None

    def reset_failed(self):
        """Reset failed files to pending so the next run retries them."""
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                UPDATE file_processing
                SET status = 'pending', error_message = NULL, updated_at = ?
                WHERE status = 'failed'
            """, (datetime.now(timezone.utc).isoformat(),))
            conn.commit()

        logger.info("Reset failed files to pending")

    def cleanup_deleted_files(self) -> int:
        """Forget files whose input no longer exists on disk."""
        conn = self._get_connection()

        with self._lock:
            cursor = conn.execute("SELECT file_id, input_path FROM file_processing")
            deleted = [row['file_id'] for row in cursor.fetchall()
                       if not Path(row['input_path']).exists()]

            if deleted:
                placeholders = ','.join('?' * len(deleted))
                conn.execute(f"DELETE FROM file_processing WHERE file_id IN ({placeholders})",
                             deleted)
                conn.commit()
                logger.info("Cleaned up %d deleted file(s)", len(deleted))
        return len(deleted)

    def close(self):
        """Close the connection; safe to call more than once."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
