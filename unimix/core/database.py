"""
MODULE: SESSION_RECORDER
STATUS: SQLITE WAL MODE

DESCRIPTION:
    Persists recorded telemetry and tuning events for later review.

    Runs in 'Write-Ahead Logging' mode so a viewer can read the database
    while the tick loop keeps appending 10 frames per second.

    Frames are buffered and committed in batches of `commit_every` (about
    one commit per second at the default tick), so the tick loop does not
    pay for a disk sync every 100ms. Events are rare and commit immediately.
"""

import json
import logging
import os
import sqlite3
import time
from typing import Any, Dict, List, Tuple

from unimix.core.models import Telemetry

logger = logging.getLogger("UNIMIX.DB")


class SessionRecorder:
    """
    The data logger's 'tape'.
    """
    def __init__(self, db_path: str, commit_every: int = 10):
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.db_path = db_path
        self.commit_every = max(1, int(commit_every))
        self.conn = None
        self.session_id = "UNKNOWN"
        self._pending: List[Tuple] = []

    def start_session(self, session_id: str, profile_id: str, chip_type: str):
        self.session_id = session_id

        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self._init_schema()
        except sqlite3.Error as e:
            logger.error(f"[DB] Cannot open {self.db_path}: {e}. Running in volatile mode.")
            self.conn = None
            return

        self.log_event("SESSION_START", "INFO",
                       json.dumps({"profile": profile_id, "chip": chip_type}))

        logger.info(f"[DB] Session {session_id} Recording Started. Mode: WAL")

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS telemetry_frames (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                timestamp REAL,
                rpm REAL,
                boost_psi REAL,
                afr REAL,
                throttle_pct REAL,
                speed_kmh REAL,
                knock_v REAL,
                iat_c REAL,
                coolant_c REAL,
                zero_to_sixty_s REAL,

                -- Everything else
                raw_blob TEXT
            );
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS tune_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                timestamp REAL,
                event_type TEXT,
                severity TEXT,
                details TEXT
            );
        """)
        self.conn.commit()

    def log_packet(self, frame: Telemetry):
        if not self.conn:
            return

        self._pending.append((
            self.session_id, frame.timestamp, frame.rpm, frame.boost, frame.afr,
            frame.throttle, frame.speed, frame.knock, frame.iat, frame.coolant_temp,
            frame.zero_to_sixty, json.dumps(frame.to_dict())
        ))
        if len(self._pending) >= self.commit_every:
            self.flush()

    def flush(self):
        """Writes every buffered frame in one transaction."""
        if not self.conn or not self._pending:
            return

        batch, self._pending = self._pending, []
        try:
            self.conn.executemany("""
                INSERT INTO telemetry_frames
                (session_id, timestamp, rpm, boost_psi, afr, throttle_pct, speed_kmh,
                 knock_v, iat_c, coolant_c, zero_to_sixty_s, raw_blob)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, batch)
            self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Write Failure ({len(batch)} frames dropped): {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    def log_event(self, event_type: str, severity: str, message: str):
        if not self.conn:
            return
        try:
            self.conn.execute("""
                INSERT INTO tune_events (session_id, timestamp, event_type, severity, details)
                VALUES (?, ?, ?, ?, ?)
            """, (self.session_id, time.time(), event_type, severity, message))
            self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Event Write Failure: {e}")

    def fetch_frames(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent frames of this session, oldest first."""
        if not self.conn:
            return []
        self.flush()
        rows = self.conn.execute("""
            SELECT raw_blob FROM telemetry_frames
            WHERE session_id = ? ORDER BY id DESC LIMIT ?
        """, (self.session_id, limit)).fetchall()
        return [json.loads(row[0]) for row in reversed(rows)]

    def fetch_events(self) -> List[Tuple[str, str, str]]:
        """(event_type, severity, details) of this session, oldest first."""
        if not self.conn:
            return []
        return self.conn.execute("""
            SELECT event_type, severity, details FROM tune_events
            WHERE session_id = ? ORDER BY id
        """, (self.session_id,)).fetchall()

    def close(self):
        if self.conn:
            self.flush()
            self.conn.close()
            self.conn = None
            logger.info("[DB] Session Sealed.")
