import duckdb
import os
import logging
from contextlib import contextmanager
from typing import List, Optional

logger = logging.getLogger(__name__)


class DuckDBManager:
    def __init__(self, db_path: str = "data/app.duckdb"):
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Initialize or migrate schema
        self._init_schema()

    def _init_schema(self):
        """Initializes the database schema."""
        try:
            with self.get_connection() as con:
                con.execute("""
                    CREATE TABLE IF NOT EXISTS classifier_selection (
                        session_id VARCHAR PRIMARY KEY,
                        classifier_id VARCHAR,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    );

                    CREATE TABLE IF NOT EXISTS analysis_logs (
                        id INTEGER PRIMARY KEY,
                        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        session_id VARCHAR,
                        classifier_id VARCHAR,
                        class_label VARCHAR,
                        unresolved_cells INTEGER,
                        latency_ms INTEGER
                    );
                    CREATE SEQUENCE IF NOT EXISTS seq_analysis_id START 1;
                """)
                logger.info("Database schema initialized.")
        except duckdb.Error as e:
            logger.error(f"Failed to init schema: {e}")

    @contextmanager
    def get_connection(self):
        """Yields a DuckDB connection."""
        con = duckdb.connect(self.db_path)
        try:
            yield con
        finally:
            con.close()

    def get_selected_classifier(self, session_id: str) -> Optional[str]:
        try:
            with self.get_connection() as con:
                row = con.execute(
                    "SELECT classifier_id FROM classifier_selection WHERE session_id = ?",
                    [session_id]
                ).fetchone()
                return row[0] if row else None
        except duckdb.Error as e:
            logger.error(f"Failed to read classifier selection: {e}")
            return None

    def set_selected_classifier(self, session_id: str, classifier_id: str):
        with self.get_connection() as con:
            con.execute("""
                INSERT OR REPLACE INTO classifier_selection (session_id, classifier_id, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, [session_id, classifier_id])

    def log_analysis(self, session_id: str, classifier_id: str, class_label: str,
                     unresolved_cells: int, latency_ms: int):
        try:
            with self.get_connection() as con:
                con.execute("""
                    INSERT INTO analysis_logs (id, session_id, classifier_id, class_label, unresolved_cells, latency_ms)
                    VALUES (nextval('seq_analysis_id'), ?, ?, ?, ?, ?)
                """, [session_id, classifier_id, class_label, unresolved_cells, latency_ms])
        except duckdb.Error as e:
            logger.error(f"Failed to log analysis: {e}")

    def recent_analyses(self, session_id: str, limit: int = 20) -> List[tuple]:
        with self.get_connection() as con:
            return con.execute("""
                SELECT class_label, classifier_id, unresolved_cells, latency_ms
                FROM analysis_logs WHERE session_id = ?
                ORDER BY id DESC LIMIT ?
            """, [session_id, limit]).fetchall()


db_manager = DuckDBManager(db_path=os.getenv("DUCKDB_PATH", "data/app.duckdb"))
