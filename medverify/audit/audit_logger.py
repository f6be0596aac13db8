"""
Audit logging for MedVerify.

Keeps a SQLite trail of verification outcomes for compliance review and
operational metrics. Document numbers are stored masked and names are not
stored.
"""

import sqlite3
import logging
import threading
import pandas as pd
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from pathlib import Path

from ..models import VerificationRequest, VerificationResult
from ..normalize.document_normalizer import mask_document_number

logger = logging.getLogger(__name__)


def _timestamp(value: datetime) -> str:
    return value.isoformat(sep=" ", timespec="seconds")


class AuditLogger:
    """
    Records verification outcomes in an audit database.

    Used by the orchestrator for every assembled result, cached or fresh.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize audit logger with configuration.

        Args:
            config: ``audit`` configuration section
        """
        config = config or {}
        self.db_path = config.get("db_path", "data/medverify_audit.db")
        self.export_path = config.get("export_path", "data/exports")
        self._write_lock = threading.Lock()

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"Initialized AuditLogger at {self.db_path}")

    def _init_database(self):
        """Initialize audit database with required tables."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS verification_log (
                verification_id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                document_type TEXT NOT NULL,
                document_masked TEXT NOT NULL,
                verification_source TEXT,
                is_valid INTEGER NOT NULL,
                is_verified INTEGER NOT NULL,
                error_kind TEXT,
                license_status TEXT,
                profession TEXT,
                specialty TEXT,
                identity_score REAL,
                from_cache INTEGER DEFAULT 0,
                attempts INTEGER DEFAULT 0,
                processing_time REAL
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_verification_log_timestamp
            ON verification_log (timestamp)
        ''')

        conn.commit()
        conn.close()

        logger.info("Initialized audit database")

    def record_verification(self, request: VerificationRequest, result: VerificationResult,
                            processing_time: float = 0.0, from_cache: bool = False):
        """
        Record one verification outcome.

        Args:
            request: Normalized request
            result: Result returned to the caller
            processing_time: Wall-clock seconds spent on the request
            from_cache: Whether the result was served from cache
        """
        analysis = result.analysis or {}
        identity = analysis.get("identity") or {}

        with self._write_lock:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()
            try:
                cursor.execute('''
                    INSERT INTO verification_log
                    (timestamp, document_type, document_masked, verification_source, is_valid,
                     is_verified, error_kind, license_status, profession, specialty,
                     identity_score, from_cache, attempts, processing_time)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', [
                    _timestamp(datetime.now()),
                    request.document_type.value,
                    mask_document_number(request.document_number),
                    result.verification_source,
                    int(result.is_valid),
                    int(result.is_verified),
                    result.error_kind.value if result.error_kind else None,
                    result.license_status.value,
                    result.profession,
                    result.specialty,
                    identity.get("score"),
                    int(from_cache),
                    int(analysis.get("attempts", 0)),
                    processing_time,
                ])
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Failed to record verification audit entry: {e}")
            finally:
                conn.close()

    def get_recent_verifications(self, limit: int = 100) -> pd.DataFrame:
        """
        Get the most recent verifications.

        Args:
            limit: Maximum number of records

        Returns:
            DataFrame with audit entries, newest first
        """
        conn = sqlite3.connect(self.db_path)

        query = '''
            SELECT * FROM verification_log
            ORDER BY verification_id DESC
            LIMIT ?
        '''

        df = pd.read_sql_query(query, conn, params=[limit])
        conn.close()

        return df

    def get_verifications(self, start_date: Optional[datetime] = None,
                          end_date: Optional[datetime] = None) -> pd.DataFrame:
        """
        Get verifications within date range.

        Args:
            start_date: Start date filter
            end_date: End date filter

        Returns:
            DataFrame with audit entries
        """
        conn = sqlite3.connect(self.db_path)

        query = "SELECT * FROM verification_log WHERE 1=1"
        params = []

        if start_date:
            query += " AND timestamp >= ?"
            params.append(_timestamp(start_date))

        if end_date:
            query += " AND timestamp <= ?"
            params.append(_timestamp(end_date))

        query += " ORDER BY timestamp DESC, verification_id DESC"

        df = pd.read_sql_query(query, conn, params=params)
        conn.close()

        return df

    def calculate_verification_metrics(self, days: int = 30) -> Dict[str, Any]:
        """
        Calculate verification metrics.

        Args:
            days: Number of days to analyze

        Returns:
            Dictionary with verification metrics
        """
        conn = sqlite3.connect(self.db_path)

        recent_date = _timestamp(datetime.now() - timedelta(days=days))

        outcomes_df = pd.read_sql_query('''
            SELECT
                COALESCE(error_kind, CASE WHEN is_valid = 1 THEN 'Valid' ELSE 'Invalid' END) as outcome,
                COUNT(*) as count
            FROM verification_log
            WHERE timestamp >= ?
            GROUP BY outcome
        ''', conn, params=[recent_date])

        summary = pd.read_sql_query('''
            SELECT
                COUNT(*) as total,
                COUNT(CASE WHEN is_valid = 1 THEN 1 END) as valid,
                COUNT(CASE WHEN from_cache = 1 THEN 1 END) as cached,
                AVG(processing_time) as avg_processing_time,
                AVG(CASE WHEN from_cache = 0 THEN attempts END) as avg_attempts
            FROM verification_log
            WHERE timestamp >= ?
        ''', conn, params=[recent_date]).iloc[0]

        conn.close()

        total = int(summary["total"])
        valid = int(summary["valid"])
        cached = int(summary["cached"])

        metrics = {
            "period_days": days,
            "total_verifications": total,
            "valid_count": valid,
            "valid_rate": valid / total if total > 0 else 0,
            "cache_rate": cached / total if total > 0 else 0,
            "avg_processing_time": float(summary["avg_processing_time"]) if total > 0 else 0.0,
            "avg_attempts": float(summary["avg_attempts"]) if pd.notna(summary["avg_attempts"]) else 0.0,
            "outcome_distribution": outcomes_df.set_index("outcome")["count"].to_dict() if not outcomes_df.empty else {},
        }

        return metrics

    def export_verifications(self, output_path: Optional[str] = None) -> str:
        """
        Export all audit entries for external analysis.

        Args:
            output_path: Output file path (optional)

        Returns:
            Path to exported file
        """
        if output_path is None:
            Path(self.export_path).mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = f"{self.export_path}/verification_export_{timestamp}.csv"

        entries_df = self.get_verifications()
        entries_df.to_csv(output_path, index=False)

        logger.info(f"Exported {len(entries_df)} audit entries to {output_path}")
        return output_path
