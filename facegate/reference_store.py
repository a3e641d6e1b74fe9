"""
Reference Store Module

This module handles persistence and retrieval of enrolled ReferenceSets, keyed
by the passenger record they belong to.

Reference sets are stored as:
- .npz files: descriptors (N, D), optional source images, and metadata
- SQLite database: passenger metadata and the verification attempt log

The ReferenceStore class provides:
- save_reference_set: Persist a finalized enrollment for a passenger
- load_reference_set: Load one passenger's reference set
- delete_reference_set: Remove a passenger's enrollment
- list_passengers / get_passenger / passenger_exists: Lookup
- log_verification / get_verification_logs: Verification history
- get_stats: Aggregate counts

Usage:
    from facegate.reference_store import ReferenceStore

    store = ReferenceStore(storage_dir="storage/references", db_path="storage/facegate.sqlite")
    store.save_reference_set("PAX-0001", reference_set, passenger_name="Ada Lovelace")
    loaded = store.load_reference_set("PAX-0001")
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from facegate.descriptors import ReferenceSet

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = "1.0"


class ReferenceStore:
    """
    Manages persistence of passenger reference sets.

    Attributes:
        storage_dir: Directory where .npz reference files are stored.
        db_path: Path to the SQLite database file.
    """

    def __init__(self, storage_dir: str, db_path: str):
        """
        Initialize the ReferenceStore.

        Creates the storage directory and database if they don't exist.

        Args:
            storage_dir: Path to directory for storing .npz files.
            db_path: Path to SQLite database file.
        """
        self.storage_dir = Path(storage_dir)
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"ReferenceStore initialized: storage={self.storage_dir}, db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the SQLite connection with Row factory."""
        if self._conn is None:
            # Sessions run on the event loop; API handlers may call from worker threads
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        """
        Initialize the SQLite database schema.

        Creates tables if they don't exist:
        - passengers: Passenger metadata and reference file paths
        - verification_logs: Verification attempt history
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS passengers (
                passenger_id TEXT PRIMARY KEY,
                passenger_name TEXT NOT NULL DEFAULT '',
                reference_path TEXT NOT NULL,
                enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                n_descriptors INTEGER,
                n_images INTEGER,
                descriptor_dim INTEGER,
                capture_mode TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS verification_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                passenger_id TEXT,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                is_valid BOOLEAN,
                face_detected BOOLEAN,
                distance REAL,
                confidence REAL,
                FOREIGN KEY (passenger_id) REFERENCES passengers(passenger_id)
            )
        """)

        conn.commit()
        logger.debug("Database schema initialized")

    def _get_reference_path(self, passenger_id: str) -> Path:
        return self.storage_dir / f"{passenger_id}.npz"

    def save_reference_set(
        self,
        passenger_id: str,
        reference_set: ReferenceSet,
        passenger_name: str = "",
        overwrite: bool = False,
    ) -> str:
        """
        Save a reference set to disk and register it in the database.

        The .npz file contains:
        - descriptors: (N, D) float32 (empty (0, 0) for deferred enrollments)
        - image_0 .. image_{K-1}: source frames, if any
        - metadata: JSON string with enrollment details

        Args:
            passenger_id: Booking flow identifier of the passenger.
            reference_set: Finalized, non-empty reference set.
            passenger_name: Display name.
            overwrite: Replace an existing enrollment instead of failing.

        Returns:
            Path to the saved file (as string).

        Raises:
            ValueError: If the reference set is empty, or the passenger is
                        already enrolled and overwrite is False.
        """
        if reference_set.is_empty:
            raise ValueError("Cannot save an empty reference set")

        if self.passenger_exists(passenger_id):
            if not overwrite:
                raise ValueError(f"Reference set already exists for passenger_id: {passenger_id}")
            self.delete_reference_set(passenger_id)

        metadata = dict(reference_set.metadata)
        metadata.update({
            "passenger_id": passenger_id,
            "passenger_name": passenger_name,
            "enrolled_at": datetime.now().isoformat(),
            "store_version": STORE_FORMAT_VERSION,
        })

        arrays = {f"image_{i}": image for i, image in enumerate(reference_set.images)}

        reference_path = self._get_reference_path(passenger_id)
        np.savez_compressed(
            str(reference_path),
            descriptors=reference_set.as_matrix(),
            metadata=json.dumps(metadata),
            **arrays,
        )

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO passengers
            (passenger_id, passenger_name, reference_path, n_descriptors, n_images,
             descriptor_dim, capture_mode)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            passenger_id,
            passenger_name,
            str(reference_path),
            len(reference_set.descriptors),
            len(reference_set.images),
            reference_set.descriptor_dim,
            metadata.get("mode"),
        ))
        conn.commit()

        logger.info(
            f"Saved reference set for passenger {passenger_id} "
            f"({len(reference_set.descriptors)} descriptors, {len(reference_set.images)} images)"
        )
        return str(reference_path)

    def load_reference_set(self, passenger_id: str) -> Optional[ReferenceSet]:
        """
        Load one passenger's reference set.

        Returns:
            ReferenceSet, or None if the passenger is unknown or the file is
            missing or unreadable.
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT reference_path FROM passengers WHERE passenger_id = ?", (passenger_id,))
        row = cursor.fetchone()

        if row is None:
            return None

        reference_path = Path(row["reference_path"])
        if not reference_path.exists():
            logger.warning(f"Reference file missing for passenger {passenger_id}: {reference_path}")
            return None

        try:
            with np.load(str(reference_path), allow_pickle=False) as data:
                metadata = json.loads(str(data["metadata"]))
                descriptors = data["descriptors"]
                n_images = sum(1 for key in data.files if key.startswith("image_"))
                images = tuple(data[f"image_{i}"] for i in range(n_images))
        except (OSError, KeyError, ValueError) as e:
            logger.error(f"Failed to load reference set {passenger_id}: {e}")
            return None

        return ReferenceSet(
            descriptors=tuple(descriptors) if descriptors.size else (),
            images=images,
            metadata=metadata,
        )

    def delete_reference_set(self, passenger_id: str) -> bool:
        """
        Delete a passenger's reference set from filesystem and database.

        Returns:
            True if deletion was successful, False if passenger not found.
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT reference_path FROM passengers WHERE passenger_id = ?", (passenger_id,))
        row = cursor.fetchone()

        if row is None:
            logger.warning(f"Cannot delete: passenger {passenger_id} not found")
            return False

        reference_path = Path(row["reference_path"])

        cursor.execute("DELETE FROM passengers WHERE passenger_id = ?", (passenger_id,))
        cursor.execute("DELETE FROM verification_logs WHERE passenger_id = ?", (passenger_id,))
        conn.commit()

        if reference_path.exists():
            try:
                reference_path.unlink()
            except OSError as e:
                logger.warning(f"Failed to delete reference file {reference_path}: {e}")

        logger.info(f"Deleted reference set for passenger {passenger_id}")
        return True

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "passenger_id": row["passenger_id"],
            "passenger_name": row["passenger_name"],
            "enrolled_at": row["enrolled_at"],
            "n_descriptors": row["n_descriptors"],
            "n_images": row["n_images"],
            "descriptor_dim": row["descriptor_dim"],
            "capture_mode": row["capture_mode"],
        }

    def list_passengers(self) -> List[Dict[str, Any]]:
        """List all enrolled passengers, most recent first."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT passenger_id, passenger_name, enrolled_at, n_descriptors, n_images,
                   descriptor_dim, capture_mode
            FROM passengers
            ORDER BY enrolled_at DESC
        """)
        return [self._row_to_dict(row) for row in cursor.fetchall()]

    def get_passenger(self, passenger_id: str) -> Optional[Dict[str, Any]]:
        """Get enrollment details for one passenger, or None if not found."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT passenger_id, passenger_name, reference_path, enrolled_at, n_descriptors,
                   n_images, descriptor_dim, capture_mode
            FROM passengers
            WHERE passenger_id = ?
        """, (passenger_id,))
        row = cursor.fetchone()

        if row is None:
            return None

        passenger = self._row_to_dict(row)
        passenger["reference_path"] = row["reference_path"]
        return passenger

    def passenger_exists(self, passenger_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT 1 FROM passengers WHERE passenger_id = ?", (passenger_id,))
        return cursor.fetchone() is not None

    def log_verification(
        self,
        passenger_id: str,
        is_valid: bool,
        face_detected: bool,
        confidence: float,
        distance: Optional[float] = None,
    ) -> int:
        """
        Log a verification attempt for auditing.

        Returns:
            The log entry ID.
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO verification_logs
            (passenger_id, is_valid, face_detected, distance, confidence)
            VALUES (?, ?, ?, ?, ?)
        """, (passenger_id, is_valid, face_detected, distance, confidence))
        conn.commit()

        log_id = cursor.lastrowid
        logger.debug(
            f"Logged verification attempt: id={log_id}, passenger={passenger_id}, "
            f"valid={is_valid}, confidence={confidence:.2f}"
        )
        return log_id

    def get_verification_logs(
        self,
        passenger_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get verification attempts, most recent first, optionally for one passenger."""
        conn = self._get_connection()
        cursor = conn.cursor()

        if passenger_id:
            cursor.execute("""
                SELECT * FROM verification_logs
                WHERE passenger_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (passenger_id, limit))
        else:
            cursor.execute("""
                SELECT * FROM verification_logs
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,))

        return [
            {
                "id": row["id"],
                "passenger_id": row["passenger_id"],
                "timestamp": row["timestamp"],
                "is_valid": bool(row["is_valid"]),
                "face_detected": bool(row["face_detected"]),
                "distance": row["distance"],
                "confidence": row["confidence"],
            }
            for row in cursor.fetchall()
        ]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the reference database.

        Returns:
            Dictionary with total_passengers, total_verifications and
            successful_verifications.
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT COUNT(*) AS count FROM passengers")
        passenger_stats = cursor.fetchone()

        cursor.execute("SELECT COUNT(*) AS total, SUM(is_valid) AS successes FROM verification_logs")
        verification_stats = cursor.fetchone()

        return {
            "total_passengers": passenger_stats["count"] or 0,
            "total_verifications": verification_stats["total"] or 0,
            "successful_verifications": int(verification_stats["successes"] or 0),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed")

    def __del__(self):
        self.close()


# Singleton instance for the store
_store_instance: Optional[ReferenceStore] = None


def get_reference_store(
    storage_dir: Optional[str] = None,
    db_path: Optional[str] = None,
) -> ReferenceStore:
    """
    Get or create the singleton ReferenceStore instance.

    Args:
        storage_dir: Reference file directory. If None, uses value from config.
        db_path: SQLite database path. If None, uses value from config.
    """
    global _store_instance

    if _store_instance is None:
        if storage_dir is None or db_path is None:
            from facegate.config import get_project_root, get_storage_config

            storage_config = get_storage_config()
            project_root = get_project_root()

            if storage_dir is None:
                storage_dir = str(project_root / storage_config["references_dir"])
            if db_path is None:
                db_path = str(project_root / storage_config["db_path"])

        _store_instance = ReferenceStore(storage_dir, db_path)

    return _store_instance
