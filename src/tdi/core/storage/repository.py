"""Analytics repository: persistence for recommendations, feedback and learning stats.

The repository mediates between storage records and SQLite, using
FieldEncryptor for therapist free text. Learning-statistics tables are
append-only: there is no update or delete for them.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Sequence

from tdi.core.storage.database import TherapyDatabase
from tdi.core.storage.encryption import FieldEncryptor
from tdi.core.storage.models import (
    LearningUpdate,
    ModificationPattern,
    RejectionPattern,
    StoredFeedback,
    StoredRecommendation,
    StoredValidation,
    SuccessPattern,
    TherapistPreference,
)

logger = logging.getLogger(__name__)

_VALID_STATUSES = {"pending", "accepted", "modified", "rejected"}
_DECISION_COLUMNS = {
    "accept": "accept_count",
    "modify": "modify_count",
    "reject": "reject_count",
}


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class AnalyticsRepository:
    """Keyed reads/writes over the analytics store.

    Usage::

        db = TherapyDatabase(":memory:")
        db.initialize()
        repo = AnalyticsRepository(db, FieldEncryptor(key="..."))

        repo.save_recommendation(record)
        window = repo.get_feedback_since("2025-01-01T00:00:00+00:00")
    """

    def __init__(self, database: TherapyDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def save_recommendation(self, record: StoredRecommendation) -> str:
        """Persist a recommendation. An empty ``record.id`` gets a UUID."""
        rid = record.id or self._new_id()
        now = record.created_at or self._now_iso()
        try:
            self._db.connection.execute(
                """INSERT INTO recommendations (
                    id, subject_id, recommendation_type, payload_json,
                    confidence, clinical_relevance, explanation_json, sources_json,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rid,
                    record.subject_id,
                    record.recommendation_type,
                    json.dumps(record.payload, separators=(",", ":")),
                    record.confidence,
                    record.clinical_relevance,
                    json.dumps(record.explanation_factors, ensure_ascii=False),
                    json.dumps(record.sources),
                    record.status,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(f"Recommendation {rid} already exists") from exc
        self._db.connection.commit()
        logger.info(
            "Saved recommendation %s (type=%s, subject=%s)",
            rid,
            record.recommendation_type,
            record.subject_id,
        )
        return rid

    def get_recommendation(self, recommendation_id: str) -> StoredRecommendation | None:
        row = self._db.connection.execute(
            "SELECT * FROM recommendations WHERE id = ?", (recommendation_id,)
        ).fetchone()
        if row is None:
            return None
        return StoredRecommendation(
            id=row["id"],
            subject_id=row["subject_id"],
            recommendation_type=row["recommendation_type"],
            payload=json.loads(row["payload_json"]),
            confidence=row["confidence"],
            clinical_relevance=row["clinical_relevance"],
            explanation_factors=json.loads(row["explanation_json"] or "[]"),
            sources=json.loads(row["sources_json"] or "[]"),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"] or "",
        )

    def update_recommendation_status(
        self,
        recommendation_id: str,
        status: str,
        *,
        confidence: float | None = None,
    ) -> bool:
        """Move a recommendation through its lifecycle.

        Returns:
            True if the recommendation existed and was updated.
        """
        if status not in _VALID_STATUSES:
            raise RepositoryError(f"Invalid status: {status!r}. Valid: {sorted(_VALID_STATUSES)}")
        conn = self._db.connection
        if confidence is None:
            cursor = conn.execute(
                "UPDATE recommendations SET status = ?, updated_at = ? WHERE id = ?",
                (status, self._now_iso(), recommendation_id),
            )
        else:
            cursor = conn.execute(
                """UPDATE recommendations SET status = ?, confidence = ?, updated_at = ?
                   WHERE id = ?""",
                (status, confidence, self._now_iso(), recommendation_id),
            )
        conn.commit()
        return cursor.rowcount > 0

    def count_recommendations(self, *, status: str | None = None) -> int:
        conn = self._db.connection
        if status:
            row = conn.execute(
                "SELECT COUNT(*) FROM recommendations WHERE status = ?", (status,)
            ).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM recommendations").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def save_feedback(self, feedback: StoredFeedback) -> str:
        fid = feedback.id or self._new_id()
        try:
            self._db.connection.execute(
                """INSERT INTO recommendation_feedback (
                    id, recommendation_id, therapist_id, decision,
                    reasoning_enc, modifications_enc, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    fid,
                    feedback.recommendation_id,
                    feedback.therapist_id,
                    feedback.decision,
                    self._enc.encrypt(feedback.reasoning or None),
                    self._enc.encrypt(feedback.modifications),
                    feedback.timestamp or self._now_iso(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(f"Could not store feedback {fid}: {exc}") from exc
        self._db.connection.commit()
        logger.info(
            "Saved feedback %s (decision=%s, recommendation=%s)",
            fid,
            feedback.decision,
            feedback.recommendation_id,
        )
        return fid

    def get_feedback_since(
        self,
        since: str,
        *,
        until: str | None = None,
        therapist_id: str | None = None,
    ) -> list[StoredFeedback]:
        """Feedback in a timestamp window, newest first.

        Args:
            since: ISO 8601 lower bound (inclusive).
            until: Optional ISO 8601 upper bound (inclusive).
            therapist_id: Optional filter.
        """
        conditions = ["timestamp >= ?"]
        params: list[Any] = [since]
        if until:
            conditions.append("timestamp <= ?")
            params.append(until)
        if therapist_id:
            conditions.append("therapist_id = ?")
            params.append(therapist_id)

        query = (
            "SELECT * FROM recommendation_feedback WHERE "
            + " AND ".join(conditions)
            + " ORDER BY timestamp DESC"
        )
        rows = self._db.connection.execute(query, params).fetchall()
        return [
            StoredFeedback(
                id=row["id"],
                recommendation_id=row["recommendation_id"],
                therapist_id=row["therapist_id"],
                decision=row["decision"],
                timestamp=row["timestamp"],
                reasoning=self._enc.decrypt(row["reasoning_enc"]) or "",
                modifications=self._enc.decrypt(row["modifications_enc"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Therapist preferences
    # ------------------------------------------------------------------

    def get_therapist_preference(self, therapist_id: str) -> TherapistPreference | None:
        row = self._db.connection.execute(
            "SELECT * FROM therapist_preferences WHERE therapist_id = ?", (therapist_id,)
        ).fetchone()
        if row is None:
            return None
        return TherapistPreference(
            therapist_id=row["therapist_id"],
            feedback_count=row["feedback_count"],
            accept_count=row["accept_count"],
            modify_count=row["modify_count"],
            reject_count=row["reject_count"],
            last_feedback_at=row["last_feedback_at"] or "",
            updated_at=row["updated_at"],
        )

    def upsert_therapist_preference(
        self,
        therapist_id: str,
        decision: str,
        feedback_at: str,
    ) -> TherapistPreference:
        """Count one decision for a therapist, creating the row if absent."""
        column = _DECISION_COLUMNS.get(decision)
        if column is None:
            raise RepositoryError(f"Invalid decision: {decision!r}")
        now = self._now_iso()
        conn = self._db.connection
        # Column name comes from the fixed mapping above
        conn.execute(
            f"""INSERT INTO therapist_preferences
                   (therapist_id, feedback_count, {column}, last_feedback_at, updated_at)
                VALUES (?, 1, 1, ?, ?)
                ON CONFLICT(therapist_id) DO UPDATE SET
                   feedback_count = feedback_count + 1,
                   {column} = {column} + 1,
                   last_feedback_at = excluded.last_feedback_at,
                   updated_at = excluded.updated_at""",
            (therapist_id, feedback_at, now),
        )
        conn.commit()
        preference = self.get_therapist_preference(therapist_id)
        assert preference is not None
        return preference

    # ------------------------------------------------------------------
    # Learning statistics (append-only)
    # ------------------------------------------------------------------

    def append_learning_updates(self, updates: Sequence[LearningUpdate]) -> int:
        if not updates:
            return 0
        now = self._now_iso()
        conn = self._db.connection
        conn.executemany(
            """INSERT INTO learning_updates (
                id, pattern_key, factor_name, old_value, new_value,
                adjustment_factor, confidence, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    u.id or self._new_id(),
                    u.pattern_key,
                    u.factor_name,
                    u.old_value,
                    u.new_value,
                    u.adjustment_factor,
                    u.confidence,
                    u.reason,
                    u.created_at or now,
                )
                for u in updates
            ],
        )
        conn.commit()
        logger.info("Recorded %d learning updates", len(updates))
        return len(updates)

    def get_learning_updates(
        self, *, pattern_key: str | None = None, limit: int = 100
    ) -> list[LearningUpdate]:
        query = "SELECT * FROM learning_updates"
        params: list[Any] = []
        if pattern_key:
            query += " WHERE pattern_key = ?"
            params.append(pattern_key)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [
            LearningUpdate(
                id=row["id"],
                pattern_key=row["pattern_key"],
                factor_name=row["factor_name"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                adjustment_factor=row["adjustment_factor"],
                confidence=row["confidence"],
                reason=row["reason"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def append_rejection_pattern(self, pattern: RejectionPattern) -> str:
        pid = pattern.id or self._new_id()
        self._db.connection.execute(
            """INSERT INTO rejection_patterns (
                id, recommendation_id, recommendation_type, therapist_id,
                reason_enc, confidence_at_rejection, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                pid,
                pattern.recommendation_id,
                pattern.recommendation_type,
                pattern.therapist_id,
                self._enc.encrypt(pattern.reason or None),
                pattern.confidence_at_rejection,
                pattern.created_at or self._now_iso(),
            ),
        )
        self._db.connection.commit()
        return pid

    def append_modification_pattern(self, pattern: ModificationPattern) -> str:
        pid = pattern.id or self._new_id()
        self._db.connection.execute(
            """INSERT INTO modification_patterns (
                id, recommendation_id, recommendation_type, therapist_id,
                modifications_enc, reasoning_enc, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                pid,
                pattern.recommendation_id,
                pattern.recommendation_type,
                pattern.therapist_id,
                self._enc.encrypt(pattern.modifications),
                self._enc.encrypt(pattern.reasoning or None),
                pattern.created_at or self._now_iso(),
            ),
        )
        self._db.connection.commit()
        return pid

    def append_success_pattern(self, pattern: SuccessPattern) -> str:
        pid = pattern.id or self._new_id()
        self._db.connection.execute(
            """INSERT INTO success_patterns (
                id, recommendation_id, recommendation_type, therapist_id,
                confidence, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                pid,
                pattern.recommendation_id,
                pattern.recommendation_type,
                pattern.therapist_id,
                pattern.confidence,
                pattern.created_at or self._now_iso(),
            ),
        )
        self._db.connection.commit()
        return pid

    def get_rejection_patterns(self, *, limit: int = 100) -> list[RejectionPattern]:
        rows = self._db.connection.execute(
            "SELECT * FROM rejection_patterns ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            RejectionPattern(
                id=row["id"],
                recommendation_id=row["recommendation_id"],
                recommendation_type=row["recommendation_type"],
                therapist_id=row["therapist_id"],
                reason=self._enc.decrypt(row["reason_enc"]) or "",
                confidence_at_rejection=row["confidence_at_rejection"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def count_patterns(self, table: str) -> int:
        """Row count for one of the pattern tables."""
        valid_tables = {"rejection_patterns", "modification_patterns", "success_patterns"}
        if table not in valid_tables:
            raise RepositoryError(f"Invalid pattern table: {table!r}. Valid: {valid_tables}")
        # Table name validated above against the known set
        row = self._db.connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Prediction validations
    # ------------------------------------------------------------------

    def save_validations(self, validations: Sequence[StoredValidation]) -> int:
        """Persist a chunk of validations in a single transaction."""
        if not validations:
            return 0
        now = self._now_iso()
        conn = self._db.connection
        with conn:
            conn.executemany(
                """INSERT INTO prediction_validations (
                    id, prediction_id, prediction_type, predicted_value, actual_value,
                    accuracy, absolute_error, percentage_error, calibration,
                    validator_id, validated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        v.id or self._new_id(),
                        v.prediction_id,
                        v.prediction_type,
                        v.predicted_value,
                        v.actual_value,
                        v.accuracy,
                        v.absolute_error,
                        v.percentage_error,
                        v.calibration,
                        v.validator_id,
                        v.validated_at or now,
                    )
                    for v in validations
                ],
            )
        return len(validations)

    def get_validations(
        self,
        *,
        since: str | None = None,
        until: str | None = None,
        prediction_type: str | None = None,
        limit: int = 1000,
    ) -> list[StoredValidation]:
        """Validations in an optional window, newest first."""
        conditions: list[str] = []
        params: list[Any] = []
        if since:
            conditions.append("validated_at >= ?")
            params.append(since)
        if until:
            conditions.append("validated_at <= ?")
            params.append(until)
        if prediction_type:
            conditions.append("prediction_type = ?")
            params.append(prediction_type)

        query = "SELECT * FROM prediction_validations"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY validated_at DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [
            StoredValidation(
                id=row["id"],
                prediction_id=row["prediction_id"],
                prediction_type=row["prediction_type"],
                predicted_value=row["predicted_value"],
                actual_value=row["actual_value"],
                accuracy=row["accuracy"],
                absolute_error=row["absolute_error"],
                percentage_error=row["percentage_error"],
                calibration=row["calibration"],
                validator_id=row["validator_id"] or "",
                validated_at=row["validated_at"],
            )
            for row in rows
        ]
