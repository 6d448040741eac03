"""Durable SQL store for sparks, embeddings, interactions and generation locks.

Built on SQLAlchemy Core so the same code runs against SQLite (local use and
tests) and PostgreSQL (hosted).  All timestamps are written in UTC.

The compare-then-insert in :meth:`SparkStore.save_spark_checked` holds a
per-user write lock for the whole transaction: ``BEGIN IMMEDIATE`` on SQLite
and ``pg_advisory_xact_lock`` on PostgreSQL.  Other dialects get the
transaction but no extra lock.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from incurio.errors import BatchFullError, StoreError, TooSimilarError
from incurio.sparks.days import as_utc, utcnow
from incurio.sparks.models import (
    CandidateSpark,
    GeneratedRecommendation,
    Interaction,
    Reaction,
    RecordedInteraction,
    RecommendationKind,
    Spark,
    StoredSpark,
    UserProfile,
)
from incurio.sparks.similarity import similarity_scores

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("topics", JSON, nullable=False),
    Column("preference_text", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

sparks_table = Table(
    "sparks",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("content", Text, nullable=False),
    Column("details", Text, nullable=False),
    Column("topic", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("batch_index", Integer, nullable=False, default=0),
    Column("is_recommendation", Boolean, nullable=False, default=False),
    Column("recommendation_kind", String(32), nullable=True),
    Index("ix_sparks_user_created", "user_id", "created_at"),
)

embeddings_table = Table(
    "spark_embeddings",
    metadata,
    Column(
        "spark_id",
        String(36),
        ForeignKey("sparks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("user_id", String(64), nullable=False, index=True),
    Column("vector", JSON, nullable=False),
)

interactions_table = Table(
    "interactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column(
        "spark_id",
        String(36),
        ForeignKey("sparks.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("reaction", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "spark_id", name="uq_interactions_user_spark"),
)

locks_table = Table(
    "generation_locks",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("acquired_at", DateTime(timezone=True), nullable=False),
)

love_counts_table = Table(
    "topic_love_counts",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("topic", String(64), primary_key=True),
    Column("love_count", Integer, nullable=False, default=0),
)


def create_store_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine with transaction handling suited to the dialect.

    SQLite connections issue ``BEGIN IMMEDIATE`` so every transaction takes
    the database write lock up front (pysqlite's own deferred BEGIN is
    disabled).
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url, echo=echo, connect_args={"timeout": 30, "check_same_thread": False}
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection: Any, _record: Any) -> None:
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Connection) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(url, echo=echo, pool_pre_ping=True)


def _row_to_spark(row: Any) -> Spark:
    m = row._mapping
    kind = m["recommendation_kind"]
    return Spark(
        id=m["id"],
        user_id=m["user_id"],
        content=m["content"],
        details=m["details"],
        topic=m["topic"],
        created_at=as_utc(m["created_at"]),
        batch_index=m["batch_index"],
        is_recommendation=bool(m["is_recommendation"]),
        recommendation_kind=RecommendationKind(kind) if kind else None,
    )


def _clamp_to_range(value: datetime, start: datetime, end: datetime) -> datetime:
    """Pin ``value`` into the half-open range ``[start, end)``."""
    start, end = as_utc(start), as_utc(end)
    if value < start:
        return start
    if value >= end:
        logger.debug("Insert time %s is past the batch day, pinning to its end", value)
        return end - timedelta(microseconds=1)
    return value


def _row_to_interaction(row: Any) -> Interaction:
    m = row._mapping
    return Interaction(
        user_id=m["user_id"],
        spark_id=m["spark_id"],
        reaction=Reaction(m["reaction"]),
        created_at=as_utc(m["created_at"]),
    )


class SparkStore:
    """SQL-backed durable store; the source of truth for committed sparks."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, create: bool = True) -> SparkStore:
        """Open a store by SQLAlchemy URL, creating tables unless ``create`` is False."""
        store = cls(create_store_engine(url, echo=echo))
        if create:
            store.init_schema()
        return store

    @property
    def engine(self) -> Engine:
        return self._engine

    def init_schema(self) -> None:
        """Create all tables that do not exist yet."""
        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create schema: {exc}") from exc

    def dispose(self) -> None:
        self._engine.dispose()

    # ── Private helpers ──────────────────────────────────────────

    @staticmethod
    def _lock_user(conn: Connection, user_id: str) -> None:
        if conn.dialect.name == "postgresql":
            conn.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"incurio:{user_id}"},
            )

    @staticmethod
    def _batch_filter(user_id: str, start: datetime, end: datetime) -> list[Any]:
        return [
            sparks_table.c.user_id == user_id,
            sparks_table.c.is_recommendation.is_(False),
            sparks_table.c.created_at >= as_utc(start),
            sparks_table.c.created_at < as_utc(end),
        ]

    # ── Sparks ───────────────────────────────────────────────────

    def sparks_in_range(self, user_id: str, start: datetime, end: datetime) -> list[Spark]:
        """Batch sparks for ``user_id`` created in ``[start, end)``, in slot order.

        Recommendation sparks are excluded.
        """
        stmt = (
            select(sparks_table)
            .where(*self._batch_filter(user_id, start, end))
            .order_by(sparks_table.c.batch_index, sparks_table.c.created_at)
        )
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Range query failed for user {user_id}: {exc}") from exc
        return [_row_to_spark(r) for r in rows]

    def count_in_range(self, user_id: str, start: datetime, end: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(sparks_table)
            .where(*self._batch_filter(user_id, start, end))
        )
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError(f"Count query failed for user {user_id}: {exc}") from exc

    def get_spark(self, spark_id: str) -> Spark | None:
        """Return a spark by id, or None if not found."""
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(sparks_table).where(sparks_table.c.id == spark_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Spark lookup failed for {spark_id}: {exc}") from exc
        return _row_to_spark(row) if row is not None else None

    def get_embedding(self, spark_id: str) -> list[float] | None:
        try:
            with self._engine.connect() as conn:
                vector = conn.execute(
                    select(embeddings_table.c.vector).where(
                        embeddings_table.c.spark_id == spark_id
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Embedding lookup failed for {spark_id}: {exc}") from exc
        return list(vector) if vector is not None else None

    def save_spark_checked(
        self,
        candidate: CandidateSpark,
        embedding: list[float],
        user_id: str,
        *,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        created_at: datetime | None = None,
        day_range: tuple[datetime, datetime] | None = None,
        batch_size: int | None = None,
        batch_index: int = 0,
    ) -> StoredSpark:
        """Atomically compare ``embedding`` with the user's sparks, then insert.

        When ``day_range`` and ``batch_size`` are given the insert is also
        refused once the range already holds ``batch_size`` sparks, and the
        new spark's batch index is assigned from the count in that range.
        ``created_at`` is pinned inside ``day_range`` so a run that crosses
        local midnight still fills the day it started on.

        Returns:
            The committed spark and its similarity scores against every
            prior spark of the user.

        Raises:
            TooSimilarError: Some prior spark scores ``>= threshold``.
            BatchFullError: The day's batch is already full.
            StoreError: Any other persistence failure.
        """
        created_at = as_utc(created_at or utcnow())
        if day_range is not None:
            created_at = _clamp_to_range(created_at, *day_range)
        try:
            with self._engine.begin() as conn:
                self._lock_user(conn, user_id)

                if day_range is not None and batch_size is not None:
                    start, end = day_range
                    existing = conn.execute(
                        select(func.count())
                        .select_from(sparks_table)
                        .where(*self._batch_filter(user_id, start, end))
                    ).scalar_one()
                    if existing >= batch_size:
                        raise BatchFullError(
                            f"User {user_id} already has {existing}/{batch_size} sparks "
                            "for this day"
                        )
                    batch_index = int(existing) + 1

                priors = conn.execute(
                    select(embeddings_table.c.vector).where(
                        embeddings_table.c.user_id == user_id
                    )
                ).scalars().all()
                scores = similarity_scores(embedding, priors)
                worst = max(scores, default=0.0)
                if worst >= threshold:
                    raise TooSimilarError(worst, threshold)

                spark_id = str(uuid.uuid4())
                conn.execute(
                    insert(sparks_table).values(
                        id=spark_id,
                        user_id=user_id,
                        content=candidate.content,
                        details=candidate.details,
                        topic=candidate.topic,
                        created_at=created_at,
                        batch_index=batch_index,
                        is_recommendation=False,
                        recommendation_kind=None,
                    )
                )
                conn.execute(
                    insert(embeddings_table).values(
                        spark_id=spark_id,
                        user_id=user_id,
                        vector=list(embedding),
                    )
                )
        except (TooSimilarError, BatchFullError):
            raise
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save spark for user {user_id}: {exc}") from exc

        spark = Spark(
            id=spark_id,
            user_id=user_id,
            content=candidate.content,
            details=candidate.details,
            topic=candidate.topic,
            created_at=created_at,
            batch_index=batch_index,
        )
        logger.debug(
            "Committed spark %s for %s (max similarity %.3f over %d priors)",
            spark_id,
            user_id,
            worst,
            len(scores),
        )
        return StoredSpark(spark=spark, similarity_scores=scores)

    def add_recommendation_spark(
        self,
        user_id: str,
        topic: str,
        recommendation: GeneratedRecommendation,
        *,
        created_at: datetime | None = None,
    ) -> Spark:
        """Store a milestone recommendation as a flagged spark (no embedding)."""
        spark = Spark(
            id=str(uuid.uuid4()),
            user_id=user_id,
            content=f"{recommendation.title}: {recommendation.why_recommended}",
            details=recommendation.details,
            topic=topic,
            created_at=as_utc(created_at or utcnow()),
            batch_index=0,
            is_recommendation=True,
            recommendation_kind=recommendation.kind,
        )
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(sparks_table).values(
                        **spark.model_dump(exclude={"recommendation_kind"}),
                        recommendation_kind=str(recommendation.kind),
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save recommendation for {user_id}: {exc}") from exc
        return spark

    def recommendations_for_user(self, user_id: str) -> list[Spark]:
        stmt = (
            select(sparks_table)
            .where(
                sparks_table.c.user_id == user_id,
                sparks_table.c.is_recommendation.is_(True),
            )
            .order_by(sparks_table.c.created_at)
        )
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Recommendation query failed for {user_id}: {exc}") from exc
        return [_row_to_spark(r) for r in rows]

    # ── Interactions ─────────────────────────────────────────────

    def record_interaction(
        self,
        user_id: str,
        spark_id: str,
        reaction: Reaction,
        *,
        created_at: datetime | None = None,
    ) -> RecordedInteraction:
        """Insert or replace the user's reaction to a spark.

        A love that replaces no earlier love also bumps the topic's love
        counter in the same transaction, so the reaction and its count are
        written together or not at all.

        Returns:
            The stored interaction, the reaction it replaced, and the new
            love total when one was counted.

        Raises:
            KeyError: The spark does not exist or belongs to another user.
            StoreError: Any other persistence failure.
        """
        created_at = as_utc(created_at or utcnow())
        reaction = Reaction(reaction)
        love_count: int | None = None
        try:
            with self._engine.begin() as conn:
                self._lock_user(conn, user_id)
                row = conn.execute(
                    select(sparks_table.c.user_id, sparks_table.c.topic).where(
                        sparks_table.c.id == spark_id
                    )
                ).first()
                if row is None or row.user_id != user_id:
                    raise KeyError(spark_id)
                topic = row.topic

                previous_raw = conn.execute(
                    select(interactions_table.c.reaction).where(
                        interactions_table.c.user_id == user_id,
                        interactions_table.c.spark_id == spark_id,
                    )
                ).scalar_one_or_none()

                if previous_raw is None:
                    conn.execute(
                        insert(interactions_table).values(
                            user_id=user_id,
                            spark_id=spark_id,
                            reaction=str(reaction),
                            created_at=created_at,
                        )
                    )
                else:
                    conn.execute(
                        update(interactions_table)
                        .where(
                            interactions_table.c.user_id == user_id,
                            interactions_table.c.spark_id == spark_id,
                        )
                        .values(reaction=str(reaction), created_at=created_at)
                    )

                if reaction == Reaction.LOVE and previous_raw != str(Reaction.LOVE):
                    love_count = self._add_love(conn, user_id, topic)
        except KeyError:
            raise
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to record interaction {user_id}/{spark_id}: {exc}"
            ) from exc

        return RecordedInteraction(
            interaction=Interaction(
                user_id=user_id,
                spark_id=spark_id,
                reaction=reaction,
                created_at=created_at,
            ),
            previous=Reaction(previous_raw) if previous_raw is not None else None,
            topic=topic,
            love_count=love_count,
        )

    def get_interaction(self, user_id: str, spark_id: str) -> Interaction | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(interactions_table).where(
                        interactions_table.c.user_id == user_id,
                        interactions_table.c.spark_id == spark_id,
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Interaction lookup failed: {exc}") from exc
        return _row_to_interaction(row) if row is not None else None

    def interacted_spark_ids(
        self,
        user_id: str,
        spark_ids: Iterable[str] | None = None,
    ) -> set[str]:
        """Ids of sparks the user has reacted to, optionally limited to ``spark_ids``."""
        stmt = select(interactions_table.c.spark_id).where(
            interactions_table.c.user_id == user_id
        )
        if spark_ids is not None:
            ids = list(spark_ids)
            if not ids:
                return set()
            stmt = stmt.where(interactions_table.c.spark_id.in_(ids))
        try:
            with self._engine.connect() as conn:
                return set(conn.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Interaction query failed for {user_id}: {exc}") from exc

    def loved_sparks(self, user_id: str, topic: str) -> list[Spark]:
        """Batch sparks on ``topic`` that the user reacted to with love, newest first."""
        stmt = (
            select(sparks_table)
            .join(
                interactions_table,
                interactions_table.c.spark_id == sparks_table.c.id,
            )
            .where(
                interactions_table.c.user_id == user_id,
                interactions_table.c.reaction == str(Reaction.LOVE),
                sparks_table.c.topic == topic,
                sparks_table.c.is_recommendation.is_(False),
            )
            .order_by(sparks_table.c.created_at.desc())
        )
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Loved-spark query failed for {user_id}: {exc}") from exc
        return [_row_to_spark(r) for r in rows]

    @staticmethod
    def _add_love(conn: Connection, user_id: str, topic: str) -> int:
        current = conn.execute(
            select(love_counts_table.c.love_count).where(
                love_counts_table.c.user_id == user_id,
                love_counts_table.c.topic == topic,
            )
        ).scalar_one_or_none()
        if current is None:
            conn.execute(
                insert(love_counts_table).values(user_id=user_id, topic=topic, love_count=1)
            )
            return 1
        conn.execute(
            update(love_counts_table)
            .where(
                love_counts_table.c.user_id == user_id,
                love_counts_table.c.topic == topic,
            )
            .values(love_count=current + 1)
        )
        return int(current) + 1

    def love_count(self, user_id: str, topic: str) -> int:
        """Current love total for ``topic``; 0 when none was counted yet."""
        try:
            with self._engine.connect() as conn:
                value = conn.execute(
                    select(love_counts_table.c.love_count).where(
                        love_counts_table.c.user_id == user_id,
                        love_counts_table.c.topic == topic,
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Love count lookup failed for {user_id}/{topic}: {exc}") from exc
        return int(value or 0)

    # ── Generation locks ─────────────────────────────────────────

    def read_lock(self, user_id: str) -> datetime | None:
        """Return the lock timestamp for ``user_id``, or None if unlocked."""
        try:
            with self._engine.connect() as conn:
                value = conn.execute(
                    select(locks_table.c.acquired_at).where(locks_table.c.user_id == user_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Lock read failed for {user_id}: {exc}") from exc
        return as_utc(value) if value is not None else None

    def insert_lock(self, user_id: str, acquired_at: datetime) -> bool:
        """Create a lock record; False if one already exists."""
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(locks_table).values(user_id=user_id, acquired_at=as_utc(acquired_at))
                )
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise StoreError(f"Lock write failed for {user_id}: {exc}") from exc
        return True

    def replace_lock(self, user_id: str, expected: datetime, acquired_at: datetime) -> bool:
        """Overwrite a lock only if it still holds ``expected``; True on success."""
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(locks_table)
                    .where(
                        locks_table.c.user_id == user_id,
                        locks_table.c.acquired_at == as_utc(expected),
                    )
                    .values(acquired_at=as_utc(acquired_at))
                )
                replaced = result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreError(f"Lock overwrite failed for {user_id}: {exc}") from exc
        return replaced

    def delete_lock(self, user_id: str) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(delete(locks_table).where(locks_table.c.user_id == user_id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Lock delete failed for {user_id}: {exc}") from exc

    # ── Users ────────────────────────────────────────────────────

    def upsert_user(self, profile: UserProfile) -> UserProfile:
        """Insert or replace a user's topic preferences."""
        created_at = as_utc(profile.created_at or utcnow())
        values = {
            "topics": list(profile.topics),
            "preference_text": profile.preference_text,
        }
        try:
            with self._engine.begin() as conn:
                exists = conn.execute(
                    select(users_table.c.id).where(users_table.c.id == profile.id)
                ).scalar_one_or_none()
                if exists is None:
                    conn.execute(
                        insert(users_table).values(
                            id=profile.id, created_at=created_at, **values
                        )
                    )
                else:
                    conn.execute(
                        update(users_table).where(users_table.c.id == profile.id).values(**values)
                    )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save user {profile.id}: {exc}") from exc
        return profile.model_copy(update={"created_at": created_at})

    def get_user(self, user_id: str) -> UserProfile | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(users_table).where(users_table.c.id == user_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"User lookup failed for {user_id}: {exc}") from exc
        if row is None:
            return None
        m = row._mapping
        return UserProfile(
            id=m["id"],
            topics=list(m["topics"] or []),
            preference_text=m["preference_text"] or "",
            created_at=as_utc(m["created_at"]),
        )

    def list_users(self) -> list[UserProfile]:
        """All users, ordered by id."""
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(select(users_table).order_by(users_table.c.id)).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"User listing failed: {exc}") from exc
        return [
            UserProfile(
                id=r._mapping["id"],
                topics=list(r._mapping["topics"] or []),
                preference_text=r._mapping["preference_text"] or "",
                created_at=as_utc(r._mapping["created_at"]),
            )
            for r in rows
        ]
