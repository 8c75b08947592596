"""Repository pattern for all docfuse database operations.

Single interface for: sources, chunks, FTS5 lexical index, vec embeddings,
and the hybrid candidate query. The FTS5 index follows the chunks table
through triggers; vec rows are written and deleted here.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from docfuse.db.fulltext import FTS_TABLE
from docfuse.db.models import Candidate, Chunk, SearchFilters, Source
from docfuse.db.vectors import serialize
from docfuse.errors import PersistenceError, ValidationError
from docfuse.lifecycle import COMPLETED, PENDING, PROCESSING, check_transition

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"

_SOURCE_COLUMNS = (
    "id, source_type, title, file_name, file_size, mime_type, url, category, tags, "
    "description, tenant, status, error_message, chunk_count, content_hash, "
    "created_at, updated_at"
)

_CHUNK_COLUMNS = (
    "c.id, c.source_id, c.chunk_index, c.content, c.context, c.token_count, "
    "c.metadata, c.created_at"
)

_FILTER_SQL = """
      AND (:category IS NULL OR s.category = :category)
      AND (:source_type IS NULL OR s.source_type = :source_type)
      AND (:tenant IS NULL OR s.tenant = :tenant)
"""


class Repository:
    """Data access layer for all docfuse database entities.

    Wraps an open sqlite3.Connection (autocommit mode, see Database.connect)
    and provides typed methods for sources, chunks, embeddings and search.
    The connection is owned by the caller and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection, vec_table: str | None = None) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see docfuse.db.schema.initialize).
            vec_table: Name of the vec table for the deployment's embedding
                model. Required for chunk writes and searches.
        """
        self._conn = conn
        self._vec_table = vec_table

    @property
    def vec_table(self) -> str:
        if self._vec_table is None:
            raise PersistenceError("Repository was opened without a vector table")
        return self._vec_table

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically; wrap sqlite errors."""
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not start transaction: {exc}") from exc
        try:
            yield self._conn
        except sqlite3.Error as exc:
            self._conn.execute("ROLLBACK")
            raise PersistenceError(str(exc)) from exc
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record in ``pending`` status."""
        try:
            self._conn.execute(
                """
                INSERT INTO sources (id, source_type, title, file_name, file_size, mime_type,
                                     url, category, tags, description, tenant, content_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source.id,
                    source.source_type,
                    source.title,
                    source.file_name,
                    source.file_size,
                    source.mime_type,
                    source.url,
                    source.category,
                    json.dumps(sorted(set(source.tags))),
                    source.description,
                    source.tenant,
                    source.content_hash,
                ),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not insert source '{source.id}': {exc}") from exc

    def get_source(self, source_id: str) -> Source | None:
        """Return a source by ID, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return _row_to_source(row) if row else None

    def get_source_by_hash(self, content_hash: str) -> Source | None:
        """Return the newest source whose extracted text hashed to *content_hash*."""
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE content_hash = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (content_hash,),
        ).fetchone()
        return _row_to_source(row) if row else None

    def find_source_ids(self, prefix: str) -> list[str]:
        """Return ids of sources whose id starts with *prefix*, oldest first."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._conn.execute(
            "SELECT id FROM sources WHERE id LIKE ? ESCAPE '\\' ORDER BY created_at, id",
            (escaped + "%",),
        ).fetchall()
        return [r["id"] for r in rows]

    def list_sources(self, status: str | None = None) -> list[Source]:
        """Return sources ordered by creation time (oldest first), optionally by status."""
        if status is None:
            rows = self._conn.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY created_at, id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE status = ? ORDER BY created_at, id",
                (status,),
            ).fetchall()
        return [_row_to_source(r) for r in rows]

    def update_source_status(
        self,
        source_id: str,
        status: str,
        chunk_count: int | None = None,
        error_message: str | None = None,
    ) -> Source:
        """Move a source to *status*, enforcing the lifecycle table.

        Moving to ``completed`` requires *chunk_count*, which must equal the
        number of stored chunk rows; this write is the commit point of a run.

        Raises:
            ValidationError: Unknown source, or completion without a matching count.
            IllegalTransitionError: Transition not allowed from the current status.
            PersistenceError: The store rejected the write.
        """
        with self._transaction() as conn:
            current = self._current_status(source_id)
            check_transition(current, status)

            if status == COMPLETED:
                stored = self.count_chunks(source_id)
                if chunk_count is None or chunk_count != stored:
                    raise ValidationError(
                        f"Cannot complete source '{source_id}': chunk_count={chunk_count} "
                        f"but {stored} chunk rows are stored"
                    )

            conn.execute(
                f"""
                UPDATE sources
                SET status = ?,
                    chunk_count = COALESCE(?, chunk_count),
                    error_message = ?,
                    updated_at = {_NOW}
                WHERE id = ?
                """,
                (status, chunk_count, error_message, source_id),
            )
        return self.get_source(source_id)  # type: ignore[return-value]

    def list_stuck_sources(self) -> list[Source]:
        """Return sources left in ``processing`` (e.g. after a host crash)."""
        return self.list_sources(status=PROCESSING)

    def delete_source(self, source_id: str) -> bool:
        """Delete a source, its chunks, FTS entries and embeddings.

        Returns:
            True if a source row was deleted.
        """
        with self._transaction() as conn:
            self._delete_embeddings(source_id)
            cur = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        return cur.rowcount > 0

    def reset_source(self, source_id: str) -> Source:
        """Delete all chunks of a source and return it to ``pending``.

        Clears ``error_message`` and sets ``chunk_count`` to 0. Resetting a
        pending source is a no-op; a source in ``processing`` cannot be reset.
        """
        with self._transaction() as conn:
            current = self._current_status(source_id)
            if current != PENDING:
                check_transition(current, PENDING)
            self._delete_embeddings(source_id)
            conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
            conn.execute(
                f"""
                UPDATE sources
                SET status = ?, chunk_count = 0, error_message = NULL, updated_at = {_NOW}
                WHERE id = ?
                """,
                (PENDING, source_id),
            )
        return self.get_source(source_id)  # type: ignore[return-value]

    def _current_status(self, source_id: str) -> str:
        row = self._conn.execute(
            "SELECT status FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        if row is None:
            raise ValidationError(f"Source '{source_id}' not found")
        return row["status"]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: list[Chunk]) -> list[int]:
        """Insert chunk rows and their embeddings in one transaction.

        The FTS5 index is filled by trigger from the generated
        ``content_for_search`` column. Either every chunk of the batch is
        stored or none is.

        Returns:
            The new chunk ids, in input order.
        """
        vec_table = self.vec_table
        ids: list[int] = []
        with self._transaction() as conn:
            for chunk in chunks:
                if chunk.embedding is None:
                    raise PersistenceError(
                        f"Chunk {chunk.chunk_index} of source '{chunk.source_id}' has no embedding"
                    )
                cur = conn.execute(
                    """
                    INSERT INTO chunks (source_id, chunk_index, content, context, token_count, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.source_id,
                        chunk.chunk_index,
                        chunk.content,
                        chunk.context,
                        chunk.token_count,
                        chunk.metadata,
                    ),
                )
                chunk_id = cur.lastrowid
                conn.execute(
                    f"INSERT INTO {vec_table}(rowid, embedding) VALUES (?, ?)",
                    (chunk_id, serialize(chunk.embedding)),
                )
                chunk.id = chunk_id
                ids.append(chunk_id)
        return ids

    def count_chunks(self, source_id: str) -> int:
        """Return the number of chunks belonging to *source_id*."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE source_id = ?", (source_id,)
        ).fetchone()[0]

    def list_chunks(self, source_id: str) -> list[Chunk]:
        """Return the chunks of *source_id* ordered by chunk_index."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.source_id = ? ORDER BY c.chunk_index",
            (source_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_content_for_search(self, chunk_id: int) -> str | None:
        """Return the stored (generated) search text of a chunk."""
        row = self._conn.execute(
            "SELECT content_for_search FROM chunks WHERE id = ?", (chunk_id,)
        ).fetchone()
        return row["content_for_search"] if row else None

    def get_index_setting(self, key: str) -> str | None:
        """Return a deployment-wide index setting (see schema.bind_index_settings)."""
        row = self._conn.execute(
            "SELECT value FROM index_settings WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def _delete_embeddings(self, source_id: str) -> int:
        """Delete vec rows for *source_id* from every vec table. Caller holds the transaction."""
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE source_id = ?", (source_id,)
            ).fetchall()
        ]
        if not rowids:
            return 0

        vec_tables = [
            r[0]
            for r in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'vec_chunks_%' "
                "AND sql LIKE 'CREATE VIRTUAL TABLE%'"
            ).fetchall()
        ]

        total_deleted = 0
        placeholders = ",".join("?" * len(rowids))
        for table in vec_tables:
            cur = self._conn.execute(
                f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                rowids,
            )
            total_deleted += max(cur.rowcount, 0)
        return total_deleted

    # ------------------------------------------------------------------
    # Candidate queries
    # ------------------------------------------------------------------

    def search_hybrid_candidates(
        self,
        query_embedding: list[float],
        match_query: str,
        filters: SearchFilters | None = None,
        similarity_floor: float = 0.5,
    ) -> list[Candidate]:
        """Return chunks of completed sources that pass EITHER signal.

        A chunk is a candidate when its cosine similarity to
        *query_embedding* exceeds *similarity_floor* or its lexical index
        matches *match_query* (an FTS5 expression, see build_match_query).
        Each candidate carries its similarity and raw bm25 (None if no
        lexical match). Unordered; ranking is the caller's job.
        """
        if not match_query:
            return self.search_vector_candidates(query_embedding, filters, similarity_floor)

        sql = f"""
            WITH vec AS MATERIALIZED (
                SELECT rowid AS chunk_id,
                       COALESCE(1.0 - vec_distance_cosine(embedding, :query), 0.0) AS similarity
                FROM {self.vec_table}
            ),
            lex AS MATERIALIZED (
                SELECT rowid AS chunk_id, bm25({FTS_TABLE}) AS bm25
                FROM {FTS_TABLE}
                WHERE {FTS_TABLE} MATCH :match
            )
            SELECT {_CHUNK_COLUMNS},
                   s.title AS source_title,
                   s.source_type AS source_type,
                   s.created_at AS source_created_at,
                   vec.similarity AS vector_similarity,
                   lex.bm25 AS bm25
            FROM chunks c
            JOIN sources s ON s.id = c.source_id
            JOIN vec ON vec.chunk_id = c.id
            LEFT JOIN lex ON lex.chunk_id = c.id
            WHERE s.status = 'completed'
              {_FILTER_SQL}
              AND (vec.similarity > :floor OR lex.chunk_id IS NOT NULL)
        """
        params = _filter_params(filters)
        params.update(
            query=serialize(query_embedding), match=match_query, floor=similarity_floor
        )
        return self._fetch_candidates(sql, params)

    def search_vector_candidates(
        self,
        query_embedding: list[float],
        filters: SearchFilters | None = None,
        similarity_floor: float = 0.5,
    ) -> list[Candidate]:
        """Return chunks of completed sources with similarity above the floor."""
        sql = f"""
            WITH vec AS MATERIALIZED (
                SELECT rowid AS chunk_id,
                       COALESCE(1.0 - vec_distance_cosine(embedding, :query), 0.0) AS similarity
                FROM {self.vec_table}
            )
            SELECT {_CHUNK_COLUMNS},
                   s.title AS source_title,
                   s.source_type AS source_type,
                   s.created_at AS source_created_at,
                   vec.similarity AS vector_similarity,
                   NULL AS bm25
            FROM chunks c
            JOIN sources s ON s.id = c.source_id
            JOIN vec ON vec.chunk_id = c.id
            WHERE s.status = 'completed'
              {_FILTER_SQL}
              AND vec.similarity > :floor
        """
        params = _filter_params(filters)
        params.update(query=serialize(query_embedding), floor=similarity_floor)
        return self._fetch_candidates(sql, params)

    def _fetch_candidates(self, sql: str, params: dict) -> list[Candidate]:
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Search query failed: {exc}") from exc
        return [
            Candidate(
                chunk=_row_to_chunk(r),
                source_title=r["source_title"],
                source_type=r["source_type"],
                source_created_at=r["source_created_at"],
                vector_similarity=float(r["vector_similarity"]),
                bm25=r["bm25"],
            )
            for r in rows
        ]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _filter_params(filters: SearchFilters | None) -> dict:
    f = filters or SearchFilters()
    return {"category": f.category, "source_type": f.source_type, "tenant": f.tenant}


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        source_type=row["source_type"],
        title=row["title"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        mime_type=row["mime_type"],
        url=row["url"],
        category=row["category"],
        tags=json.loads(row["tags"]),
        description=row["description"],
        tenant=row["tenant"],
        status=row["status"],
        error_message=row["error_message"],
        chunk_count=row["chunk_count"],
        content_hash=row["content_hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        source_id=row["source_id"],
        chunk_index=row["chunk_index"],
        content=row["content"],
        context=row["context"],
        token_count=row["token_count"],
        metadata=row["metadata"],
        created_at=row["created_at"],
    )
