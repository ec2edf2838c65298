"""
Storage Layer - Where memories live.

Think of this like a filing system with three parts:
1. SQLite tables = The filing cabinet (memories, relations, cached vectors)
2. FTS5 table = A keyword card index, kept in lockstep by triggers
3. ChromaDB = A smart index (finds similar memories by meaning)

SQLite is the source of truth. The two indexes only help with ranking:
- The keyword index can never drift - triggers update it inside the same
  transaction as the memory row.
- The vector index is refreshed after the fact. If that fails the memory is
  still saved, it just won't show up in vector search until re-embedded.
"""

import re
import math
import json
import sqlite3
import functools
import warnings
from pathlib import Path
from typing import Optional

import chromadb
from chromadb.config import Settings

from cortex.errors import ConsistencyWarning, NotFoundError, StorageError, ValidationError
from cortex.log import get_logger
from cortex.types import (
    ListOptions,
    Memory,
    MemoryType,
    Metadata,
    Relation,
    RelationType,
    TrustLevel,
)
from cortex.util import (
    blob_to_vector,
    format_timestamp,
    now,
    parse_timestamp,
    vector_to_blob,
)

logger = get_logger("storage")

COLLECTION_NAME = "cortex_memories"
MAX_SEARCH_RESULTS = 1000  # hard cap for any single index query

MEMORY_COLUMNS = (
    "id, content, type, topic_key, tags, trust, metadata, "
    "created_at, updated_at, access_count"
)

SCHEMA = """
-- Memories table
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'general',
    topic_key TEXT,
    tags TEXT,               -- JSON array
    trust TEXT NOT NULL DEFAULT 'proposed',
    metadata TEXT,           -- JSON object
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_memories_topic_key ON memories(topic_key);
CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_trust ON memories(trust);
CREATE INDEX IF NOT EXISTS idx_memories_updated ON memories(updated_at);

-- Relations table
CREATE TABLE IF NOT EXISTS relations (
    id TEXT PRIMARY KEY,
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    type TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (from_id) REFERENCES memories(id) ON DELETE CASCADE,
    FOREIGN KEY (to_id) REFERENCES memories(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_id);
CREATE INDEX IF NOT EXISTS idx_relations_to ON relations(to_id);
CREATE INDEX IF NOT EXISTS idx_relations_type ON relations(type);

-- Embeddings cache (raw little-endian float32 vectors)
CREATE TABLE IF NOT EXISTS embeddings (
    memory_id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
);

-- Full-text search for keyword matching
CREATE VIRTUAL TABLE IF NOT EXISTS fts_memories USING fts5(
    content,
    topic_key,
    tags,
    content=memories,
    content_rowid=rowid
);

-- Triggers keep the keyword index in the same transaction as the row
CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO fts_memories(rowid, content, topic_key, tags)
    VALUES (new.rowid, new.content, new.topic_key, new.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO fts_memories(fts_memories, rowid, content, topic_key, tags)
    VALUES ('delete', old.rowid, old.content, old.topic_key, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF content, topic_key, tags ON memories BEGIN
    INSERT INTO fts_memories(fts_memories, rowid, content, topic_key, tags)
    VALUES ('delete', old.rowid, old.content, old.topic_key, old.tags);
    INSERT INTO fts_memories(rowid, content, topic_key, tags)
    VALUES (new.rowid, new.content, new.topic_key, new.tags);
END;
"""


def _storage_op(func):
    """Turn sqlite3 errors into StorageError."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StorageError(f"{func.__name__} failed: {e}") from e
    return wrapper


def _warn_consistency(message: str) -> None:
    logger.warning(message)
    warnings.warn(message, ConsistencyWarning, stacklevel=3)


class MemoryStore:
    """The entity repository: memories, relations, embeddings + both indexes.

    Usage:
        store = MemoryStore(Path(".cortex/cortex.db"))
        store.save_memory(memory)
        store.save_embedding(memory.id, vector, "text-embedding-3-small")
        hits = store.vector_search(query_vector, limit=10)
    """

    def __init__(
        self,
        db_path: Path,
        vector_dir: Optional[Path] = None,
        dimensions: int = 1536,
    ):
        """Open (and if needed create) the store.

        Args:
            db_path: SQLite file. Parent directories are created.
            vector_dir: ChromaDB directory. Defaults to <db dir>/chromadb
            dimensions: Vector width every stored embedding must have

        Raises:
            StorageError: Anything failed while opening or migrating.
        """
        self.db_path = Path(db_path)
        self.vector_dir = Path(vector_dir) if vector_dir else self.db_path.parent / "chromadb"
        self.dimensions = dimensions
        self.db = None

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_sqlite()
        except (sqlite3.Error, OSError) as e:
            self.close()
            raise StorageError(f"failed to open database {self.db_path}: {e}") from e

        try:
            self._init_chromadb()
        except Exception as e:
            self.close()
            raise StorageError(f"failed to open vector index {self.vector_dir}: {e}") from e

    def _init_sqlite(self):
        """Create the filing cabinet (tables, keyword index, triggers)."""
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
        self.db.row_factory = sqlite3.Row

        # WAL + busy timeout: concurrent processes wait instead of failing
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA busy_timeout=5000")
        # Needed for ON DELETE CASCADE
        self.db.execute("PRAGMA foreign_keys=ON")

        self.db.executescript(SCHEMA)
        self.db.commit()

    def _init_chromadb(self):
        """Create the smart index (vector database)."""
        self.vector_dir.mkdir(parents=True, exist_ok=True)
        self.chroma = chromadb.PersistentClient(
            path=str(self.vector_dir),
            settings=Settings(
                anonymized_telemetry=False,  # Don't send usage data
                allow_reset=True,
            ),
        )
        self.collection = self.chroma.get_or_create_collection(
            name=COLLECTION_NAME,
            # Euclidean distance; recall turns it into similarity
            metadata={"hnsw:space": "l2"},
        )

    def close(self) -> None:
        """Release the SQLite connection. Safe to call twice."""
        if self.db is not None:
            try:
                self.db.close()
            finally:
                self.db = None

    # =========================================================================
    # MEMORIES
    # =========================================================================

    @_storage_op
    def save_memory(self, memory: Memory) -> None:
        """Insert a memory, or update every field if the ID exists."""
        with self.db:
            self.db.execute(
                f"""
                INSERT INTO memories ({MEMORY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    type = excluded.type,
                    topic_key = excluded.topic_key,
                    tags = excluded.tags,
                    trust = excluded.trust,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at,
                    access_count = excluded.access_count
                """,
                (
                    memory.id,
                    memory.content,
                    memory.type.value,
                    memory.topic_key,
                    json.dumps(list(memory.tags)),
                    memory.trust.value,
                    json.dumps(memory.metadata.to_dict()),
                    format_timestamp(memory.created_at),
                    format_timestamp(memory.updated_at),
                    memory.access_count,
                ),
            )

        self._sync_index_metadata(memory)

    @_storage_op
    def get_memory(self, memory_id: str) -> Optional[Memory]:
        row = self.db.execute(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?",
            (memory_id,),
        ).fetchone()
        return self._row_to_memory(row) if row else None

    @_storage_op
    def get_memory_by_topic_key(self, topic_key: str) -> Optional[Memory]:
        """Most recently updated memory with this exact topic key."""
        row = self.db.execute(
            f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE topic_key = ?
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (topic_key,),
        ).fetchone()
        return self._row_to_memory(row) if row else None

    @_storage_op
    def list_memories(self, options: Optional[ListOptions] = None) -> list[Memory]:
        """Memories matching every given filter, newest update first.

        Filters that are set but match nothing just produce an empty list.
        """
        options = options or ListOptions()
        conditions = []
        params = []

        if options.types:
            conditions.append(f"type IN ({_placeholders(options.types)})")
            params.extend(t.value for t in options.types)

        if options.trust_levels:
            conditions.append(f"trust IN ({_placeholders(options.trust_levels)})")
            params.extend(t.value for t in options.trust_levels)

        if options.tags:
            # Any-of match against the JSON array column
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(memories.tags) "
                f"WHERE json_each.value IN ({_placeholders(options.tags)}))"
            )
            params.extend(options.tags)

        if options.project:
            conditions.append("json_extract(metadata, '$.project') = ?")
            params.append(options.project)

        if options.topic_key_prefix:
            conditions.append("topic_key LIKE ? ESCAPE '\\'")
            params.append(_escape_like(options.topic_key_prefix) + "%")

        query = f"SELECT {MEMORY_COLUMNS} FROM memories"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY updated_at DESC"

        if options.limit and options.limit > 0:
            query += " LIMIT ?"
            params.append(int(options.limit))

        rows = self.db.execute(query, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    @_storage_op
    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory everywhere.

        Relations and the cached embedding go with it (ON DELETE CASCADE),
        the keyword index via trigger, the vector index explicitly.

        Returns:
            True if a memory was deleted, False if the ID didn't exist
        """
        with self.db:
            cursor = self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        deleted = cursor.rowcount > 0

        if deleted:
            try:
                self.collection.delete(ids=[memory_id])
            except Exception as e:
                # Recall re-reads SQLite, so an orphaned vector is never returned
                _warn_consistency(f"memory {memory_id} deleted but vector index entry remains: {e}")

        return deleted

    @_storage_op
    def increment_access_count(self, memory_id: str) -> bool:
        with self.db:
            cursor = self.db.execute(
                "UPDATE memories SET access_count = access_count + 1 WHERE id = ?",
                (memory_id,),
            )
        return cursor.rowcount > 0

    @_storage_op
    def update_trust(self, memory_id: str, trust: TrustLevel) -> Memory:
        """Set the trust level (and bump updated_at).

        Raises:
            NotFoundError: No memory with this ID.
        """
        trust = TrustLevel.parse(trust)
        with self.db:
            cursor = self.db.execute(
                "UPDATE memories SET trust = ?, updated_at = ? WHERE id = ?",
                (trust.value, format_timestamp(now()), memory_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError("memory", memory_id)

        memory = self.get_memory(memory_id)
        self._sync_index_metadata(memory)
        return memory

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            content=row["content"],
            type=MemoryType(row["type"]),
            topic_key=row["topic_key"] or None,
            tags=json.loads(row["tags"]) if row["tags"] else [],
            trust=TrustLevel(row["trust"]),
            metadata=Metadata.from_dict(json.loads(row["metadata"]) if row["metadata"] else None),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            access_count=row["access_count"] or 0,
        )

    # =========================================================================
    # RELATIONS
    # =========================================================================

    @_storage_op
    def save_relation(self, relation: Relation) -> None:
        """Insert an edge. Both endpoints must exist (foreign keys).

        Raises:
            NotFoundError: An endpoint disappeared before the insert.
        """
        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO relations (id, from_id, to_id, type, note, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        relation.id,
                        relation.from_id,
                        relation.to_id,
                        relation.type.value,
                        relation.note,
                        format_timestamp(relation.created_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            missing = relation.from_id if self.get_memory(relation.from_id) is None else relation.to_id
            raise NotFoundError("memory", missing) from e

    @_storage_op
    def get_relation(self, relation_id: str) -> Optional[Relation]:
        row = self.db.execute(
            "SELECT id, from_id, to_id, type, note, created_at FROM relations WHERE id = ?",
            (relation_id,),
        ).fetchone()
        return self._row_to_relation(row) if row else None

    def get_relations_from(self, memory_id: str) -> list[Relation]:
        """Outgoing edges (memory_id is the source)."""
        return self._get_relations("from_id = ?", (memory_id,))

    def get_relations_to(self, memory_id: str) -> list[Relation]:
        """Incoming edges (memory_id is the target)."""
        return self._get_relations("to_id = ?", (memory_id,))

    def all_relations(self) -> list[Relation]:
        return self._get_relations("1 = 1", ())

    @_storage_op
    def _get_relations(self, condition: str, params: tuple) -> list[Relation]:
        rows = self.db.execute(
            f"""
            SELECT id, from_id, to_id, type, note, created_at
            FROM relations WHERE {condition}
            ORDER BY created_at, rowid
            """,
            params,
        ).fetchall()
        return [self._row_to_relation(row) for row in rows]

    @_storage_op
    def delete_relation(self, relation_id: str) -> bool:
        with self.db:
            cursor = self.db.execute("DELETE FROM relations WHERE id = ?", (relation_id,))
        return cursor.rowcount > 0

    def _row_to_relation(self, row: sqlite3.Row) -> Relation:
        return Relation(
            id=row["id"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=RelationType(row["type"]),
            note=row["note"] or None,
            created_at=parse_timestamp(row["created_at"]),
        )

    # =========================================================================
    # EMBEDDINGS + VECTOR INDEX
    # =========================================================================

    @_storage_op
    def save_embedding(self, memory_id: str, vector, model: str) -> None:
        """Cache the raw vector and refresh the vector index.

        The cache row and the index entry are written separately. If the
        index write fails the cache row stays; reindexing repairs it.

        Raises:
            ValidationError: Vector width doesn't match the store.
            NotFoundError: No memory with this ID.
            StorageError: The cache row or index entry couldn't be written.
        """
        vector = [float(x) for x in vector]
        if len(vector) != self.dimensions:
            raise ValidationError(
                f"embedding has {len(vector)} dimensions, store expects {self.dimensions}"
            )

        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO embeddings (memory_id, embedding, model, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(memory_id) DO UPDATE SET
                        embedding = excluded.embedding,
                        model = excluded.model,
                        created_at = excluded.created_at
                    """,
                    (memory_id, vector_to_blob(vector), model, format_timestamp(now())),
                )
        except sqlite3.IntegrityError as e:
            raise NotFoundError("memory", memory_id) from e

        memory = self.get_memory(memory_id)
        if memory is None:
            raise NotFoundError("memory", memory_id)
        try:
            # Chroma upserts natively, so there is no delete/insert gap
            self.collection.upsert(
                ids=[memory_id],
                embeddings=[vector],
                metadatas=[_index_metadata(memory)],
            )
        except Exception as e:
            raise StorageError(f"vector index update failed for {memory_id}: {e}") from e

    @_storage_op
    def get_embedding(self, memory_id: str) -> Optional[list[float]]:
        """The cached vector for a memory, or None."""
        row = self.db.execute(
            "SELECT embedding FROM embeddings WHERE memory_id = ?",
            (memory_id,),
        ).fetchone()
        return blob_to_vector(row["embedding"]) if row else None

    @_storage_op
    def memories_missing_embeddings(self, model: Optional[str] = None) -> list[Memory]:
        """Memories that vector search can't currently see.

        That's any memory with no cached vector, a vector from a different
        model (when model is given), or no entry in the vector index.
        """
        rows = self.db.execute(
            """
            SELECT m.*, e.model AS embedding_model
            FROM memories m
            LEFT JOIN embeddings e ON e.memory_id = m.id
            ORDER BY m.created_at
            """
        ).fetchall()

        try:
            indexed = set(self.collection.get(include=[])["ids"])
        except Exception as e:
            raise StorageError(f"failed to read vector index: {e}") from e

        missing = []
        for row in rows:
            if (
                row["embedding_model"] is None
                or (model and row["embedding_model"] != model)
                or row["id"] not in indexed
            ):
                missing.append(self._row_to_memory(row))
        return missing

    def vector_search(
        self,
        query_vector,
        limit: int,
        trust_levels: Optional[list] = None,
    ) -> list[tuple[str, float]]:
        """Nearest memories to a vector.

        Args:
            query_vector: Embedding of the query
            limit: Max results (capped at MAX_SEARCH_RESULTS)
            trust_levels: Only return memories at these trust levels

        Returns:
            (memory_id, distance) pairs, closest first. Distance is
            Euclidean (L2).

        Raises:
            StorageError: The vector index query failed.
        """
        limit = min(int(limit), MAX_SEARCH_RESULTS)
        if limit <= 0:
            return []

        where = None
        if trust_levels:
            where = {"trust": {"$in": [TrustLevel.parse(t).value for t in trust_levels]}}

        try:
            if self.collection.count() == 0:
                return []
            results = self.collection.query(
                query_embeddings=[[float(x) for x in query_vector]],
                n_results=limit,
                where=where,
                include=["distances"],
            )
        except Exception as e:
            raise StorageError(f"vector search failed: {e}") from e

        if not results["ids"] or not results["ids"][0]:
            return []

        # Chroma's l2 space reports squared distances
        hits = [
            (memory_id, math.sqrt(max(distance, 0.0)))
            for memory_id, distance in zip(results["ids"][0], results["distances"][0])
        ]
        hits.sort(key=lambda hit: hit[1])
        return hits[:limit]

    # =========================================================================
    # KEYWORD INDEX
    # =========================================================================

    @_storage_op
    def keyword_search(self, text: str, limit: int) -> list[str]:
        """Memory IDs whose content/topic key/tags contain every query word.

        Ordered by FTS5 rank (bm25, best first).
        """
        limit = min(int(limit), MAX_SEARCH_RESULTS)
        match = _fts_query(text)
        if not match or limit <= 0:
            return []

        rows = self.db.execute(
            """
            SELECT m.id
            FROM fts_memories f
            JOIN memories m ON f.rowid = m.rowid
            WHERE fts_memories MATCH ?
            ORDER BY rank
            LIMIT ?
            """,
            (match, limit),
        ).fetchall()
        return [row["id"] for row in rows]

    # =========================================================================
    # STATS
    # =========================================================================

    @_storage_op
    def stats(self) -> dict:
        """Row counts per table."""
        return {
            "memories": self.db.execute("SELECT COUNT(*) FROM memories").fetchone()[0],
            "relations": self.db.execute("SELECT COUNT(*) FROM relations").fetchone()[0],
            "embeddings": self.db.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0],
        }

    # =========================================================================
    # INDEX HELPERS
    # =========================================================================

    def _sync_index_metadata(self, memory: Optional[Memory]) -> None:
        """Push trust/type/project to an existing vector index entry.

        Vector search filters on trust inside the index, so the index copy
        has to follow the table. Entries not yet embedded are skipped.
        """
        if memory is None:
            return
        try:
            existing = self.collection.get(ids=[memory.id], include=[])
            if existing["ids"]:
                self.collection.update(
                    ids=[memory.id],
                    metadatas=[_index_metadata(memory)],
                )
        except Exception as e:
            _warn_consistency(f"vector index metadata for {memory.id} is stale: {e}")


def _index_metadata(memory: Memory) -> dict:
    return {
        "trust": memory.trust.value,
        "type": memory.type.value,
        "project": memory.project or "",
    }


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _fts_query(text: str) -> str:
    """Quote each word so FTS5 operators and punctuation are taken literally."""
    words = re.findall(r"\w+", text or "")
    return " ".join(f'"{word}"' for word in dict.fromkeys(words))
