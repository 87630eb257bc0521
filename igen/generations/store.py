"""Generation storage: Postgres (preferred) or file-based fallback.

Both backends implement the conditional ``transition`` primitive: the write only
lands if the stored status still equals ``from_status``. That compare-and-set is
what keeps terminal transitions exactly-once when a webhook and a poll sweep
race on the same record.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from igen.config import Settings, get_settings
from igen.errors import Conflict, DuplicateId, NotFound, StorageError, ValidationError
from igen.generations.cursor import clamp_limit, decode_cursor, encode_cursor, sort_key
from igen.generations.models import (
    Generation,
    GenerationFilter,
    GenerationStatus,
    Page,
    TransitionPatch,
    apply_transition,
    merge_tags,
)

logger = logging.getLogger(__name__)


class GenerationStore(Protocol):
    def create(self, gen: Generation) -> str: ...
    def get(self, gen_id: str) -> Generation: ...
    def find_by_provider_request_id(self, provider: str, request_id: str) -> Generation | None: ...
    def list(
        self, filter: GenerationFilter | None = None, cursor: str | None = None, limit: int | None = None
    ) -> Page: ...
    def list_pending(
        self,
        older_than: datetime,
        limit: int,
        polled_before: datetime | None = None,
        providers: list[str] | None = None,
    ) -> list[Generation]: ...
    def mark_polled(self, gen_id: str, at: datetime) -> None: ...
    def transition(
        self, gen_id: str, from_status: GenerationStatus, to_status: GenerationStatus, patch: TransitionPatch
    ) -> Generation: ...
    def update_tags(
        self, gen_id: str, add: list[str], remove: list[str], max_tags: int | None = None
    ) -> list[str]: ...
    def delete(self, gen_id: str) -> Generation: ...
    def list_tags(self) -> list[str]: ...


def _check_tag_limit(tags: list[str], max_tags: int | None) -> None:
    if max_tags is not None and len(tags) > max_tags:
        raise ValidationError(f"at most {max_tags} tags allowed")


def _poll_order(gen: Generation) -> tuple[int, int, str]:
    """Never-polled first, then least recently polled, then oldest."""
    polled = sort_key(gen.last_polled_at, "")[0] if gen.last_polled_at else -1
    return (polled, *sort_key(gen.created_at, gen.id))


def _page(rows: list[Generation], limit: int) -> Page:
    """Rows were fetched with limit + 1 to detect a next page."""
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = encode_cursor(items[-1].created_at, items[-1].id) if has_more and items else None
    return Page(items=items, next_cursor=next_cursor)


# ---------------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------------

_COLUMNS = (
    "id, endpoint, provider, input, status, provider_request_id, tags, artifact, error, "
    "provider_metadata, created_at, completed_at, last_polled_at"
)


class PostgresGenerationStore:
    """Persist generations in Postgres. Survives restarts; safe across workers.

    Request threads and the sweeper share one connection, so statements are
    serialized through ``_lock`` and an explicit transaction holds it until
    commit or rollback.
    """

    def __init__(self, database_url: str, statement_timeout_ms: int = 10_000):
        self._url = database_url
        self._timeout_ms = statement_timeout_ms
        self._lock = threading.RLock()
        self._conn = self._connect()

    def _connect(self):
        try:
            import psycopg
        except ImportError:
            raise ImportError(
                "psycopg required for Postgres generation store. pip install 'psycopg[binary]'"
            )
        try:
            conn = psycopg.connect(
                self._url,
                autocommit=True,
                connect_timeout=max(1, self._timeout_ms // 1000),
                options=f"-c statement_timeout={self._timeout_ms}",
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS igen_generations (
                    id TEXT PRIMARY KEY,
                    endpoint TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    input JSONB NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL,
                    provider_request_id TEXT NOT NULL,
                    tags JSONB NOT NULL DEFAULT '[]',
                    artifact JSONB,
                    error JSONB,
                    provider_metadata JSONB NOT NULL DEFAULT '{}',
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    last_polled_at TIMESTAMPTZ
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_igen_generations_created
                ON igen_generations (created_at DESC, id DESC)
            """)
            conn.execute("ALTER TABLE igen_generations ADD COLUMN IF NOT EXISTS last_polled_at TIMESTAMPTZ")
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_igen_generations_status_created
                ON igen_generations (status, created_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_igen_generations_provider_request
                ON igen_generations (provider, provider_request_id)
            """)
            return conn
        except psycopg.Error as e:
            raise StorageError(f"Could not connect to generation store: {e}") from e

    def _execute(self, query: str, params: tuple = ()):
        import psycopg

        with self._lock:
            try:
                return self._conn.execute(query, params)
            except psycopg.errors.UniqueViolation as e:
                raise DuplicateId(f"Generation already exists: {params[0] if params else ''}") from e
            except psycopg.Error as e:
                logger.exception("generation_store_query_failed")
                raise StorageError(f"Generation store query failed: {e.__class__.__name__}") from e

    def create(self, gen: Generation) -> str:
        self._execute(
            f"""
            INSERT INTO igen_generations ({_COLUMNS})
            VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s::jsonb, %s, %s, %s)
            """,
            (
                gen.id,
                gen.endpoint,
                gen.provider,
                json.dumps(gen.input),
                gen.status.value,
                gen.provider_request_id,
                json.dumps(gen.tags),
                gen.artifact.model_dump_json() if gen.artifact else None,
                gen.error.model_dump_json() if gen.error else None,
                json.dumps(gen.provider_metadata),
                gen.created_at,
                gen.completed_at,
                gen.last_polled_at,
            ),
        )
        return gen.id

    def get(self, gen_id: str) -> Generation:
        row = self._execute(
            f"SELECT {_COLUMNS} FROM igen_generations WHERE id = %s", (gen_id,)
        ).fetchone()
        if not row:
            raise NotFound(f"Generation not found: {gen_id}")
        return self._row_to_generation(row)

    def find_by_provider_request_id(self, provider: str, request_id: str) -> Generation | None:
        row = self._execute(
            f"""
            SELECT {_COLUMNS} FROM igen_generations
            WHERE provider = %s AND provider_request_id = %s
            ORDER BY created_at DESC LIMIT 1
            """,
            (provider, request_id),
        ).fetchone()
        return self._row_to_generation(row) if row else None

    def list(
        self, filter: GenerationFilter | None = None, cursor: str | None = None, limit: int | None = None
    ) -> Page:
        filter = filter or GenerationFilter()
        limit = clamp_limit(limit)
        clauses: list[str] = []
        params: list[Any] = []
        if filter.status is not None:
            clauses.append("status = %s")
            params.append(filter.status.value)
        if filter.endpoint:
            clauses.append("endpoint = %s")
            params.append(filter.endpoint)
        if filter.tags:
            clauses.append("tags @> %s::jsonb")
            params.append(json.dumps(filter.tags))
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            clauses.append("(created_at, id) < (%s, %s)")
            params.extend([created_at, last_id])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = self._execute(
            f"""
            SELECT {_COLUMNS} FROM igen_generations {where}
            ORDER BY created_at DESC, id DESC LIMIT %s
            """,
            tuple(params),
        ).fetchall()
        return _page([self._row_to_generation(r) for r in rows], limit)

    def list_pending(
        self,
        older_than: datetime,
        limit: int,
        polled_before: datetime | None = None,
        providers: list[str] | None = None,
    ) -> list[Generation]:
        clauses = ["status = 'pending'", "created_at < %s"]
        params: list[Any] = [older_than]
        if polled_before is not None:
            clauses.append("(last_polled_at IS NULL OR last_polled_at < %s)")
            params.append(polled_before)
        if providers is not None:
            clauses.append("provider = ANY(%s)")
            params.append(list(providers))
        params.append(limit)
        rows = self._execute(
            f"""
            SELECT {_COLUMNS} FROM igen_generations
            WHERE {' AND '.join(clauses)}
            ORDER BY last_polled_at ASC NULLS FIRST, created_at ASC, id ASC LIMIT %s
            """,
            tuple(params),
        ).fetchall()
        return [self._row_to_generation(r) for r in rows]

    def mark_polled(self, gen_id: str, at: datetime) -> None:
        self._execute(
            "UPDATE igen_generations SET last_polled_at = %s WHERE id = %s AND status = 'pending'",
            (at, gen_id),
        )

    def transition(
        self, gen_id: str, from_status: GenerationStatus, to_status: GenerationStatus, patch: TransitionPatch
    ) -> Generation:
        # Validate the resulting record before touching the row
        current = self.get(gen_id)
        if current.status is not from_status:
            raise Conflict(f"Generation {gen_id} is {current.status.value}", current=current.status.value)
        updated = apply_transition(current, to_status, patch)

        row = self._execute(
            f"""
            UPDATE igen_generations SET
                status = %s,
                artifact = %s::jsonb,
                error = %s::jsonb,
                completed_at = %s,
                provider_metadata = provider_metadata || %s::jsonb
            WHERE id = %s AND status = %s
            RETURNING {_COLUMNS}
            """,
            (
                to_status.value,
                updated.artifact.model_dump_json() if updated.artifact else None,
                updated.error.model_dump_json() if updated.error else None,
                updated.completed_at,
                json.dumps(patch.provider_metadata or {}),
                gen_id,
                from_status.value,
            ),
        ).fetchone()
        if row:
            return self._row_to_generation(row)

        # Lost the race between our read and the conditional write
        status_row = self._execute(
            "SELECT status FROM igen_generations WHERE id = %s", (gen_id,)
        ).fetchone()
        if not status_row:
            raise NotFound(f"Generation not found: {gen_id}")
        raise Conflict(f"Generation {gen_id} is {status_row[0]}", current=status_row[0])

    def update_tags(
        self, gen_id: str, add: list[str], remove: list[str], max_tags: int | None = None
    ) -> list[str]:
        import psycopg

        try:
            with self._lock, self._conn.transaction():
                row = self._conn.execute(
                    "SELECT tags FROM igen_generations WHERE id = %s FOR UPDATE", (gen_id,)
                ).fetchone()
                if not row:
                    raise NotFound(f"Generation not found: {gen_id}")
                current = row[0] if isinstance(row[0], list) else json.loads(row[0] or "[]")
                tags = merge_tags(current, add, remove)
                _check_tag_limit(tags, max_tags)
                self._conn.execute(
                    "UPDATE igen_generations SET tags = %s::jsonb WHERE id = %s",
                    (json.dumps(tags), gen_id),
                )
        except psycopg.Error as e:
            raise StorageError(f"Tag update failed: {e.__class__.__name__}") from e
        return tags

    def delete(self, gen_id: str) -> Generation:
        row = self._execute(
            f"DELETE FROM igen_generations WHERE id = %s RETURNING {_COLUMNS}", (gen_id,)
        ).fetchone()
        if not row:
            raise NotFound(f"Generation not found: {gen_id}")
        return self._row_to_generation(row)

    def list_tags(self) -> list[str]:
        rows = self._execute(
            """
            SELECT DISTINCT jsonb_array_elements_text(tags) AS tag
            FROM igen_generations ORDER BY tag
            """
        ).fetchall()
        return [r[0] for r in rows]

    @staticmethod
    def _json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value if isinstance(value, (dict, list)) else json.loads(value)

    def _row_to_generation(self, row) -> Generation:
        return Generation(
            id=row[0],
            endpoint=row[1],
            provider=row[2],
            input=self._json(row[3], {}),
            status=GenerationStatus(row[4]),
            provider_request_id=row[5],
            tags=self._json(row[6], []),
            artifact=self._json(row[7], None),
            error=self._json(row[8], None),
            provider_metadata=self._json(row[9], {}),
            created_at=row[10],
            completed_at=row[11],
            last_polled_at=row[12],
        )


# ---------------------------------------------------------------------------
# File-based implementation (fallback when no Postgres)
# ---------------------------------------------------------------------------

class FileGenerationStore:
    """Persist generations as JSON files. Single-process: the lock makes each
    read-check-write atomic, which is all the conditional transition needs here."""

    def __init__(self, data_dir: Path):
        self._dir = Path(data_dir) / "generations"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._index_path = self._dir / "index.json"
        self._lock = threading.RLock()
        self._index: dict[str, str] = self._load_index()

    @staticmethod
    def _index_key(provider: str, request_id: str) -> str:
        return f"{provider}:{request_id}"

    def _load_index(self) -> dict[str, str]:
        """Maps provider:request_id -> generation id."""
        if self._index_path.exists():
            try:
                with open(self._index_path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Generation index unreadable (%s), rebuilding", e)
                return self._rebuild_index()
        return {}

    def _rebuild_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        for path in self._record_paths():
            gen = self._read(path)
            index[self._index_key(gen.provider, gen.provider_request_id)] = gen.id
        return index

    def _save_index(self) -> None:
        self._atomic_write(self._index_path, json.dumps(self._index, indent=2))

    def _path(self, gen_id: str) -> Path:
        return self._dir / f"{gen_id}.json"

    def _record_paths(self) -> list[Path]:
        return [p for p in self._dir.glob("gen_*.json")]

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Could not write {path.name}: {e}") from e

    def _write(self, gen: Generation) -> None:
        self._atomic_write(self._path(gen.id), gen.model_dump_json(indent=2))

    def _read(self, path: Path) -> Generation:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read {path.name}: {e}") from e
        return Generation.model_validate(data)

    def _load(self, gen_id: str) -> Generation:
        path = self._path(gen_id)
        if not path.exists():
            raise NotFound(f"Generation not found: {gen_id}")
        return self._read(path)

    def _all(self) -> list[Generation]:
        return [self._read(p) for p in self._record_paths()]

    def create(self, gen: Generation) -> str:
        with self._lock:
            if self._path(gen.id).exists():
                raise DuplicateId(f"Generation already exists: {gen.id}")
            self._write(gen)
            self._index[self._index_key(gen.provider, gen.provider_request_id)] = gen.id
            self._save_index()
        return gen.id

    def get(self, gen_id: str) -> Generation:
        with self._lock:
            return self._load(gen_id)

    def find_by_provider_request_id(self, provider: str, request_id: str) -> Generation | None:
        with self._lock:
            gen_id = self._index.get(self._index_key(provider, request_id))
            if not gen_id or not self._path(gen_id).exists():
                return None
            return self._load(gen_id)

    def list(
        self, filter: GenerationFilter | None = None, cursor: str | None = None, limit: int | None = None
    ) -> Page:
        filter = filter or GenerationFilter()
        limit = clamp_limit(limit)
        after = sort_key(*decode_cursor(cursor)) if cursor else None
        with self._lock:
            rows = [g for g in self._all() if filter.matches(g)]
        rows.sort(key=lambda g: sort_key(g.created_at, g.id), reverse=True)
        if after is not None:
            rows = [g for g in rows if sort_key(g.created_at, g.id) < after]
        return _page(rows[: limit + 1], limit)

    def list_pending(
        self,
        older_than: datetime,
        limit: int,
        polled_before: datetime | None = None,
        providers: list[str] | None = None,
    ) -> list[Generation]:
        with self._lock:
            rows = [
                g for g in self._all()
                if g.status is GenerationStatus.PENDING
                and g.created_at < older_than
                and (polled_before is None or g.last_polled_at is None or g.last_polled_at < polled_before)
                and (providers is None or g.provider in providers)
            ]
        rows.sort(key=_poll_order)
        return rows[:limit]

    def mark_polled(self, gen_id: str, at: datetime) -> None:
        with self._lock:
            path = self._path(gen_id)
            if not path.exists():
                return
            current = self._read(path)
            if current.status is GenerationStatus.PENDING:
                self._write(current.model_copy(update={"last_polled_at": at}))

    def transition(
        self, gen_id: str, from_status: GenerationStatus, to_status: GenerationStatus, patch: TransitionPatch
    ) -> Generation:
        with self._lock:
            current = self._load(gen_id)
            if current.status is not from_status:
                raise Conflict(f"Generation {gen_id} is {current.status.value}", current=current.status.value)
            updated = apply_transition(current, to_status, patch)
            self._write(updated)
            return updated

    def update_tags(
        self, gen_id: str, add: list[str], remove: list[str], max_tags: int | None = None
    ) -> list[str]:
        with self._lock:
            current = self._load(gen_id)
            tags = merge_tags(current.tags, add, remove)
            _check_tag_limit(tags, max_tags)
            self._write(current.model_copy(update={"tags": tags}))
            return tags

    def delete(self, gen_id: str) -> Generation:
        with self._lock:
            gen = self._load(gen_id)
            try:
                self._path(gen_id).unlink()
            except OSError as e:
                raise StorageError(f"Could not delete {gen_id}: {e}") from e
            self._index.pop(self._index_key(gen.provider, gen.provider_request_id), None)
            self._save_index()
            return gen

    def list_tags(self) -> list[str]:
        with self._lock:
            return sorted({t for g in self._all() for t in g.tags})


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_store: GenerationStore | None = None


def get_generation_store(settings: Settings | None = None) -> GenerationStore:
    """Return singleton generation store (Postgres if configured, else file-based)."""
    global _store
    if _store is not None:
        return _store
    settings = settings or get_settings()
    if settings.igen_database_url:
        try:
            _store = PostgresGenerationStore(settings.igen_database_url, settings.igen_db_timeout_ms)
            logger.info("Using Postgres generation store")
        except (StorageError, ImportError) as e:
            logger.warning("Postgres generation store failed (%s), falling back to file store", e)
            _store = FileGenerationStore(settings.data_dir)
    else:
        _store = FileGenerationStore(settings.data_dir)
        logger.info("Using file-based generation store (IGEN_DATA_DIR/generations)")
    return _store
