"""
PostgreSQL access for papers, questions and answer attempts.

Assumes the following tables (created by the web application):

CREATE TABLE papers (
    id          UUID PRIMARY KEY,
    subject_id  UUID NOT NULL,
    pdf_url     TEXT,
    year        INTEGER,
    season      TEXT,
    variant     TEXT
);

CREATE TABLE topics (
    id          UUID PRIMARY KEY,
    subject_id  UUID NOT NULL,
    name        TEXT NOT NULL
);

CREATE TABLE questions (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    paper_id         UUID NOT NULL REFERENCES papers(id) ON DELETE CASCADE,
    question_number  INTEGER NOT NULL,
    type             TEXT NOT NULL,
    content          TEXT NOT NULL,
    topic_ids        UUID[] NOT NULL DEFAULT '{}',
    marks            INTEGER NOT NULL DEFAULT 1,
    options          JSONB,
    structure_data   JSONB,
    figure_location  JSONB,
    image_url        TEXT,
    official_answer  TEXT,
    ai_answer        JSONB
);

CREATE UNIQUE INDEX idx_questions_paper_number
    ON questions (paper_id, question_number);

CREATE TABLE user_question_attempts (
    id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             UUID NOT NULL,
    question_id         UUID NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
    answer_text         TEXT,
    score               INTEGER,
    is_correct          BOOLEAN,
    time_spent_seconds  INTEGER NOT NULL DEFAULT 0,
    hints_used          INTEGER NOT NULL DEFAULT 0,
    attempted_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
import logging
from typing import Any, TypeVar

import psycopg
from psycopg import OperationalError
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from .config import DatabaseConfig
from .errors import PaperNotFoundError, QuestionNotFoundError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRIES = 5
_BASE_BACKOFF = 0.1
_RECOVERABLE_SUBSTRINGS: tuple[str, ...] = (
    "ssl connection has been closed unexpectedly",
    "server closed the connection unexpectedly",
    "connection already closed",
    "connection not open",
)

# Columns a later side effect may set on an existing question
UPDATABLE_COLUMNS = frozenset(
    {"content", "marks", "structure_data", "figure_location", "image_url", "official_answer", "ai_answer"},
)
_JSON_COLUMNS = frozenset({"options", "structure_data", "figure_location", "ai_answer"})


def _iter_causes(exc: BaseException) -> Iterable[BaseException]:
    """Yield the exception and its causes."""
    current: BaseException | None = exc
    while current is not None:
        yield current
        current = current.__cause__


def _jsonb(value: Any | None) -> Jsonb | None:
    """Wrap Python values so psycopg knows they target a JSONB column."""
    return None if value is None else Jsonb(value)


def is_recoverable_operational_error(exc: BaseException) -> bool:
    """Return True when the error represents a dropped database connection."""
    if not isinstance(exc, psycopg.OperationalError):
        return False

    for candidate in _iter_causes(exc):
        message = " ".join(
            part for part in (str(candidate), getattr(candidate, "pgerror", None)) if part
        ).lower()
        if any(token in message for token in _RECOVERABLE_SUBSTRINGS):
            return True
    return False


def init_pool(config: DatabaseConfig) -> AsyncConnectionPool:
    """Create an async connection pool; call ``await pool.open()`` before use."""
    return AsyncConnectionPool(
        conninfo=config.dsn,
        min_size=config.min_pool_size,
        max_size=config.max_pool_size,
        kwargs={"autocommit": False, "row_factory": dict_row},
        open=False,
    )


class PostgresQuestionStore:
    """Async repository over the exam tables."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[psycopg.AsyncConnection]:
        async with self._pool.connection() as conn, conn.transaction():
            yield conn

    async def _run(self, operation: Callable[[psycopg.AsyncConnection], Awaitable[T]]) -> T:
        """Run ``operation`` in a transaction, retrying dropped connections."""
        attempt = 0
        while True:
            try:
                async with self._transaction() as conn:
                    return await operation(conn)
            except OperationalError as exc:
                attempt += 1
                if not is_recoverable_operational_error(exc) or attempt >= _MAX_RETRIES:
                    raise
                LOGGER.error(
                    "Recoverable database connection error (attempt %s/%s): %s",
                    attempt,
                    _MAX_RETRIES,
                    exc,
                )
                await self._pool.check()
                await asyncio.sleep(min(_BASE_BACKOFF * attempt, 1.0))

    async def get_paper(self, paper_id: str) -> dict[str, Any]:
        async def op(conn: psycopg.AsyncConnection) -> dict[str, Any] | None:
            cur = await conn.execute(
                "SELECT id, subject_id, pdf_url FROM papers WHERE id = %(id)s",
                {"id": paper_id},
            )
            return await cur.fetchone()

        paper = await self._run(op)
        if paper is None:
            raise PaperNotFoundError(f"Paper {paper_id} not found.")
        return paper

    async def list_topics(self, subject_id: str) -> list[dict[str, Any]]:
        async def op(conn: psycopg.AsyncConnection) -> list[dict[str, Any]]:
            cur = await conn.execute(
                "SELECT id, name FROM topics WHERE subject_id = %(subject_id)s ORDER BY name",
                {"subject_id": subject_id},
            )
            return [{"id": str(row["id"]), "name": row["name"]} for row in await cur.fetchall()]

        return await self._run(op)

    async def upsert_questions(self, paper_id: str, rows: list[dict[str, Any]]) -> dict[int, str]:
        """Insert or update questions keyed by ``(paper_id, question_number)``.

        ``image_url`` and ``official_answer`` are filled in later and are
        never overwritten here.

        Returns:
            Mapping of question number to question id.
        """
        if not rows:
            return {}

        sql = """
        INSERT INTO questions (
            paper_id, question_number, type, content, topic_ids,
            marks, options, structure_data, figure_location, ai_answer
        )
        VALUES (
            %(paper_id)s, %(question_number)s, %(type)s, %(content)s, %(topic_ids)s,
            %(marks)s, %(options)s, %(structure_data)s, %(figure_location)s, %(ai_answer)s
        )
        ON CONFLICT (paper_id, question_number)
        DO UPDATE SET
            type            = EXCLUDED.type,
            content         = EXCLUDED.content,
            topic_ids       = EXCLUDED.topic_ids,
            marks           = EXCLUDED.marks,
            options         = EXCLUDED.options,
            structure_data  = EXCLUDED.structure_data,
            figure_location = EXCLUDED.figure_location,
            ai_answer       = EXCLUDED.ai_answer
        RETURNING id, question_number;
        """

        async def op(conn: psycopg.AsyncConnection) -> dict[int, str]:
            ids: dict[int, str] = {}
            async with conn.cursor() as cur:
                for row in rows:
                    params = {
                        "paper_id": paper_id,
                        "question_number": row["question_number"],
                        "type": row["type"],
                        "content": row["content"],
                        "topic_ids": list(row.get("topic_ids") or []),
                        "marks": row["marks"],
                        "options": _jsonb(row.get("options")),
                        "structure_data": _jsonb(row.get("structure_data")),
                        "figure_location": _jsonb(row.get("figure_location")),
                        "ai_answer": _jsonb(row.get("ai_answer")),
                    }
                    await cur.execute(sql, params)
                    result = await cur.fetchone()
                    ids[int(result["question_number"])] = str(result["id"])
            return ids

        LOGGER.info("Upserting %d questions for paper_id=%s", len(rows), paper_id)
        return await self._run(op)

    async def update_question(self, question_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update question columns: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = ", ".join(f"{column} = %({column})s" for column in sorted(fields))
        params = {
            column: _jsonb(value) if column in _JSON_COLUMNS else value
            for column, value in fields.items()
        }
        params["id"] = question_id

        async def op(conn: psycopg.AsyncConnection) -> None:
            await conn.execute(f"UPDATE questions SET {assignments} WHERE id = %(id)s", params)

        await self._run(op)

    async def list_questions(self, paper_id: str) -> list[dict[str, Any]]:
        async def op(conn: psycopg.AsyncConnection) -> list[dict[str, Any]]:
            cur = await conn.execute(
                """
                SELECT id, question_number, type, content, marks, structure_data,
                       ai_answer, official_answer, image_url
                FROM questions
                WHERE paper_id = %(paper_id)s
                ORDER BY question_number
                """,
                {"paper_id": paper_id},
            )
            return [{**row, "id": str(row["id"])} for row in await cur.fetchall()]

        return await self._run(op)

    async def get_question(self, question_id: str) -> dict[str, Any]:
        async def op(conn: psycopg.AsyncConnection) -> dict[str, Any] | None:
            cur = await conn.execute(
                "SELECT id, content, official_answer, marks, type FROM questions WHERE id = %(id)s",
                {"id": question_id},
            )
            return await cur.fetchone()

        question = await self._run(op)
        if question is None:
            raise QuestionNotFoundError(f"Question {question_id} not found.")
        return {**question, "id": str(question["id"])}

    async def insert_attempt(self, attempt: dict[str, Any]) -> str:
        """Record one answer attempt and return its id."""
        sql = """
        INSERT INTO user_question_attempts (
            user_id, question_id, answer_text, score, is_correct,
            time_spent_seconds, hints_used, attempted_at
        )
        VALUES (
            %(user_id)s, %(question_id)s, %(answer_text)s, %(score)s, %(is_correct)s,
            %(time_spent_seconds)s, %(hints_used)s, now()
        )
        RETURNING id;
        """
        params = {
            "user_id": attempt["user_id"],
            "question_id": attempt["question_id"],
            "answer_text": attempt.get("answer_text"),
            "score": attempt.get("score"),
            "is_correct": attempt.get("is_correct"),
            "time_spent_seconds": attempt.get("time_spent_seconds") or 0,
            "hints_used": attempt.get("hints_used") or 0,
        }

        async def op(conn: psycopg.AsyncConnection) -> str:
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
            return str(row["id"])

        return await self._run(op)

    async def paper_asset_urls(self, paper_id: str) -> list[str]:
        """Return the paper's PDF URL and every stored figure URL."""

        async def op(conn: psycopg.AsyncConnection) -> list[str] | None:
            cur = await conn.execute("SELECT pdf_url FROM papers WHERE id = %(id)s", {"id": paper_id})
            paper = await cur.fetchone()
            if paper is None:
                return None
            cur = await conn.execute(
                "SELECT image_url, structure_data FROM questions WHERE paper_id = %(id)s",
                {"id": paper_id},
            )
            urls = [paper["pdf_url"]] if paper["pdf_url"] else []
            for row in await cur.fetchall():
                if row["image_url"]:
                    urls.append(row["image_url"])
                for block in (row["structure_data"] or {}).get("blocks", []):
                    if block.get("url"):
                        urls.append(block["url"])
            return urls

        urls = await self._run(op)
        if urls is None:
            raise PaperNotFoundError(f"Paper {paper_id} not found.")
        return list(dict.fromkeys(urls))

    async def delete_paper(self, paper_id: str) -> int:
        """Delete the paper and its questions; returns the number of questions removed."""

        async def op(conn: psycopg.AsyncConnection) -> int:
            cur = await conn.execute("DELETE FROM questions WHERE paper_id = %(id)s", {"id": paper_id})
            removed = cur.rowcount
            await conn.execute("DELETE FROM papers WHERE id = %(id)s", {"id": paper_id})
            return removed

        removed = await self._run(op)
        LOGGER.info("Deleted paper %s and %s question(s)", paper_id, removed)
        return removed
