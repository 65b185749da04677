import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

from models.candidate import Candidate
from models.job import COMPLETED, FAILED, PENDING, Job

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "candidates.db")

_CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS jobs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    payload     TEXT    NOT NULL,
    status      TEXT    NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'active', 'completed', 'failed')),
    result      TEXT,
    retry_after REAL,
    attempts    INTEGER NOT NULL DEFAULT 0,
    created_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at  DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""

_CREATE_JOBS_READY_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(status, retry_after)
"""

# List columns (skills, certifications) are stored as JSON text
_CREATE_CANDIDATES = """
CREATE TABLE IF NOT EXISTS candidates (
    email                  TEXT PRIMARY KEY,
    phone                  TEXT NOT NULL,
    name                   TEXT NOT NULL,
    summary                TEXT NOT NULL,
    experience             TEXT NOT NULL,
    total_experience_years REAL,
    education              TEXT NOT NULL DEFAULT 'Not specified',
    skills                 TEXT NOT NULL DEFAULT '[]',
    certifications         TEXT NOT NULL DEFAULT '[]',
    linkedin               TEXT NOT NULL DEFAULT '',
    portfolio              TEXT NOT NULL DEFAULT '',
    created_at             DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at             DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""

_CREATE_CANDIDATES_PHONE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_candidates_phone ON candidates(phone)
"""


class JobStoreError(RuntimeError):
    """The database could not be reached or the statement failed."""


class JobNotFound(LookupError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


@asynccontextmanager
async def _connect(operation: str) -> AsyncIterator[aiosqlite.Connection]:
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except aiosqlite.Error as exc:
        logger.error(
            "Database error",
            extra={"operation": operation, "error": str(exc)},
            exc_info=True,
        )
        raise JobStoreError(f"Database {operation} error: {exc}") from exc


async def init_db() -> None:
    async with _connect("init") as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(_CREATE_JOBS)
        await db.execute(_CREATE_JOBS_READY_INDEX)
        await db.execute(_CREATE_CANDIDATES)
        await db.execute(_CREATE_CANDIDATES_PHONE_INDEX)
        await db.commit()


# ── Jobs ──────────────────────────────────────────────────────────────────────

def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        payload=json.loads(row["payload"]),
        status=row["status"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        retry_after=row["retry_after"],
        attempts=row["attempts"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def enqueue_job(payload: dict) -> int:
    [job_id] = await enqueue_jobs([payload])
    return job_id


async def enqueue_jobs(payloads: list[dict]) -> list[int]:
    """
    Insert one pending job per payload, all in a single transaction.

    Ids come back in input order. If any insert fails nothing is committed,
    so a failed batch leaves no job behind.
    """
    job_ids = []
    async with _connect("insert") as db:
        for payload in payloads:
            cur = await db.execute(
                "INSERT INTO jobs (payload, status) VALUES (?, ?)",
                (json.dumps(payload), PENDING),
            )
            job_ids.append(cur.lastrowid)
        await db.commit()
    logger.info("Jobs enqueued", extra={"job_ids": job_ids})
    return job_ids


async def get_job(job_id: int) -> Job:
    async with _connect("select") as db:
        async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
    if row is None:
        raise JobNotFound(job_id)
    return _row_to_job(row)


async def fetch_next_ready_job(now: float) -> Job | None:
    """
    Oldest job that may be processed at *now* (epoch seconds), or None.

    Ready means ``pending``, or ``failed`` with a ``retry_after`` that has
    elapsed. A failed job without ``retry_after`` failed permanently and is
    never returned. The row is not modified.
    """
    async with _connect("select") as db:
        async with db.execute(
            """
            SELECT * FROM jobs
            WHERE status = ?
               OR (status = ? AND retry_after IS NOT NULL AND retry_after <= ?)
            ORDER BY id ASC
            LIMIT 1
            """,
            (PENDING, FAILED, now),
        ) as cur:
            row = await cur.fetchone()
    return _row_to_job(row) if row else None


async def _transition(
    job_id: int,
    status: str,
    result: Any,
    retry_after: float | None,
    attempts: int | None,
) -> bool:
    # attempts acts as a compare-and-swap token: when given, only the caller
    # that fetched this exact attempt may move the job on.
    # Encode before connecting; unencodable results raise TypeError to the caller.
    encoded = json.dumps(result)
    async with _connect("update") as db:
        cur = await db.execute(
            """
            UPDATE jobs
            SET status = ?, result = ?, retry_after = ?,
                attempts = attempts + 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND (? IS NULL OR attempts = ?)
            """,
            (status, encoded, retry_after, job_id, attempts, attempts),
        )
        await db.commit()
        return cur.rowcount == 1


async def mark_completed(job_id: int, result: Any, attempts: int | None = None) -> bool:
    return await _transition(job_id, COMPLETED, result, None, attempts)


async def mark_failed(
    job_id: int,
    error: str,
    retry_after: float | None = None,
    attempts: int | None = None,
) -> bool:
    return await _transition(job_id, FAILED, {"error": error}, retry_after, attempts)


async def count_jobs() -> dict[str, int]:
    async with _connect("select") as db:
        async with db.execute(
            "SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"
        ) as cur:
            rows = await cur.fetchall()
    out = {PENDING: 0, COMPLETED: 0, FAILED: 0}
    out.update({r["status"]: r["c"] for r in rows})
    return out


# ── Candidates ────────────────────────────────────────────────────────────────

def _row_to_candidate(row: aiosqlite.Row) -> dict:
    out = dict(row)
    out["skills"] = json.loads(out["skills"])
    out["certifications"] = json.loads(out["certifications"])
    return out


async def upsert_candidate(candidate: Candidate) -> dict:
    """Insert a candidate, or merge the new fields into the one with the same email."""
    data = candidate.to_dict()
    async with _connect("upsert") as db:
        await db.execute(
            """
            INSERT INTO candidates (
                email, phone, name, summary, experience, total_experience_years,
                education, skills, certifications, linkedin, portfolio
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(email) DO UPDATE SET
                phone                  = excluded.phone,
                name                   = excluded.name,
                summary                = excluded.summary,
                experience             = excluded.experience,
                total_experience_years = excluded.total_experience_years,
                education              = excluded.education,
                skills                 = excluded.skills,
                certifications         = excluded.certifications,
                linkedin               = excluded.linkedin,
                portfolio              = excluded.portfolio,
                updated_at             = CURRENT_TIMESTAMP
            """,
            (
                data["email"],
                data["phone"],
                data["name"],
                data["summary"],
                data["experience"],
                data["total_experience_years"],
                data["education"],
                json.dumps(data["skills"]),
                json.dumps(data["certifications"]),
                data["linkedin"],
                data["portfolio"],
            ),
        )
        await db.commit()
        async with db.execute(
            "SELECT * FROM candidates WHERE email = ?", (data["email"],)
        ) as cur:
            row = await cur.fetchone()
    logger.info("Candidate saved", extra={"email": data["email"]})
    return _row_to_candidate(row)


async def list_candidates() -> list[dict]:
    async with _connect("select") as db:
        async with db.execute(
            "SELECT * FROM candidates ORDER BY created_at, email"
        ) as cur:
            return [_row_to_candidate(r) for r in await cur.fetchall()]


async def get_candidate(identifier: str) -> dict | None:
    async with _connect("select") as db:
        async with db.execute(
            "SELECT * FROM candidates WHERE email = ? OR phone = ? LIMIT 1",
            (identifier, identifier),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_candidate(row) if row else None
