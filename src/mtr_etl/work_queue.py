"""mtr_etl.work_queue

Persistent fetch-job queue backed by the ``fetch_job`` table.

State machine:
    PENDING -> PROCESSING -> (row deleted | ERROR)

Every operation runs in its own transaction and commits before returning.
``claim`` is a single conditional UPDATE; the affected row count tells the
caller whether it won the job.  ERROR rows are left for operator review and
never re-queued automatically.

``reclaim_stale`` is opt-in: it returns PROCESSING rows whose ``locked_at``
is older than a threshold to PENDING (crashed workers otherwise leave their
jobs claimed forever).
"""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable

import psycopg

from mtr_etl.records import JOB_ERROR, JOB_PENDING, JOB_PROCESSING, FetchJob

_JOB_COLUMNS = (
    "url, unit_id, status, locked_by, locked_at, last_error, created_by, created_at"
)


def enqueue(conn: psycopg.Connection, jobs: Iterable[FetchJob]) -> int:
    """Insert jobs that are not already queued. Returns the number inserted."""
    inserted = 0
    with conn.cursor() as cur:
        for job in jobs:
            cur.execute(
                """
                INSERT INTO fetch_job (url, unit_id, status, created_by)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (url) DO NOTHING
                """,
                (job.url, job.unit_id, JOB_PENDING, job.created_by),
            )
            inserted += cur.rowcount
    conn.commit()
    return inserted


def list_pending(conn: psycopg.Connection, limit: int) -> list[FetchJob]:
    """Up to limit PENDING jobs, oldest first."""
    rows = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM fetch_job
        WHERE status = %s
        ORDER BY created_at, url
        LIMIT %s
        """,
        (JOB_PENDING, limit),
    ).fetchall()
    conn.commit()
    return [FetchJob(*row) for row in rows]


def claim(conn: psycopg.Connection, url: str, worker_id: str) -> bool:
    """Atomically move url from PENDING to PROCESSING. True iff this caller won."""
    cur = conn.execute(
        """
        UPDATE fetch_job
        SET status = %s, locked_by = %s, locked_at = now()
        WHERE url = %s AND status = %s
        """,
        (JOB_PROCESSING, worker_id, url, JOB_PENDING),
    )
    won = cur.rowcount == 1
    conn.commit()
    return won


def complete(conn: psycopg.Connection, url: str) -> None:
    conn.execute("DELETE FROM fetch_job WHERE url = %s", (url,))
    conn.commit()


def fail(conn: psycopg.Connection, url: str, error_message: str) -> None:
    conn.execute(
        "UPDATE fetch_job SET status = %s, last_error = %s WHERE url = %s",
        (JOB_ERROR, error_message, url),
    )
    conn.commit()


def reclaim_stale(conn: psycopg.Connection, older_than: timedelta) -> int:
    """Reset PROCESSING jobs locked longer than older_than. Returns rows reset."""
    cur = conn.execute(
        """
        UPDATE fetch_job
        SET status = %s, locked_by = NULL, locked_at = NULL
        WHERE status = %s AND locked_at < now() - %s
        """,
        (JOB_PENDING, JOB_PROCESSING, older_than),
    )
    reset = cur.rowcount
    conn.commit()
    return reset


def get_job(conn: psycopg.Connection, url: str) -> FetchJob | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM fetch_job WHERE url = %s", (url,)
    ).fetchone()
    conn.commit()
    return FetchJob(*row) if row else None
