"""
Mail delivery hand-off.

Emails are rendered and sent by a separate ARQ worker. This side only
enqueues a job; retries with bounded attempts are that worker's concern.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from kb_fanout.core.errors import DeliveryFailure

log = structlog.get_logger()

SEND_EMAIL_JOB = "send_email"


class ArqMailer:
    """Mailer that enqueues `send_email` jobs on an ARQ queue."""

    def __init__(self, redis_url: str, queue_name: str) -> None:
        self._redis_settings = RedisSettings.from_dsn(redis_url)
        self._queue_name = queue_name
        self._pool: Optional[ArqRedis] = None

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(self._redis_settings)
        return self._pool

    async def schedule(self, template: str, to: str, data: dict[str, Any]) -> None:
        try:
            pool = await self._get_pool()
            job = await pool.enqueue_job(
                SEND_EMAIL_JOB,
                template,
                to,
                data,
                _queue_name=self._queue_name,
            )
        except Exception as exc:
            raise DeliveryFailure(f"Could not enqueue {template} email") from exc

        log.info(
            "mailer.scheduled",
            template=template,
            job_id=job.job_id if job else None,
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
