"""
Logging handler that mirrors background job logs into Redis.

Reconciliation passes run unattended (external cron or the internal
scheduler); their log lines are kept in Redis so operators can read the
last passes through the admin endpoint without shell access to a worker.
"""

import json
import logging
import asyncio
from datetime import datetime, timezone
from typing import Dict, List

from config import JOB_LOG_MAX_ENTRIES, JOB_LOG_TTL

logger = logging.getLogger(__name__)


def job_log_key(job_name: str) -> str:
    return f"job:logs:{job_name}"


class RedisJobLogHandler(logging.Handler):
    """
    Logging handler that pushes records onto a Redis list.

    Structure:
    - Key: job:logs:{job_name}
    - Value: JSON entries, newest first, trimmed to ``max_logs``
    - TTL: refreshed on every write

    Records are written from a task on the running loop so emit() never
    blocks the job that is logging.
    """

    def __init__(self, redis_client, job_name: str, max_logs: int = JOB_LOG_MAX_ENTRIES):
        super().__init__()
        self.redis_client = redis_client
        self.job_name = job_name
        self.max_logs = max_logs
        self.log_key = job_log_key(job_name)
        self._tasks = set()

    def emit(self, record):
        try:
            entry = {
                "timestamp": record.created,
                "timestamp_formatted": datetime.fromtimestamp(
                    record.created, tz=timezone.utc
                ).isoformat(),
                "level": record.levelname,
                "message": self.format(record),
                "job_name": self.job_name,
            }
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Logged outside the event loop; the console handler still has it
            return
        except Exception:
            self.handleError(record)
            return

        task = loop.create_task(self._store(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _store(self, entry: Dict):
        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                pipe.lpush(self.log_key, json.dumps(entry))
                pipe.ltrim(self.log_key, 0, self.max_logs - 1)
                pipe.expire(self.log_key, JOB_LOG_TTL)
                await pipe.execute()
        except Exception as e:
            # Must not log through the job logger here: that would recurse
            logger.warning(f"Failed to store job log in Redis: {e}")


def get_job_logger(job_name: str, redis_client, level: str = "INFO") -> logging.Logger:
    """
    Logger that writes to both Redis and the console.

    Handlers are replaced on every call so repeated passes do not stack
    duplicate handlers; propagation is off to avoid double console lines.
    """
    job_logger = logging.getLogger(f"job.{job_name}")
    job_logger.handlers.clear()

    redis_handler = RedisJobLogHandler(redis_client, job_name)
    redis_handler.setFormatter(logging.Formatter("%(message)s"))
    job_logger.addHandler(redis_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - JOB[%(name)s] - %(levelname)s - %(message)s")
    )
    job_logger.addHandler(console_handler)

    job_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    job_logger.propagate = False
    return job_logger


async def get_job_logs(redis_client, job_name: str, limit: int = 100) -> List[Dict]:
    """Most recent ``limit`` entries for a job, newest first."""
    raw_logs = await redis_client.lrange(job_log_key(job_name), 0, limit - 1)

    logs = []
    for raw_log in raw_logs:
        if isinstance(raw_log, bytes):
            raw_log = raw_log.decode("utf-8")
        try:
            logs.append(json.loads(raw_log))
        except json.JSONDecodeError:
            continue
    return logs
