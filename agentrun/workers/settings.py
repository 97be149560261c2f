"""Arq worker configuration.

Run with ``arq agentrun.workers.settings.WorkerSettings``.
"""

from arq import cron
from arq.connections import RedisSettings

from agentrun.config import Settings, get_settings
from agentrun.core.logging import get_logger, setup_logging
from agentrun.workers.agent_tasks import drive_run, execute_workflow_task, watchdog_stuck_runs

settings = get_settings()
logger = get_logger(__name__)

redis_settings = RedisSettings.from_dsn(settings.redis_url)


def drive_job_timeout(settings: Settings) -> int:
    """Upper bound for one drive: every round at its provider and tool ceilings."""
    per_round = settings.provider_turn_timeout_seconds + (
        settings.tool_timeout_seconds * settings.tool_max_attempts
    )
    return int(settings.agent_max_rounds * per_round) + 60


async def startup(ctx: dict) -> None:
    setup_logging("worker")
    logger.info("worker_started")


async def shutdown(ctx: dict) -> None:
    stream_redis = ctx.pop("stream_redis", None)
    if stream_redis is not None:
        await stream_redis.aclose()
    logger.info("worker_stopped")


class WorkerSettings:
    functions = [drive_run, execute_workflow_task]
    cron_jobs = [cron(watchdog_stuck_runs, minute=set(range(0, 60, 2)))]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
    max_jobs = 20
    # A drive covers every turn up to the next interrupt; stalls are the watchdog's job.
    job_timeout = drive_job_timeout(settings)
    max_tries = 1
