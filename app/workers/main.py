"""ARQ worker entrypoint."""

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.workers.conversations import complete_conversation


def parse_redis_settings() -> RedisSettings:
    """ARQ connection settings from REDIS_URL (password and db included)."""
    return RedisSettings.from_dsn(get_settings().redis_url)


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from app.core.database import init_db
    await init_db()


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    from app.core.redis import close_redis
    await close_redis()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [complete_conversation]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = parse_redis_settings()
    max_jobs = 50
    job_timeout = 60
    # Completion jobs are aborted when a new user turn arrives first.
    allow_abort_jobs = True


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
