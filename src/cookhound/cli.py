from __future__ import annotations

import asyncio
import json

import click
import redis.asyncio as redis

from cookhound.config import get_settings
from cookhound.errors import InfrastructureError
from cookhound.session import build_session_manager
from cookhound.store import build_store
from cookhound.store.redis_store import RedisStore
from cookhound.utils.log import set_log_level


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """cookhound server, worker and maintenance commands."""
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.option("--host", default=None, help="Bind host (default: HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP app (queue manager in app role)."""
    import uvicorn

    s = get_settings()
    uvicorn.run(
        "cookhound.web.app:create_app",
        factory=True,
        host=str(host or s.host),
        port=int(port or s.port),
        reload=False,
    )


@cli.command()
def worker() -> None:
    """Run the background job worker until SIGINT/SIGTERM."""
    from cookhound.worker import main

    main()


@cli.command("config")
def show_config() -> None:
    """Print the effective configuration (secrets masked)."""
    from config.settings import get_safe_config_report

    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


async def _flush(url: str, password: str | None) -> None:
    store = RedisStore(url=url, password=password)
    try:
        await store.flush_all()
    finally:
        await store.close()


@cli.command("flush-redis")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
def flush_redis(yes: bool) -> None:
    """Delete EVERYTHING in the configured Redis database (sessions, queues, schedules)."""
    s = get_settings()
    if not s.redis_password_value():
        raise click.ClickException("REDIS_PASSWORD is not set")
    if not yes:
        click.confirm("This removes all sessions and queued jobs. Continue?", abort=True)

    click.echo(f"Flushing Redis at {s.redis_host}:{s.redis_port}...")
    try:
        asyncio.run(_flush(s.redis_connection_url(), s.redis_password_value()))
    except (InfrastructureError, redis.RedisError) as ex:
        raise click.ClickException(f"Failed to flush Redis: {ex}") from ex
    click.echo("Redis flushed")


@cli.command()
@click.argument("user_id", type=int)
@click.option("--revoke", is_flag=True, default=False, help="Invalidate all sessions of the user.")
def sessions(user_id: int, revoke: bool) -> None:
    """List (or revoke) the live sessions of USER_ID."""

    async def _run() -> None:
        store = build_store()
        try:
            manager = build_session_manager(store)
            if revoke:
                await manager.invalidate_all_user_sessions(user_id)
                click.echo(f"Revoked all sessions of user {user_id}")
                return
            items = await manager.get_user_sessions(user_id)
            for s in items:
                click.echo(
                    f"{s.session_id[:8]}...  {s.login_method.value:<6}  last={s.last_accessed_at.isoformat()}"
                    f"  expires={s.expires_at.isoformat()}  ip={s.ip_address or '-'}"
                )
            click.echo(f"{len(items)} session(s)")
        finally:
            await store.close()

    asyncio.run(_run())


if __name__ == "__main__":
    cli()
