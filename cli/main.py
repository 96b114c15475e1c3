import asyncio
import json
import logging
from typing import Optional

import typer

from domain.cache import CachedReadService, ReadThroughCache
from domain.errors import BettingError
from domain.services import BetLifecycleService
from infra.db import AsyncSessionLocal, create_schema
from infra.redis import cache_store
from infra.scheduler import SchedulerService
from infra.settings import settings

app = typer.Typer(help="Crypto up/down betting maintenance CLI")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(level="DEBUG" if verbose else settings.log_level)


def get_cache() -> ReadThroughCache:
    return ReadThroughCache(cache_store)


@app.command()
def init_db():
    """Create tables and indexes"""
    try:
        asyncio.run(create_schema())
        typer.echo("✓ Database schema created")
    except Exception as e:
        typer.echo(f"✗ Schema creation failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def reconcile(address: Optional[str] = typer.Option(None, help="Reconcile a single address")):
    """Rebuild account counters from bet records"""
    async def run():
        async with AsyncSessionLocal() as db:
            service = BetLifecycleService(db, get_cache())
            if address:
                return [await service.reconcile_account(address)]
            return await service.reconcile_all()

    try:
        results = asyncio.run(run())
    except BettingError as e:
        typer.echo(f"✗ Reconciliation failed: {e.message}", err=True)
        raise typer.Exit(1)

    corrected = [r for r in results if r["corrected"]]
    typer.echo(f"✓ Checked {len(results)} accounts, corrected {len(corrected)}")
    for result in corrected:
        typer.echo(f"  {result['address']}: {json.dumps(result['drift'])}")


@app.command()
def expired():
    """List active bets whose window has passed"""
    async def run():
        async with AsyncSessionLocal() as db:
            return await BetLifecycleService(db).list_expired_active_bets()

    try:
        bets = asyncio.run(run())
    except BettingError as e:
        typer.echo(f"✗ Query failed: {e.message}", err=True)
        raise typer.Exit(1)

    if not bets:
        typer.echo("✓ No expired bets awaiting settlement")
        return
    typer.echo(f"{len(bets)} expired bets awaiting settlement:")
    for bet in bets:
        typer.echo(f"  {bet.id}  {bet.token.value} {bet.direction.value} {bet.amount}  expired {bet.expires_at.isoformat()}")


@app.command()
def clear_cache():
    """Drop every cached aggregate view"""
    async def run():
        try:
            return await get_cache().clear()
        finally:
            await cache_store.close()

    try:
        removed = asyncio.run(run())
    except BettingError as e:
        typer.echo(f"✗ Cache clear failed: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo(f"✓ Removed {removed} cache keys")


@app.command()
def global_stats():
    """Print platform-wide statistics"""
    async def run():
        async with AsyncSessionLocal() as db:
            return await CachedReadService(db, get_cache()).get_global_stats()

    try:
        stats = asyncio.run(run())
    except BettingError as e:
        typer.echo(f"✗ Stats failed: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(stats, indent=2))


@app.command()
def scheduler():
    """Run maintenance jobs until interrupted"""
    async def run():
        service = SchedulerService()
        await service.start()
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("✓ Scheduler stopped")


if __name__ == "__main__":
    app()
