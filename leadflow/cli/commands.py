import asyncio
from datetime import datetime
from typing import Optional

import typer
from loguru import logger

from leadflow.config import settings
from leadflow.container import build_container
from leadflow.core.exceptions import AppError
from leadflow.services.discovery.models import DiscoveryRun, LeadFilters
from leadflow.services.discovery.service import IService
from leadflow.services.pipeline import stages
from leadflow.services.pipeline.flows import lead_ingestion_flow
from leadflow.services.pipeline.models import FetchPayload

app = typer.Typer(help="Lead discovery and ingestion")


def _run(coro):
    """Run a coroutine, turning caller-visible errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except AppError as e:
        print(f"❌ {e.code}: {e.message}")
        raise typer.Exit(code=1)


def _print_run(run: DiscoveryRun):
    print(f"Run {run.id} [{run.status.value}] '{run.query}'")
    if run.job_id:
        print(f"  job: {run.job_id}")
    if run.discovered_count is not None:
        print(f"  discovered: {run.discovered_count}  persisted: {run.persisted_count}")
    if run.quality_meta:
        meta = run.quality_meta
        print(
            f"  quality: {meta.input_count} in, {meta.deduped_count} deduped, "
            f"{meta.valid_count} valid, {meta.rejected_count} rejected"
        )
    if run.error_message:
        print(f"  error: {run.error_message}")


async def wait_for_run(
    service: IService,
    run_id: int,
    user_id: Optional[str],
    attempts: int,
    interval: float,
) -> Optional[DiscoveryRun]:
    """Poll a run until it is terminal. Returns None after ``attempts`` polls.

    Giving up does not cancel the job; it keeps running in the workers.
    """
    for _ in range(attempts):
        run = await service.get_discovery_status(run_id, user_id)
        if run.is_terminal:
            return run
        await asyncio.sleep(interval)
    return None


# ---------------------------------------------------------------------------
# Discovery runs
# ---------------------------------------------------------------------------


@app.command()
def discover(
    user_id: str = typer.Argument(..., help="User starting the run"),
    city: str = typer.Argument(..., help="City to search, e.g. 'Austin'"),
    category: str = typer.Argument(..., help="Business category, e.g. 'plumbers'"),
    limit: int = typer.Option(None, "--limit", "-l", help="Maximum leads (capped by plan)"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Poll until the run finishes"),
    attempts: int = typer.Option(30, "--attempts", help="Polls before giving up with --wait"),
    interval: float = typer.Option(2.0, "--interval", help="Seconds between polls"),
):
    """
    Start a discovery run.

    Examples:
        leadflow discover user-1 Austin plumbers

        leadflow discover user-1 Austin plumbers --limit 20 --wait
    """

    async def run():
        async with build_container(run_workers=False) as container:
            started = await container.discovery.start_discovery(user_id, city, category, limit)
            quota = started.quota
            mode = f"queued as job {started.job_id}" if started.queued else "processed inline"
            print(f"✅ Run {started.run_id} {mode}")
            print(f"Quota: {quota.today_count}/{quota.daily_limit} today ({quota.tier})")

            if not (wait and started.queued):
                if not started.queued:
                    _print_run(await container.discovery.get_discovery_status(started.run_id, user_id))
                return

            final = await wait_for_run(container.discovery, started.run_id, user_id, attempts, interval)
            if final is None:
                print(f"⏱️  Run {started.run_id} still in progress after {attempts} polls")
                raise typer.Exit(code=2)
            _print_run(final)

    _run(run())


@app.command()
def status(
    run_id: int = typer.Argument(..., help="Discovery run id"),
    user_id: str = typer.Option(None, "--user", "-u", help="Only match runs of this user"),
):
    """Show a run's status, syncing it with its queue job first."""

    async def run():
        async with build_container(run_workers=False) as container:
            _print_run(await container.discovery.get_discovery_status(run_id, user_id))

    _run(run())


@app.command()
def results(
    run_id: int = typer.Argument(..., help="Discovery run id"),
    user_id: str = typer.Option(None, "--user", "-u", help="Only match runs of this user"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List the leads a run discovered."""

    async def run():
        async with build_container(run_workers=False) as container:
            data = await container.discovery.get_discovery_results(run_id, user_id, page, limit)
            _print_run(data.run)
            for lead in data.leads:
                website = lead.website_host or "no website"
                print(f"  {lead.id:>6}  {lead.business_name}  ({lead.city or '-'}, {website})")
            p = data.pagination
            print(f"Page {p.page}/{p.total_pages} ({p.total} leads)")

    _run(run())


@app.command("my-leads")
def my_leads(
    user_id: str = typer.Argument(..., help="User whose leads to list"),
    city: str = typer.Option(None, "--city"),
    state: str = typer.Option(None, "--state"),
    category: str = typer.Option(None, "--category"),
    has_website: Optional[bool] = typer.Option(None, "--has-website/--no-website"),
    has_phone: Optional[bool] = typer.Option(None, "--has-phone/--no-phone"),
    min_rating: float = typer.Option(None, "--min-rating"),
    max_rating: float = typer.Option(None, "--max-rating"),
    created_after: datetime = typer.Option(None, "--created-after"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
    sort_by: str = typer.Option("created_at", "--sort-by"),
    sort_order: str = typer.Option("desc", "--sort-order"),
):
    """List every lead a user's completed runs discovered."""
    filters = LeadFilters(
        city=city,
        state=state,
        business_category=category,
        has_website=has_website,
        has_phone=has_phone,
        min_rating=min_rating,
        max_rating=max_rating,
        created_after=created_after,
    )

    async def run():
        async with build_container(run_workers=False) as container:
            data = await container.discovery.get_my_discovered_leads(
                user_id, filters, page, limit, sort_by, sort_order
            )
            for lead in data.leads:
                rating = lead.google_rating if lead.google_rating is not None else "-"
                print(f"  {lead.id:>6}  {lead.business_name}  {lead.city or '-'}  ★ {rating}")
            p = data.pagination
            print(f"Page {p.page}/{p.total_pages} ({p.total} leads)")

    _run(run())


@app.command()
def stats(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's discovery totals."""

    async def run():
        async with build_container(run_workers=False) as container:
            s = await container.discovery.get_user_stats(user_id)
            print(f"Runs: {s.total_runs} total, {s.today_runs} today")
            print(f"Leads: {s.total_leads} ({s.leads_no_website} without a website)")

    _run(run())


# ---------------------------------------------------------------------------
# Queue workers
# ---------------------------------------------------------------------------


@app.command()
def worker():
    """Run the stage workers until interrupted."""
    if not settings.lead_pipeline_queue_enabled:
        print("❌ LEAD_PIPELINE_QUEUE_ENABLED is false; nothing to work on")
        raise typer.Exit(code=1)

    async def run():
        async with build_container(run_workers=True) as container:
            container.queue.start()
            print("Workers running. Press Ctrl+C to stop.")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                logger.info("Worker shutdown requested")

    try:
        _run(run())
    except KeyboardInterrupt:
        print("Stopped.")


@app.command("dead-letters")
def dead_letters(limit: int = typer.Option(20, "--limit", "-l")):
    """Show the most recent dead-lettered jobs."""
    if not settings.lead_pipeline_queue_enabled:
        print("❌ LEAD_PIPELINE_QUEUE_ENABLED is false; there is no dead-letter queue")
        raise typer.Exit(code=1)

    async def run():
        async with build_container(run_workers=False) as container:
            letters = await container.queue.get_dead_letters(limit)
            if not letters:
                print("No dead-lettered jobs")
            for letter in letters:
                print(f"{letter.failed_at:%Y-%m-%d %H:%M:%S}  [{letter.stage}]  {letter.message}")
                print(f"    payload: {letter.payload}")

    _run(run())


# ---------------------------------------------------------------------------
# One-shot ingestion
# ---------------------------------------------------------------------------


@app.command()
def ingest(
    query: str = typer.Argument(..., help="Text search, e.g. 'dentists in Austin'"),
    limit: int = typer.Option(60, "--limit", "-l"),
):
    """Fetch, clean, enrich and persist leads for a query, in this process."""

    async def run():
        async with build_container(run_workers=False) as container:
            result = await stages.run_full(
                FetchPayload(query=query, limit=limit), container.places, container.leads
            )
            meta = result.quality_meta
            print(f"✅ {result.persisted_count} leads saved for '{result.query}'")
            print(
                f"   {meta.input_count} fetched, {meta.deduped_count} after dedupe, "
                f"{meta.rejected_count} rejected"
            )

    _run(run())


@app.command("ingest-flow")
def ingest_flow(
    query: str = typer.Argument(..., help="Text search, e.g. 'dentists in Austin'"),
    limit: int = typer.Option(60, "--limit", "-l"),
):
    """Run ingestion as a Prefect flow (retries and run history in Prefect)."""
    summary = _run(lead_ingestion_flow(query=query, limit=limit))
    print(f"✅ {summary['persisted_count']} leads saved for '{summary['query']}'")
