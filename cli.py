# cli.py
import logging
import sys
import time

import click

from artifacts import LocalStorage
from errors import ExportError
from exports import ExportService
from job_queue import JobQueue
from settings import Settings
from storage import Storage


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def get_service():
    db = Storage()
    settings = Settings.load(db)
    return ExportService(db=db, settings=settings, artifacts=LocalStorage(settings.storage_dir))


def fmt_ts(value):
    return value.isoformat(timespec="seconds") if value else "-"


@click.group()
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
def cli(log_level):
    """exportctl - asynchronous image export pipeline"""
    configure_logging(log_level)


# ---------------- Submit ----------------
@cli.command()
@click.option("--owner", required=True, help="Owner (submitting principal) id")
@click.option("--item", "items", multiple=True, required=True, help="Source item ref (repeat, order is kept)")
@click.option("--kind", type=click.Choice(["single", "batch", "aggregate"]), default="single")
@click.option("--format", "fmt", default="png", help="Output format (png, jpg, jpeg, webp)")
@click.option("--quality", default=90, type=int, help="Encoder quality 1-100")
@click.option("--width", default=1290, type=int, help="Target width in pixels")
@click.option("--height", default=2796, type=int, help="Target height in pixels")
@click.option("--scale", default=2, type=int, help="Scale factor 1-3")
@click.option("--priority", type=click.Choice(["high", "normal", "low"]), default="normal")
@click.option("--id", "job_id", default=None, help="Job ID (generated if omitted)")
@click.option("--preset", default=None, help="Preset label, e.g. 'iPhone 6.7'")
def submit(owner, items, kind, fmt, quality, width, height, scale, priority, job_id, preset):
    """Submit a new export job"""
    service = get_service()
    try:
        job_id = service.submit(
            owner, list(items), kind,
            {"format": fmt, "quality": quality, "width": width, "height": height, "scale": scale},
            priority=priority, job_id=job_id, preset=preset,
        )
    except ExportError as e:
        click.echo(f"❌ Failed to submit job: {e}")
        sys.exit(1)
    click.echo(f"✅ Job {job_id} submitted ({kind}, {len(items)} item(s), priority={priority}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--state", default=None, help="Filter jobs by state (pending, processing, completed, failed, cancelled)")
@click.option("--owner", default=None, help="Filter jobs by owner")
@click.option("--page", default=1, type=int)
@click.option("--limit", default=20, type=int)
def list_jobs(state, owner, page, limit):
    """List export jobs"""
    service = get_service()
    try:
        jobs, total = service.list_jobs(owner_id=owner, status=state, page=page, limit=limit)
    except ExportError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)

    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        click.echo(f"{job.id} | owner={job.owner_id} | {job.kind} | state={job.status} | progress={job.progress}% "
                   f"| attempts={job.attempt_count} | priority={job.priority}")
    click.echo(f"-- page {page}, {len(jobs)} of {total} job(s)")


# ---------------- Status ----------------
@cli.command()
def status():
    """Show summary of job states and the queue"""
    db = Storage()
    counts = db.status_counts()
    stats = JobQueue(db).stats()

    if not counts:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state, count in sorted(counts.items()):
        click.echo(f"  {state}: {count}")
    click.echo(f"📬 Queue: waiting={stats['waiting']} delayed={stats['delayed']} active={stats['active']}"
               f"{' (paused)' if stats['paused'] else ''}")


# ---------------- Metrics ----------------
@cli.command()
def metrics():
    """Show job metrics summary"""
    db = Storage()
    counts = db.status_counts()
    avg_ms = db.avg_processing_ms()

    click.echo("📈 Metrics Summary")
    click.echo(f"  Completed jobs: {counts.get('completed', 0)}")
    click.echo(f"  Failed jobs: {counts.get('failed', 0)}")
    click.echo(f"  Cancelled jobs: {counts.get('cancelled', 0)}")
    click.echo(f"  Avg processing (s): {avg_ms / 1000:.3f}" if avg_ms is not None else "  Avg processing: N/A")


# ---------------- Cancel / Retry ----------------
@cli.command()
@click.argument("job_id")
def cancel(job_id):
    """Cancel a pending or processing job"""
    try:
        get_service().cancel(job_id)
    except ExportError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)
    click.echo(f"🛑 Cancel requested for job {job_id}.")


@cli.command()
@click.argument("job_id")
def retry(job_id):
    """Retry a failed job by moving it back to pending"""
    try:
        get_service().retry(job_id)
    except ExportError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)
    click.echo(f"♻️ Job {job_id} moved back to pending.")


@cli.command()
def failed():
    """List failed jobs"""
    jobs, _ = Storage().list_jobs(status="failed", limit=100)
    if not jobs:
        click.echo("No failed jobs.")
        return
    for job in jobs:
        click.echo(f"{job.id} | owner={job.owner_id} | attempts={job.attempt_count} | error={job.failure_reason}")


# ---------------- Artifacts ----------------
@cli.command()
@click.argument("job_id")
def artifacts(job_id):
    """Show artifact refs of a completed job"""
    try:
        result = get_service().get_artifacts(job_id)
    except ExportError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)
    for ref in result["item_refs"]:
        click.echo(ref)
    if result["aggregate_ref"]:
        click.echo(f"archive: {result['aggregate_ref']}")
    click.echo(f"expires at: {fmt_ts(result['expires_at'])}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=None, type=int, help="Number of workers to start (uses config if set)")
@click.option("--lease-seconds", default=None, type=int, help="Lease duration to prevent double-claims (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.option("--storage-dir", default=None, help="Artifact storage directory (uses config if set)")
@click.option("--source-dir", default=None, help="Source item directory (uses config if set)")
@click.option("--no-sweeper", is_flag=True, help="Do not run the expiration sweeper alongside the workers")
def worker(count, lease_seconds, poll_interval, storage_dir, source_dir, no_sweeper):
    """Start background workers with leases and graceful shutdown"""
    import threading
    from events import EventBus
    from render import PillowRenderEngine
    from sweeper import ExpirationSweeper
    from worker import Worker, WorkerPool

    db = Storage()
    settings = Settings.load(db, worker_count=count, lease_seconds=lease_seconds, poll_interval=poll_interval,
                             storage_dir=storage_dir, source_dir=source_dir)
    store = LocalStorage(settings.storage_dir)
    engine = PillowRenderEngine(LocalStorage(settings.source_dir))
    bus = EventBus()

    def make_worker(worker_id, stop_event):
        return Worker(engine, store, db_path=db.db_path, settings=settings, events_bus=bus,
                      worker_id=worker_id, stop_event=stop_event)

    pool = WorkerPool(settings.worker_count, make_worker)
    click.echo(f"🚀 Starting {settings.worker_count} worker(s) (lease={settings.lease_seconds}s, "
               f"timeout={settings.job_timeout_seconds}s, max_attempts={settings.max_attempts}, "
               f"poll={settings.poll_interval}s)")
    pool.start()

    sweeper_thread = None
    if not no_sweeper:
        sweeper = ExpirationSweeper(store, db_path=db.db_path, interval=settings.sweep_interval,
                                    stop_event=pool.stop_event)
        sweeper_thread = threading.Thread(target=sweeper.run, name="sweeper", daemon=True)
        sweeper_thread.start()

    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        pool.stop()
        if sweeper_thread:
            sweeper_thread.join(timeout=5.0)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Sweeper ----------------
@cli.command()
@click.option("--storage-dir", default=None, help="Artifact storage directory (uses config if set)")
def sweep(storage_dir):
    """Revoke artifacts of jobs past their retention window"""
    from sweeper import ExpirationSweeper

    db = Storage()
    settings = Settings.load(db, storage_dir=storage_dir)
    revoked = ExpirationSweeper(LocalStorage(settings.storage_dir), db=db).sweep_once()
    click.echo(f"🧹 Revoked artifacts of {revoked} expired job(s).")


# ---------------- Queue operations ----------------
@cli.group()
def queue():
    """Queue inspection and control"""
    pass


@queue.command("stats")
def queue_stats():
    """Show queue counts"""
    stats = JobQueue(Storage()).stats()
    for key in ("waiting", "delayed", "active", "total"):
        click.echo(f"  {key}: {stats[key]}")
    click.echo(f"  paused: {'yes' if stats['paused'] else 'no'}")


@queue.command("pause")
def queue_pause():
    """Stop workers from leasing new jobs"""
    JobQueue(Storage()).pause()
    click.echo("⏸ Queue paused.")


@queue.command("resume")
def queue_resume():
    """Let workers lease jobs again"""
    JobQueue(Storage()).resume()
    click.echo("▶ Queue resumed.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass

@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key, value):
    """Set a config key to a value"""
    Storage().set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")

@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
def config_get(key, default):
    """Get a config key"""
    row = Storage().fetchone("SELECT value, updated_at FROM config WHERE key=?", (key,))
    if not row:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={row['value']} (updated_at={row['updated_at']})")

@config.command("list")
def config_list():
    """List all config keys"""
    rows = Storage().list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


@cli.command()
@click.argument("job_id")
def show(job_id):
    """Show details of a single job"""
    try:
        job = get_service().get_job(job_id)
    except ExportError as e:
        click.echo(f"❌ {e}")
        sys.exit(1)

    s = job.render_settings
    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Owner: {job.owner_id}")
    click.echo(f"  Kind: {job.kind}")
    click.echo(f"  Items: {len(job.item_refs)}")
    click.echo(f"  Settings: {s.format} q={s.quality} {s.width}x{s.height} @{s.scale}x")
    click.echo(f"  State: {job.status}{' (cancel requested)' if job.cancel_requested else ''}")
    click.echo(f"  Progress: {job.progress}%")
    click.echo(f"  Attempts: {job.attempt_count} (max {job.max_attempts} per chain)")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Created: {fmt_ts(job.created_at)}")
    click.echo(f"  Started: {fmt_ts(job.started_at)}")
    click.echo(f"  Completed: {fmt_ts(job.completed_at)}")
    click.echo(f"  Expires: {fmt_ts(job.expires_at)}")
    click.echo(f"  Duration: {job.processing_ms / 1000:.3f}s" if job.processing_ms else "  Duration: -")
    click.echo(f"  Error: {job.failure_reason or job.last_error or '-'}")
    click.echo(f"  Artifacts: {len(job.artifact_refs)}{' + archive' if job.aggregate_ref else ''}")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
def dashboard(host, port):
    """Serve the monitoring dashboard"""
    import uvicorn
    uvicorn.run("dashboard:app", host=host, port=port)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
