# dashboard.py
import html
import mimetypes
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, Response

from artifacts import LocalStorage
from errors import ArtifactMissingError, ConflictError, ExpiredArtifactError, NotFoundError
from exports import ExportService
from settings import Settings
from storage import Storage

app = FastAPI(title="exportctl dashboard")


@lru_cache(maxsize=1)
def get_service() -> ExportService:
    db = Storage()
    settings = Settings.load(db)
    return ExportService(db=db, settings=settings, artifacts=LocalStorage(settings.storage_dir))


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  tr:hover { background-color: #e0f7fa; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
  progress { width: 120px; }
"""

def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/metrics">📈 Metrics</a>
        <a href="/failed">🗑 Failed</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """

def esc(value) -> str:
    return html.escape(str(value)) if value is not None else "-"

def fmt_ts(value) -> str:
    return value.isoformat(timespec="seconds") if value else "-"

def metric_counts(service: ExportService) -> dict:
    counts = service.db.status_counts()
    avg_ms = service.db.avg_processing_ms()
    return {
        "pending": counts.get("pending", 0),
        "processing": counts.get("processing", 0),
        "completed": counts.get("completed", 0),
        "failed": counts.get("failed", 0),
        "cancelled": counts.get("cancelled", 0),
        "avg_processing_seconds": round(avg_ms / 1000, 3) if avg_ms is not None else None,
    }

# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(service: ExportService = Depends(get_service)):
    jobs, total = service.list_jobs(limit=50)

    table_html = f"""
    <h2>Recent jobs ({total} total)</h2>
    <table>
      <tr><th>ID</th><th>Owner</th><th>Kind</th><th>State</th><th>Progress</th><th>Attempts</th><th>Priority</th><th>Created</th></tr>
    """
    for job in jobs:
        table_html += (
            f"<tr><td><a href='/job/{esc(job.id)}'>{esc(job.id)}</a></td><td>{esc(job.owner_id)}</td>"
            f"<td>{job.kind}</td><td>{job.status}</td>"
            f"<td><progress value='{job.progress}' max='100'></progress> {job.progress}%</td>"
            f"<td>{job.attempt_count}</td><td>{job.priority}</td><td>{fmt_ts(job.created_at)}</td></tr>"
        )
    table_html += "</table>"

    stats = service.queue_stats()
    queue_html = f"""
      <h2>Queue</h2>
      <div class="cards">
        <div class="card"><h3>Waiting</h3><p>{stats['waiting']}</p></div>
        <div class="card"><h3>Delayed (backoff)</h3><p>{stats['delayed']}</p></div>
        <div class="card"><h3>Active leases</h3><p>{stats['active']}</p></div>
        <div class="card"><h3>Paused</h3><p>{'yes' if stats['paused'] else 'no'}</p></div>
      </div>
    """
    return page("📊 Export Dashboard", table_html + queue_html)

# ---------- Metrics (page) ----------
@app.get("/metrics", response_class=HTMLResponse)
def metrics_page(service: ExportService = Depends(get_service)):
    m = metric_counts(service)
    avg = f"{m['avg_processing_seconds']:.3f}s" if m["avg_processing_seconds"] is not None else "N/A"
    cards = f"""
      <div class="cards">
        <div class="card"><h3>Completed</h3><p>{m['completed']}</p></div>
        <div class="card"><h3>Failed</h3><p>{m['failed']}</p></div>
        <div class="card"><h3>Cancelled</h3><p>{m['cancelled']}</p></div>
        <div class="card"><h3>Avg processing</h3><p>{avg}</p></div>
      </div>
      <p class="muted">Tip: Use the CLI "metrics" command for scriptable outputs.</p>
    """
    return page("📈 Metrics", cards)

# ---------- Metrics (JSON) ----------
@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(service: ExportService = Depends(get_service)):
    return metric_counts(service)

@app.get("/queue/json", response_class=JSONResponse)
def queue_json(service: ExportService = Depends(get_service)):
    return service.queue_stats()

# ---------- Failed ----------
@app.get("/failed", response_class=HTMLResponse)
def failed_page(service: ExportService = Depends(get_service)):
    jobs, _ = service.list_jobs(status="failed", limit=100)

    body = """
      <h2>Failed jobs</h2>
      <table>
        <tr><th>ID</th><th>Owner</th><th>Attempts</th><th>Reason</th><th>Failed at</th></tr>
    """
    if not jobs:
        body += "</table><p class='muted'>No failed jobs.</p>"
    else:
        for job in jobs:
            body += (f"<tr><td><a href='/job/{esc(job.id)}'>{esc(job.id)}</a></td><td>{esc(job.owner_id)}</td>"
                     f"<td>{job.attempt_count}</td><td>{esc(job.failure_reason)}</td><td>{fmt_ts(job.completed_at)}</td></tr>")
        body += "</table><p class='muted'>Use the CLI retry command to queue a job again.</p>"

    return page("🗑 Failed Jobs", body)

# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page(service: ExportService = Depends(get_service)):
    rows = service.db.list_config()

    body = """
      <h2>Runtime configuration</h2>
      <table>
        <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
    """
    if not rows:
        body += "</table><p class='muted'>No config entries found.</p>"
    else:
        for r in rows:
            body += f"<tr><td>{esc(r['key'])}</td><td>{esc(r['value'])}</td><td>{r['updated_at']}</td></tr>"
        body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"

    return page("⚙ Config", body)

# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, service: ExportService = Depends(get_service)):
    try:
        job = service.get_job(job_id)
    except NotFoundError:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {esc(job_id)} not found.</p>"), status_code=404)

    s = job.render_settings
    artifacts_html = ""
    if job.status == "completed":
        if job.artifacts_revoked_at:
            artifacts_html = f"<p class='muted'>Artifacts expired at {fmt_ts(job.expires_at)}.</p>"
        else:
            links = "".join(
                f"<li><a href='/job/{esc(job.id)}/artifacts/{i}'>⬇ item {i + 1}</a></li>"
                for i in range(len(job.artifact_refs))
            )
            if job.aggregate_ref:
                links += f"<li><a href='/job/{esc(job.id)}/archive'>⬇ archive</a></li>"
            artifacts_html = f"<ul>{links}</ul><p class='muted'>Available until {fmt_ts(job.expires_at)}.</p>"

    body = f"""
      <h2>Job {esc(job.id)}</h2>
      <div class="cards">
        <div class="card"><b>State</b><p>{job.status}{' (cancel requested)' if job.cancel_requested else ''}</p></div>
        <div class="card"><b>Progress</b><p>{job.progress}%</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempt_count}</p></div>
        <div class="card"><b>Priority</b><p>{job.priority}</p></div>
        <div class="card"><b>Kind</b><p>{job.kind} ({len(job.item_refs)} item(s))</p></div>
      </div>

      <h3>Render settings</h3>
      <p class="muted">{s.format} · quality {s.quality} · {s.width}x{s.height} · scale {s.scale}x</p>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{fmt_ts(job.created_at)}</td></tr>
        <tr><th>Started</th><td>{fmt_ts(job.started_at)}</td></tr>
        <tr><th>Completed</th><td>{fmt_ts(job.completed_at)}</td></tr>
        <tr><th>Expires</th><td>{fmt_ts(job.expires_at)}</td></tr>
        <tr><th>Updated</th><td>{fmt_ts(job.updated_at)}</td></tr>
      </table>

      <h3>Error</h3>
      <pre>{esc(job.failure_reason or job.last_error)}</pre>

      <h3>Artifacts</h3>
      {artifacts_html or "<p class='muted'>No artifacts.</p>"}
    """
    return page(f"🔎 Job {esc(job.id)} Detail", body)

# ---------- Download ----------
def download(service: ExportService, job_id: str, pick) -> Response:
    try:
        refs = service.get_artifacts(job_id)
        ref = pick(refs)
        data = service.open_artifact(job_id, ref)
    except (NotFoundError, ArtifactMissingError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.code)
    except ExpiredArtifactError:
        raise HTTPException(status_code=410, detail="expired")
    media_type = mimetypes.guess_type(ref)[0] or "application/octet-stream"
    filename = ref.rsplit("/", 1)[-1]
    return Response(data, media_type=media_type, headers={"Content-Disposition": f'attachment; filename="{filename}"'})

@app.get("/job/{job_id}/artifacts/{index}")
def download_artifact(job_id: str, index: int, service: ExportService = Depends(get_service)):
    def pick(refs):
        if not 0 <= index < len(refs["item_refs"]):
            raise NotFoundError(f"Job {job_id} has no artifact {index}")
        return refs["item_refs"][index]
    return download(service, job_id, pick)

@app.get("/job/{job_id}/archive")
def download_archive(job_id: str, service: ExportService = Depends(get_service)):
    def pick(refs):
        if not refs["aggregate_ref"]:
            raise NotFoundError(f"Job {job_id} has no archive")
        return refs["aggregate_ref"]
    return download(service, job_id, pick)
