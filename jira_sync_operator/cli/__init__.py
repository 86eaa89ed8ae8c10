"""
Command Line Interface for the JIRA Sync Operator.
"""

from typing import List, Optional

import httpx
import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..errors import ValidationError
from ..jobs import job_id as job_ids

app = typer.Typer(help="JIRA Sync Operator - declarative issue-tracker to Git syncs")
console = Console()

STATUS_STYLES = {
    "pending": "🟡",
    "running": "🔵",
    "succeeded": "🟢",
    "failed": "🔴",
    "unknown": "❓",
}

PHASE_STYLES = {
    "Pending": "🟡",
    "Processing": "🔵",
    "Recovering": "🟠",
    "Completed": "🟢",
    "Failed": "🔴",
}


def _default_api_url() -> str:
    settings = get_settings()
    host = "localhost" if settings.api_host in ("0.0.0.0", "") else settings.api_host
    return f"http://{host}:{settings.api_port}"


def _client(api_url: str) -> httpx.Client:
    return httpx.Client(base_url=api_url, timeout=10.0)


def _get(api_url: str, path: str, params: Optional[dict] = None):
    try:
        with _client(api_url) as client:
            response = client.get(path, params=params)
    except httpx.HTTPError as e:
        console.print(f"❌ Cannot reach operator API at {api_url}: {e}")
        raise typer.Exit(code=1)

    if response.status_code >= 400:
        detail = response.json().get("detail", {}) if response.content else {}
        error = detail.get("error", {}) if isinstance(detail, dict) else {}
        console.print(f"❌ API error {response.status_code}: {error.get('message', detail)}")
        raise typer.Exit(code=1)
    return response.json()


@app.command()
def run(
    namespace: Optional[str] = typer.Option(None, help="Namespace to watch (default: from config)"),
    workers: Optional[int] = typer.Option(None, help="Concurrent reconcile workers"),
):
    """Run the control loop until interrupted."""
    from ..controller.loop import run_operator

    rprint(Panel.fit("Starting JIRASync operator", style="bold blue"))
    try:
        run_operator(namespace=namespace, workers=workers)
    except KeyboardInterrupt:
        console.print("\n🛑 Shutting down...")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Serve the HTTP API (with the control loop embedded)."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit(f"🚀 JIRA Sync Operator API on http://{host}:{port}", style="bold blue"))
    uvicorn.run("jira_sync_operator.main:app", host=host, port=port, reload=reload)


@app.command()
def jobs(
    kind: Optional[List[str]] = typer.Option(None, help="Filter by kind (single/batch/jql)"),
    status: Optional[List[str]] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(0, help="Maximum rows (0 for all)"),
    api_url: Optional[str] = typer.Option(None, help="Operator API base URL"),
):
    """List sync jobs."""
    params = {"limit": limit}
    if kind:
        params["kind"] = kind
    if status:
        params["status"] = status
    results = _get(api_url or _default_api_url(), "/api/v1/jobs", params)

    if not results:
        console.print("No jobs found")
        return

    table = Table(title="Sync Jobs", show_header=True, header_style="bold magenta")
    table.add_column("Job ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Message")
    for job in results:
        job_status = job.get("status", "unknown")
        total = job.get("total_issues") or 0
        progress = f"{job.get('processed_issues', 0)}/{total}" if total else "-"
        table.add_row(
            job["job_id"],
            job.get("kind", ""),
            f"{STATUS_STYLES.get(job_status, '❓')} {job_status}",
            progress,
            job.get("error_message") or job.get("message", ""),
        )
    console.print(table)


@app.command()
def queue(
    api_url: Optional[str] = typer.Option(None, help="Operator API base URL"),
):
    """Show job counts by status."""
    counts = _get(api_url or _default_api_url(), "/api/v1/queue")

    table = Table(title="Job Queue", show_header=True, header_style="bold magenta")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")
    for key in ("pending", "running", "succeeded", "failed", "unknown", "total"):
        table.add_row(key, str(counts.get(key, 0)))
    console.print(table)


@app.command()
def syncs(
    api_url: Optional[str] = typer.Option(None, help="Operator API base URL"),
):
    """List JIRASync resources and their phases."""
    resources = _get(api_url or _default_api_url(), "/api/v1/syncs")

    if not resources:
        console.print("No syncs found")
        return

    table = Table(title="JIRASync Resources", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Phase")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", justify="right")
    for resource in resources:
        status = resource.get("status", {})
        phase = status.get("phase") or "New"
        percentage = status.get("progress", {}).get("percentage", 0.0)
        table.add_row(
            resource["metadata"]["name"],
            resource["spec"]["syncType"],
            f"{PHASE_STYLES.get(phase, '⚪')} {phase}",
            f"{percentage:.0f}%",
            str(status.get("retryCount", 0)),
        )
    console.print(table)


@app.command("new-id")
def new_id(
    kind: Optional[str] = typer.Argument(None, help="Job kind to embed as the prefix"),
):
    """Generate a job identifier."""
    console.print(job_ids.generate_with_kind(kind) if kind else job_ids.generate())


@app.command("validate-id")
def validate_id(
    job_id: str = typer.Argument(..., help="Identifier to check"),
):
    """Check a job identifier against the naming rules."""
    try:
        job_ids.validate(job_id)
    except ValidationError as e:
        console.print(f"❌ {e.message} [{e.code}]")
        raise typer.Exit(code=1)

    console.print(f"✅ {job_id} is valid")
    try:
        parsed = job_ids.parse(job_id)
    except ValidationError:
        return
    console.print(f"   kind: {parsed.kind}  created: {parsed.timestamp}  suffix: {parsed.suffix}")


if __name__ == "__main__":
    app()
