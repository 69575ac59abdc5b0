import click
import json
import logging
import signal
from rich.console import Console
from rich.table import Table
from ..config import load_config, set_config_value
from ..errors import LeaseQueueError
from ..leasing.service import JobLeaseService
from ..models.job import Job, JobStatus
from ..storage.database import Storage
from ..workers.sweeper import RecoveryScheduler
from ..workers.worker import WorkerManager

console = Console()


def _fmt(value):
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


class AppContext:
    def __init__(self, db_path, config_path):
        self.db_path = db_path
        self.config_path = config_path
        self._service = None

    @property
    def config(self):
        return load_config(self.config_path)

    @property
    def service(self) -> JobLeaseService:
        if self._service is None:
            self._service = JobLeaseService(Storage(self.db_path))
        return self._service

    @property
    def storage(self) -> Storage:
        return self.service.storage


@click.group()
@click.option('--db', 'db_path', envvar='LEASEQUEUE_DB', default=None,
              help='SQLite file or SQLAlchemy URL (default ~/.leasequeue/jobs.db)')
@click.option('--config', 'config_path', envvar='LEASEQUEUE_CONFIG', default=None,
              help='Path to config.json (default ~/.leasequeue/config.json)')
@click.option('-v', '--verbose', is_flag=True, help='Log lease activity to stderr')
@click.pass_context
def cli(ctx, db_path, config_path, verbose):
    """leasequeue - shared job queue with leased, crash-recoverable claims"""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ctx.obj = AppContext(db_path, config_path)


@cli.command()
@click.argument('job_json')
@click.pass_obj
def enqueue(app, job_json):
    """Add a new job to the queue"""
    try:
        job_data = json.loads(job_json)
        if not isinstance(job_data, dict):
            raise ValueError("Job data must be a JSON object")
        job_data.setdefault("max_delivery_attempts", app.config.max_delivery_attempts)
        job = Job(**job_data)
        app.storage.add_job(job)
        console.print(f"[green]Job {job.id} enqueued successfully[/green]")
    except (ValueError, LeaseQueueError) as e:
        _fail(f"Error enqueueing job: {str(e)}")


@cli.group()
def worker():
    """Run worker threads"""
    pass


@worker.command('start')
@click.option('--count', default=1, help='Number of workers to start')
@click.option('--tenant', default=None, help='Only claim jobs for this tenant')
@click.pass_obj
def worker_start(app, count, tenant):
    """Start workers and block until interrupted"""
    try:
        manager = WorkerManager(app.service, app.config, tenant_scope=tenant)
    except LeaseQueueError as e:
        _fail(f"Error starting workers: {str(e)}")

    try:
        manager.start_workers(count)
        console.print(f"[green]Started {count} worker(s)[/green]")
        manager.wait()
    finally:
        manager.restore_signal_handlers()
    console.print("[green]Workers stopped[/green]")


@cli.group()
def sweeper():
    """Recover jobs whose lease expired"""
    pass


@sweeper.command('start')
@click.option('--interval', type=float, default=None, help='Seconds between sweeps (default from config)')
@click.pass_obj
def sweeper_start(app, interval):
    """Sweep expired leases on a fixed interval until interrupted"""
    try:
        scheduler = RecoveryScheduler(app.service, interval or app.config.sweep_interval)
    except LeaseQueueError as e:
        _fail(f"Error starting sweeper: {str(e)}")

    def handle_shutdown(signum, frame):
        scheduler.stop()

    previous = {sig: signal.signal(sig, handle_shutdown) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        console.print(f"[green]Sweeping every {scheduler.interval}s[/green]")
        # Runs in the foreground until a signal sets the stop event
        scheduler.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    console.print("[green]Sweeper stopped[/green]")


@cli.command()
@click.pass_obj
def recover(app):
    """Run one expired-lease sweep now"""
    try:
        result = app.service.recover_expired_leases()
    except LeaseQueueError as e:
        _fail(f"Error recovering expired leases: {str(e)}")

    console.print(f"Recovered {result.recovered_count} expired lease(s)")
    for job_id in result.requeued:
        console.print(f"  [yellow]requeued[/yellow] {job_id}")
    for job_id in result.failed:
        console.print(f"  [red]failed[/red] {job_id}")


@cli.command()
@click.pass_obj
def status(app):
    """Show summary of all job states"""
    try:
        counts = app.storage.count_by_status()
    except LeaseQueueError as e:
        _fail(f"Error getting status: {str(e)}")

    table = Table(title="Queue Status")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="magenta")
    for job_status in JobStatus:
        table.add_row(job_status.value, str(counts[job_status]))
    console.print(table)


@cli.command('list')
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in JobStatus]),
              help='Filter jobs by status')
@click.option('--tenant', default=None, help='Filter jobs by tenant')
@click.pass_obj
def list_jobs(app, status_filter, tenant):
    """List jobs in claim order"""
    try:
        status_enum = JobStatus(status_filter) if status_filter else None
        jobs = app.storage.list_jobs(status=status_enum, tenant_scope=tenant)
    except LeaseQueueError as e:
        _fail(f"Error listing jobs: {str(e)}")

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs {f'in {status_filter} status' if status_filter else ''}")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Priority")
    table.add_column("Attempts", style="yellow")
    table.add_column("Owner")
    table.add_column("Created At", style="blue")

    for job in jobs:
        table.add_row(
            job.id,
            job.command[:50] + "..." if len(job.command) > 50 else job.command,
            job.status.value,
            str(job.priority),
            f"{job.delivery_attempts}/{job.max_delivery_attempts}",
            job.claimed_by or "-",
            _fmt(job.created_at),
        )
    console.print(table)


@cli.command('lock-status')
@click.argument('job_id')
@click.pass_obj
def lock_status(app, job_id):
    """Show who holds the lease on a job"""
    try:
        lock = app.service.get_lock_status(job_id)
    except LeaseQueueError as e:
        _fail(f"Error reading lock status: {str(e)}")

    if lock.status is None:
        console.print(f"[yellow]Job {job_id} not found[/yellow]")
        return

    table = Table(title=f"Lock status for {job_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("locked", "[red]yes[/red]" if lock.locked else "[green]no[/green]")
    table.add_row("status", lock.status.value)
    table.add_row("owner", lock.owner_id or "-")
    table.add_row("expires at", _fmt(lock.expires_at))
    table.add_row("last heartbeat", _fmt(lock.last_heartbeat_at))
    table.add_row("lock version", str(lock.lock_version))
    console.print(table)


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key')
@click.pass_obj
def config_get(app, key):
    """Get a configuration value"""
    try:
        values = app.config.model_dump(by_alias=True)
    except LeaseQueueError as e:
        _fail(f"Error getting configuration: {str(e)}")

    if key not in values:
        console.print(f"[yellow]Configuration key '{key}' not found[/yellow]")
    else:
        console.print(f"{key}: {values[key]}")


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_obj
def config_set(app, key, value):
    """Set a configuration value"""
    try:
        updated = set_config_value(key, value, app.config_path)
    except LeaseQueueError as e:
        _fail(f"Error setting configuration: {str(e)}")

    console.print(f"[green]Set {key} to {updated.model_dump(by_alias=True)[key]}[/green]")


if __name__ == '__main__':
    cli()
