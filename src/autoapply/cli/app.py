from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import typer
import uvicorn

from autoapply.api.app import create_app
from autoapply.config import get_settings
from autoapply.core.controller import (
    RunController,
    serialize_application,
    serialize_log_event,
    serialize_queue_record,
    serialize_run,
)
from autoapply.core.workers import build_workers
from autoapply.db.init import init_database
from autoapply.db.repositories import Repository
from autoapply.db.seed import seed_demo_user, seed_sandbox_jobs
from autoapply.db.session import SessionLocal
from autoapply.errors import RunControlError
from autoapply.logging_config import configure_logging
from autoapply.types import ApplyPolicy

app = typer.Typer(help="AutoApply CLI")
user_app = typer.Typer(help="Manage students and their resumes")
policy_app = typer.Typer(help="Inspect and change apply policies")
run_app = typer.Typer(help="Start, stop and inspect runs")

app.add_typer(user_app, name="user")
app.add_typer(policy_app, name="policy")
app.add_typer(run_app, name="run")

_INITIALIZED = False

RESUME_FIELDS = {
    "personal_info": "personal_info_json",
    "education": "education_json",
    "work_experience": "work_experience_json",
    "projects": "projects_json",
    "skills": "skills_json",
}


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _fail(message: str, **extra: Any) -> None:
    _echo({"ok": False, "error": message, **extra})
    raise typer.Exit(code=1)


def _resume_values(item: dict[str, Any], position: int) -> dict[str, Any]:
    values: dict[str, Any] = {
        "sort_order": int(item.get("sort_order", position)),
        "template_name": item.get("template_name", ""),
        "version": item.get("version", ""),
        "file_url": item.get("file_url", ""),
    }
    for key, column in RESUME_FIELDS.items():
        if key in item:
            values[column] = item[key]
    return values


@app.command("init")
def init_cmd() -> None:
    """Create the data directory and database tables."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@app.command("seed-demo")
def seed_demo_cmd(email: str = typer.Option("demo@autoapply.local", "--email")) -> None:
    """Insert a demo student and sandbox job postings."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        user_id = seed_demo_user(db, email=email)
        inserted = seed_sandbox_jobs(db)
    _echo({"user_id": user_id, "jobs_inserted": inserted})


@user_app.command("import")
def user_import(file: Path = typer.Option(..., "--file", exists=True, readable=True)) -> None:
    configure_logging()
    ensure_initialized()
    payload = json.loads(file.read_text(encoding="utf-8"))
    items = payload if isinstance(payload, list) else [payload]

    imported = []
    with SessionLocal() as db:
        repo = Repository(db)
        for item in items:
            if repo.get_user_by_email(item["email"]):
                raise typer.BadParameter(f"user {item['email']} already exists")
            policy = ApplyPolicy.model_validate(item.get("policy") or {})
            user = repo.create_user(
                name=item["name"],
                email=item["email"],
                apply_policy=policy,
                is_active=bool(item.get("is_active", True)),
            )
            for position, resume in enumerate(item.get("resumes", [])):
                repo.add_resume(user.id, _resume_values(resume, position))
            imported.append({"id": user.id, "email": user.email, "resumes": len(item.get("resumes", []))})
    _echo({"imported": imported})


@user_app.command("list")
def user_list() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        users = Repository(db).list_users()
        _echo([{"id": user.id, "name": user.name, "email": user.email, "is_active": user.is_active} for user in users])


@policy_app.command("show")
def policy_show(user_id: int = typer.Option(..., "--user-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            policy = Repository(db).get_apply_policy(user_id)
        except ValueError as exc:
            _fail(str(exc))
        _echo({"user_id": user_id, "policy": policy.model_dump()})


@policy_app.command("set")
def policy_set(
    user_id: int = typer.Option(..., "--user-id"),
    min_match_score: int | None = typer.Option(None, "--min-match-score"),
    max_applications_per_day: int | None = typer.Option(None, "--max-per-day"),
    cooldown_days: int | None = typer.Option(None, "--cooldown-days"),
    blocked_company: list[str] | None = typer.Option(None, "--blocked-company"),
    blocked_role: list[str] | None = typer.Option(None, "--blocked-role"),
    allowed_location: list[str] | None = typer.Option(None, "--allowed-location"),
    remote_only: bool | None = typer.Option(None, "--remote-only/--no-remote-only"),
    kill_switch: bool | None = typer.Option(None, "--kill-switch/--no-kill-switch"),
) -> None:
    """Update only the fields that are passed."""
    configure_logging()
    ensure_initialized()
    changes = {
        "min_match_score": min_match_score,
        "max_applications_per_day": max_applications_per_day,
        "company_cooldown_days": cooldown_days,
        "blocked_companies": blocked_company or None,
        "blocked_roles": blocked_role or None,
        "allowed_locations": allowed_location or None,
        "remote_only": remote_only,
        "kill_switch": kill_switch,
    }
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            current = repo.get_apply_policy(user_id)
        except ValueError as exc:
            _fail(str(exc))
        updated = ApplyPolicy.model_validate(
            {**current.model_dump(), **{key: value for key, value in changes.items() if value is not None}}
        )
        repo.set_apply_policy(user_id, updated)
        _echo({"user_id": user_id, "policy": updated.model_dump()})


@run_app.command("start")
def run_start(
    user_id: int = typer.Option(..., "--user-id"),
    wait: bool = typer.Option(False, "--wait", help="Process the run in this process until queues are idle."),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        controller = RunController(db)
        try:
            run = controller.start_run(user_id)
        except RunControlError as exc:
            _fail(str(exc), run_id=getattr(exc, "run_id", None))
        except ValueError as exc:
            _fail(str(exc))
        run_id = run.id

    if not wait:
        _echo({"run": serialize_run(run)})
        return

    stats = build_workers().drain()
    with SessionLocal() as db:
        repo = Repository(db)
        _echo(
            {
                "run": serialize_run(repo.get_run(run_id)),
                "workers": stats,
                "applications": [serialize_application(row) for row in repo.list_applications(user_id, run_id=run_id)],
            }
        )


@run_app.command("stop")
def run_stop(
    run_id: int = typer.Option(..., "--run-id"),
    user_id: int = typer.Option(..., "--user-id"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            run = RunController(db).stop_run(run_id, user_id)
        except RunControlError as exc:
            _fail(str(exc))
        _echo({"run": serialize_run(run)})


@run_app.command("status")
def run_status(user_id: int = typer.Option(..., "--user-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        run = RunController(db).get_run_status(user_id)
        _echo({"run": serialize_run(run) if run else None})


@app.command("applications")
def applications_cmd(
    user_id: int = typer.Option(..., "--user-id"),
    run_id: int | None = typer.Option(None, "--run-id"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = RunController(db).list_applications(user_id, run_id=run_id, limit=limit)
        _echo([serialize_application(row) for row in rows])


@app.command("skipped")
def skipped_cmd(
    user_id: int = typer.Option(..., "--user-id"),
    run_id: int | None = typer.Option(None, "--run-id"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = RunController(db).list_skipped(user_id, run_id=run_id, limit=limit)
        _echo([serialize_queue_record(row) for row in rows])


@app.command("logs")
def logs_cmd(
    user_id: int = typer.Option(..., "--user-id"),
    run_id: int | None = typer.Option(None, "--run-id"),
    job_id: int | None = typer.Option(None, "--job-id"),
    stage: str | None = typer.Option(None, "--stage"),
    level: str | None = typer.Option(None, "--level"),
    limit: int = typer.Option(100, "--limit"),
    skip: int = typer.Option(0, "--skip"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = RunController(db).get_logs(
            user_id=user_id,
            run_id=run_id,
            job_id=job_id,
            stage=stage.upper() if stage else None,
            level=level.upper() if level else None,
            limit=limit,
            offset=skip,
        )
        _echo([serialize_log_event(row) for row in rows])


@app.command("log-stats")
def log_stats_cmd(
    user_id: int = typer.Option(..., "--user-id"),
    run_id: int | None = typer.Option(None, "--run-id"),
    hours: int = typer.Option(24, "--hours"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo(RunController(db).get_log_stats(user_id=user_id, run_id=run_id, hours=hours))


@app.command("queues")
def queues_cmd() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo(RunController(db).queue_metrics())


@app.command("drain")
def drain_cmd(max_rounds: int = typer.Option(10, "--max-rounds")) -> None:
    """Process queued work until both queues are idle, then exit."""
    configure_logging()
    ensure_initialized()
    _echo(build_workers().drain(max_rounds=max_rounds))


@app.command("worker")
def worker_cmd() -> None:
    """Run the discovery and apply pools until interrupted."""
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    workers = build_workers(settings)
    for worker in (workers.discovery, workers.apply):
        worker.queue.recover_stale(settings.queue_stale_after_sec)

    stop_event = threading.Event()
    thread = threading.Thread(target=workers.run_forever, args=(stop_event,), name="autoapply-workers")
    thread.start()
    try:
        while thread.is_alive():
            thread.join(timeout=1.0)
    except KeyboardInterrupt:
        typer.echo("Stopping workers...", err=True)
        stop_event.set()
        thread.join()
    _echo({"discovery": workers.discovery.stats, "apply": workers.apply.stats})


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
