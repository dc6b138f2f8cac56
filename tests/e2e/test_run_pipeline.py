from __future__ import annotations

from sqlalchemy import func, select

from autoapply.config import get_settings
from autoapply.core.controller import RunController
from autoapply.core.workers import build_workers
from autoapply.db.models import Application, JobMatch, LogEvent, QueueRecord, Run, WorkItem
from autoapply.db.repositories import Repository
from autoapply.db.seed import seed_demo_user, seed_sandbox_jobs
from autoapply.db.session import SessionLocal
from autoapply.errors import AlreadyRunning
from autoapply.types import ApplyPolicy


def _start(user_id: int, generation, submission) -> int:
    with SessionLocal() as db:
        return RunController(db, generation=generation, submission=submission).start_run(user_id).id


def _drain(generation, submission, sleeps: list[float]) -> dict:
    workers = build_workers(generation=generation, submission=submission, sleep=sleeps.append, rate_limited=False)
    return workers.drain()


def _count(db, model, *conditions) -> int:
    return int(db.scalar(select(func.count(model.id)).where(*conditions)) or 0)


def test_full_run_submits_and_tracks(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user(policy=ApplyPolicy(min_match_score=40, blocked_companies=["Acme"]))
    job_id = make_job()
    blocked_id = make_job(company="Acme")

    run_id = _start(user_id, fake_generation, fake_submission)
    stats = _drain(fake_generation, fake_submission, sleeps)
    assert stats["discovery"]["completed"] == 1
    assert stats["apply"]["completed"] == 1

    with SessionLocal() as db:
        run = db.get(Run, run_id)
        assert run.status == "COMPLETED"
        assert run.applied_count_today == 1
        assert run.last_checkpoint == "APPLY_COMPLETED"

        application = db.scalar(select(Application).where(Application.run_id == run_id))
        assert application.job_id == job_id
        assert application.status == "SUBMITTED"
        assert application.receipt == "RCPT-1"
        assert [entry["stage"] for entry in application.timeline_json] == ["PERSONALIZED", "SUBMITTED", "APPLIED"]

        queued = db.scalar(select(QueueRecord).where(QueueRecord.job_id == job_id))
        assert queued.status == "SENT"
        assert queued.sent_at is not None

        skipped = db.scalar(select(QueueRecord).where(QueueRecord.job_id == blocked_id))
        assert skipped.status == "SKIPPED"
        assert skipped.skip_reason == "POLICY_BLOCK"
        assert skipped.skip_detail == "BLOCKED_COMPANY (Acme)"
        assert skipped.skip_reasoning.startswith("Skipped because")

        assert _count(db, JobMatch, JobMatch.run_id == run_id) == 2
        stages = set(db.scalars(select(LogEvent.stage).where(LogEvent.run_id == run_id)).all())
        assert {"SYSTEM", "SEARCH", "POLICY", "VALIDATION", "APPLY"} <= stages

    assert len(fake_submission.calls) == 1
    apply_url, payload = fake_submission.calls[0]
    assert apply_url == "https://jobs.example.com/apply/1"
    assert payload["resume_url"] == "https://files.example.com/resume-backend.pdf"
    assert sleeps == []


def test_redrain_does_not_resubmit(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user()
    make_job()
    _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    stats = _drain(fake_generation, fake_submission, sleeps)
    assert stats["discovery"]["claimed"] == 0
    assert stats["apply"]["claimed"] == 0
    assert len(fake_submission.calls) == 1


def test_second_run_skips_already_applied_jobs(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user()
    make_job()
    first = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    second = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        assert db.get(Run, second).applied_count_today == 1
        assert _count(db, Application, Application.user_id == user_id) == 1
        assert _count(db, JobMatch, JobMatch.run_id == second) == 0
        assert db.get(Run, first).status == "COMPLETED"
    assert len(fake_submission.calls) == 1


def test_daily_cap_blocks_extra_jobs(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user(policy=ApplyPolicy(min_match_score=40, max_applications_per_day=1))
    make_job()
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        skipped = Repository(db).list_skipped(user_id, run_id=run_id)
        assert len(skipped) == 1
        assert skipped[0].skip_reason == "POLICY_BLOCK"
        assert skipped[0].skip_detail.startswith("MAX_APPLICATIONS_REACHED")
        assert _count(db, Application, Application.run_id == run_id) == 1


def test_stop_before_discovery_leaves_no_work(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user()
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    with SessionLocal() as db:
        RunController(db, generation=fake_generation, submission=fake_submission).stop_run(run_id, user_id)

    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        run = db.get(Run, run_id)
        assert run.status == "STOPPED"
        assert run.kill_switch is True
        assert _count(db, JobMatch, JobMatch.run_id == run_id) == 0
        assert _count(db, QueueRecord, QueueRecord.run_id == run_id) == 0
    assert fake_generation.calls == []
    assert fake_submission.calls == []


def test_policy_kill_switch_stops_run(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user(policy=ApplyPolicy(min_match_score=40, kill_switch=True))
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        run = db.get(Run, run_id)
        assert run.status == "STOPPED"
        assert run.last_checkpoint == "FINALIZED"
        assert _count(db, JobMatch, JobMatch.run_id == run_id) == 0
        warnings = db.scalars(
            select(LogEvent.message).where(LogEvent.run_id == run_id, LogEvent.level == "WARN")
        ).all()
        assert "Kill switch active; run stopped before discovery" in warnings
    assert fake_submission.calls == []


def test_kill_switch_between_discovery_and_apply(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user()
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    workers = build_workers(
        generation=fake_generation, submission=fake_submission, sleep=sleeps.append, rate_limited=False
    )
    workers.discovery.drain()

    with SessionLocal() as db:
        Repository(db).update_run(run_id, kill_switch=True)
    workers.apply.drain()

    with SessionLocal() as db:
        assert _count(db, Application, Application.run_id == run_id) == 0
        assert db.get(Run, run_id).last_checkpoint == "APPLY_STOPPED"
        record = db.scalar(select(QueueRecord).where(QueueRecord.run_id == run_id))
        assert record.status == "SENT"
    assert "evidence_mapping" not in fake_generation.kinds()
    assert fake_submission.calls == []


def test_grounding_rejection_blocks_submission(make_user, make_job, make_generation, fake_submission, sleeps) -> None:
    generation = make_generation(grounded=False, confidence_score=30.0, risks=["Invented Kubernetes experience"])
    user_id = make_user()
    job_id = make_job()
    run_id = _start(user_id, generation, fake_submission)
    _drain(generation, fake_submission, sleeps)

    with SessionLocal() as db:
        assert _count(db, Application, Application.run_id == run_id) == 0
        assert db.get(Run, run_id).last_checkpoint == "APPLY_STOPPED"
        event = db.scalar(
            select(LogEvent).where(
                LogEvent.run_id == run_id,
                LogEvent.stage == "VALIDATION",
                LogEvent.job_id == job_id,
                LogEvent.level == "WARN",
            )
        )
        assert event.message.startswith("Validation failed")
        assert event.metadata_json["validation_passed"] is False
    assert fake_submission.calls == []


def test_submission_failures_mark_application_failed(make_user, make_job, fake_generation, make_submission, sleeps) -> None:
    submission = make_submission(failures=3)
    user_id = make_user()
    make_job()
    run_id = _start(user_id, fake_generation, submission)
    _drain(fake_generation, submission, sleeps)

    with SessionLocal() as db:
        application = db.scalar(select(Application).where(Application.run_id == run_id))
        assert application.status == "FAILED"
        assert application.attempts == 3
        assert application.timeline_json[-1]["stage"] == "FAILED"
        run = db.get(Run, run_id)
        assert run.applied_count_today == 0
        assert run.skipped_count_today == 1
        assert run.last_checkpoint == "APPLY_FAILED"
        assert _count(db, WorkItem, WorkItem.queue_name == "apply", WorkItem.status == "DONE") == 1
    assert sleeps == [1.0, 2.0]


def test_already_running_is_rejected(make_user, fake_generation, fake_submission) -> None:
    user_id = make_user()
    run_id = _start(user_id, fake_generation, fake_submission)
    with SessionLocal() as db:
        controller = RunController(db, generation=fake_generation, submission=fake_submission)
        try:
            controller.start_run(user_id)
        except AlreadyRunning as exc:
            assert exc.run_id == run_id
        else:
            raise AssertionError("expected AlreadyRunning")


def test_sandbox_demo_run(fake_generation, fake_submission, sleeps) -> None:
    with SessionLocal() as db:
        user_id = seed_demo_user(db)
        assert seed_sandbox_jobs(db) == 4
        assert seed_sandbox_jobs(db) == 0
        assert seed_demo_user(db) == user_id

    run_id = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        applications = Repository(db).list_applications(user_id, run_id=run_id)
        assert len(applications) == 1
        assert applications[0].company == "Lumen Labs"
        assert applications[0].receipt.startswith("SANDBOX-")
        assert len(Repository(db).list_skipped(user_id, run_id=run_id)) == 3
    assert fake_submission.calls == []


def test_missing_resume_fails_the_run(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    user_id = make_user(resumes=[])
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        run = db.get(Run, run_id)
        assert run.status == "FAILED"
        assert run.error == f"LOAD_ARTIFACTS: user {user_id} has no resume on file"
        assert _count(db, JobMatch, JobMatch.run_id == run_id) == 0
        assert _count(db, QueueRecord, QueueRecord.run_id == run_id) == 0
    assert fake_submission.calls == []


def test_empty_profile_fails_the_run(make_user, make_job, fake_generation, fake_submission, sleeps) -> None:
    empty_resume = {"template_name": "blank", "file_url": "https://files.example.com/blank.pdf"}
    user_id = make_user(resumes=[empty_resume])
    make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    _drain(fake_generation, fake_submission, sleeps)

    with SessionLocal() as db:
        run = db.get(Run, run_id)
        assert run.status == "FAILED"
        assert "has no skills, education, or experience" in run.error
        assert run.last_checkpoint == "FINALIZED"


def test_generation_outage_during_personalize_fails_apply(
    make_user, make_job, make_generation, fake_submission, sleeps
) -> None:
    generation = make_generation(fail_kinds=("evidence_mapping",))
    user_id = make_user()
    make_job()
    run_id = _start(user_id, generation, fake_submission)
    _drain(generation, fake_submission, sleeps)

    with SessionLocal() as db:
        assert db.get(Run, run_id).last_checkpoint == "APPLY_FAILED"
        record = db.scalar(select(QueueRecord).where(QueueRecord.run_id == run_id))
        assert record.status == "SENT"
        assert _count(db, Application, Application.run_id == run_id) == 0
        errors = db.scalars(
            select(LogEvent.message).where(LogEvent.run_id == run_id, LogEvent.level == "ERROR")
        ).all()
        assert any(message.startswith("PERSONALIZE:") for message in errors)
    assert "grounding_check" not in generation.kinds()
    assert fake_submission.calls == []


def test_generation_outage_during_grounding_fails_apply(
    make_user, make_job, make_generation, fake_submission, sleeps
) -> None:
    generation = make_generation(fail_kinds=("grounding_check",))
    user_id = make_user()
    make_job()
    run_id = _start(user_id, generation, fake_submission)
    _drain(generation, fake_submission, sleeps)

    with SessionLocal() as db:
        assert db.get(Run, run_id).last_checkpoint == "APPLY_FAILED"
        record = db.scalar(select(QueueRecord).where(QueueRecord.run_id == run_id))
        assert record.status == "SENT"
        assert _count(db, Application, Application.run_id == run_id) == 0
    assert "grounding_check" in generation.kinds()
    assert fake_submission.calls == []


def test_dead_lettered_apply_item_marks_record_sent(
    monkeypatch, make_user, make_job, fake_generation, fake_submission, sleeps
) -> None:
    def crash(self, work):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(RunController, "run_apply", crash)
    settings = get_settings().model_copy(update={"apply_queue_max_attempts": 1})
    user_id = make_user()
    job_id = make_job()
    run_id = _start(user_id, fake_generation, fake_submission)
    stats = build_workers(
        settings,
        generation=fake_generation,
        submission=fake_submission,
        sleep=sleeps.append,
        rate_limited=False,
    ).drain()

    assert stats["apply"]["dead_lettered"] == 1
    with SessionLocal() as db:
        record = db.scalar(select(QueueRecord).where(QueueRecord.run_id == run_id))
        assert record.status == "SENT"
        item = db.scalar(select(WorkItem).where(WorkItem.queue_name == "apply"))
        assert item.status == "DEAD"
        assert item.last_error == "worker crashed"
        event = db.scalar(
            select(LogEvent).where(LogEvent.run_id == run_id, LogEvent.job_id == job_id, LogEvent.level == "ERROR")
        )
        assert event.message == "Apply dead-lettered after 1 attempts: worker crashed"
    assert fake_submission.calls == []


def test_concurrent_start_loses_to_existing_running_run(
    monkeypatch, make_user, fake_generation, fake_submission
) -> None:
    user_id = make_user()
    first = _start(user_id, fake_generation, fake_submission)

    with SessionLocal() as db:
        controller = RunController(db, generation=fake_generation, submission=fake_submission)
        real_lookup = controller.repo.get_active_run
        lookups: list[int] = []

        def stale_first_lookup(lookup_user_id: int):
            # the first check runs before the other start commits
            lookups.append(lookup_user_id)
            return None if len(lookups) == 1 else real_lookup(lookup_user_id)

        monkeypatch.setattr(controller.repo, "get_active_run", stale_first_lookup)
        try:
            controller.start_run(user_id)
        except AlreadyRunning as exc:
            assert exc.run_id == first
        else:
            raise AssertionError("expected AlreadyRunning")
        assert len(lookups) == 2

    with SessionLocal() as db:
        running = db.scalars(select(Run.id).where(Run.user_id == user_id, Run.status == "RUNNING")).all()
        assert running == [first]
