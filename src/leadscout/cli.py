from __future__ import annotations

import argparse
import logging

from .config import ConfigError, load_runtime_config, load_seed_file
from .connector import Dispatcher, NullConnector
from .errors import LeadScoutError
from .lifecycle import list_runs
from .models import SOURCE_PLATFORMS
from .rotation import create_rotation_config, list_rotation_configs
from .scheduler import trigger_due_jobs, trigger_job
from .services.jobs_service import create_job, list_jobs, list_jobs_with_latest_run
from .services.source_configs_service import validate_source_config
from .storage import (
    get_schema_version,
    get_state_db_path,
    init_db,
    list_audit_events,
    reset_audit_actor,
    set_audit_actor,
)
from .stuck import StuckThresholds, find_stuck_runs, is_stuck
from .suggestions import list_suggestions
from .utils import configure_logging, log_event, utc_now


def _setup_logging() -> logging.Logger:
    return configure_logging("leadscout")


def _db_path(args: argparse.Namespace) -> str:
    return args.db or get_state_db_path()


def _dispatcher(args: argparse.Namespace, workers: int) -> Dispatcher:
    path = _db_path(args)
    return Dispatcher(NullConnector(), conn_factory=lambda: init_db(path), max_workers=workers)


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    load_runtime_config(conn)
    log_event(logger, logging.INFO, "db_migrated", path=_db_path(args), version=get_schema_version(conn))
    return 0


def _cmd_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    seed = load_seed_file(args.path)
    conn = init_db(_db_path(args))
    rotations = {config.name: config.id for config in list_rotation_configs(conn)}
    created_configs = 0
    for item in seed["rotation_configs"]:
        name = str(item.get("name") or "")
        if name in rotations:
            log_event(logger, logging.INFO, "rotation_import_skipped", name=name, reason="exists")
            continue
        config = create_rotation_config(conn, item)
        rotations[config.name] = config.id
        created_configs += 1

    existing_jobs = {job.name for job in list_jobs(conn)}
    created_jobs = 0
    for item in seed["jobs"]:
        payload = dict(item)
        rotation_name = payload.pop("rotation", None)
        if rotation_name:
            if rotation_name not in rotations:
                raise ConfigError(f"job {payload.get('name')} references unknown rotation {rotation_name}")
            payload["rotation_config_id"] = rotations[rotation_name]
        if payload.get("name") in existing_jobs:
            log_event(logger, logging.INFO, "job_import_skipped", name=payload.get("name"), reason="exists")
            continue
        create_job(conn, payload)
        created_jobs += 1
    log_event(
        logger,
        logging.INFO,
        "seed_imported",
        path=args.path,
        rotation_configs=created_configs,
        jobs=created_jobs,
    )
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    for job in list_jobs_with_latest_run(conn):
        latest = job.get("latest_run") or {}
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job["id"],
            name=job["name"],
            source_platform=job["source_platform"],
            schedule_type=job["schedule_type"],
            is_active=job["is_active"],
            last_run_at=job["last_run_at"],
            latest_status=latest.get("status"),
        )
    return 0


def _cmd_jobs_trigger(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    config = load_runtime_config(conn)
    dispatcher = _dispatcher(args, config.scheduler.dispatch_workers)
    try:
        run = trigger_job(conn, args.job_id, "manual", dispatcher=dispatcher, config=config)
    finally:
        dispatcher.shutdown(wait=True)
    log_event(logger, logging.INFO, "run", run_id=run.id, job_id=run.job_id, status=run.status)
    return 0


def _cmd_runs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    config = load_runtime_config(conn)
    thresholds = StuckThresholds.from_config(config)
    statuses = [item for item in (args.status or "").split(",") if item]
    runs, total = list_runs(
        conn,
        job_id=args.job_id,
        statuses=statuses,
        limit=args.limit or config.runs.list_limit,
    )
    now = utc_now()
    for run in runs:
        log_event(
            logger,
            logging.INFO,
            "run",
            run_id=run.id,
            job_id=run.job_id,
            status=run.status,
            triggered_by=run.triggered_by,
            created_at=run.created_at,
            imported=run.contacts_imported,
            stuck=is_stuck(run, now, thresholds),
            error=run.error_message,
        )
    log_event(logger, logging.INFO, "runs_listed", shown=len(runs), total=total)
    return 0


def _cmd_runs_stuck(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    thresholds = StuckThresholds.from_config(load_runtime_config(conn))
    stuck = find_stuck_runs(conn, thresholds)
    for run in stuck:
        log_event(
            logger,
            logging.WARNING,
            "run_stuck",
            run_id=run.id,
            job_id=run.job_id,
            status=run.status,
            created_at=run.created_at,
            started_at=run.started_at,
        )
    log_event(logger, logging.INFO, "runs_stuck", count=len(stuck))
    return 0


def _cmd_tick(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    config = load_runtime_config(conn)
    dispatcher = _dispatcher(args, config.scheduler.dispatch_workers)
    try:
        runs = trigger_due_jobs(conn, dispatcher=dispatcher, config=config)
    finally:
        dispatcher.shutdown(wait=True)
    for run in runs:
        log_event(logger, logging.INFO, "run", run_id=run.id, job_id=run.job_id, status=run.status)
    return 0


def _cmd_sources_validate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    platforms = [args.platform] if args.platform else list(SOURCE_PLATFORMS)
    invalid = 0
    for platform in platforms:
        result = validate_source_config(conn, platform, NullConnector())
        if not result.is_valid:
            invalid += 1
        log_event(
            logger,
            logging.INFO,
            "source",
            source_platform=platform,
            is_valid=result.is_valid,
            error=result.validation_error,
            fields=",".join(sorted(result.fields)),
        )
    return 1 if invalid else 0


def _cmd_suggestions(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    limit = args.limit or load_runtime_config(conn).suggestions.limit
    for item in list_suggestions(conn, limit=limit, source_platform=args.platform):
        log_event(
            logger,
            logging.INFO,
            "suggestion",
            type=item.type,
            value=item.value,
            source_platform=item.source_platform,
            runs=item.supporting_runs,
            imported=item.contacts_imported,
        )
    return 0


def _cmd_audit(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    events = list_audit_events(
        conn, entity_type=args.entity_type, entity_id=args.entity_id, limit=args.limit
    )
    for event in events:
        log_event(
            logger,
            logging.INFO,
            "audit",
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor=event.actor,
            created_at=event.created_at,
        )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_api_starting", host=args.host, port=args.port)
    uvicorn.run("leadscout.admin:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leadscout", description="LeadScout CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $LS_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    import_parser = subparsers.add_parser(
        "import", help="Create rotation configs and jobs from a YAML seed file"
    )
    import_parser.add_argument("path", help="Path to the seed file")
    import_parser.set_defaults(func=_cmd_import)

    jobs_parser = subparsers.add_parser("jobs", help="Scrape job commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_subparsers.add_parser("list", help="List jobs with their latest run")
    jobs_list.set_defaults(func=_cmd_jobs_list)
    jobs_trigger = jobs_subparsers.add_parser("trigger", help="Trigger a job now")
    jobs_trigger.add_argument("job_id")
    jobs_trigger.set_defaults(func=_cmd_jobs_trigger)

    runs_parser = subparsers.add_parser("runs", help="Run history commands")
    runs_subparsers = runs_parser.add_subparsers(dest="runs_command", required=True)
    runs_list = runs_subparsers.add_parser("list", help="List recent runs")
    runs_list.add_argument("--job-id", dest="job_id", default=None)
    runs_list.add_argument("--status", default=None, help="Comma-separated statuses")
    runs_list.add_argument("--limit", type=int, default=None)
    runs_list.set_defaults(func=_cmd_runs_list)
    runs_stuck = runs_subparsers.add_parser("stuck", help="List runs that look stuck")
    runs_stuck.set_defaults(func=_cmd_runs_stuck)

    tick_parser = subparsers.add_parser("tick", help="Trigger scheduled jobs that are due")
    tick_parser.set_defaults(func=_cmd_tick)

    sources_parser = subparsers.add_parser("sources", help="Source credential commands")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)
    sources_validate = sources_subparsers.add_parser("validate", help="Probe stored credentials")
    sources_validate.add_argument("platform", nargs="?", choices=SOURCE_PLATFORMS)
    sources_validate.set_defaults(func=_cmd_sources_validate)

    suggestions_parser = subparsers.add_parser(
        "suggestions", help="Show countries/industries worth adding to a rotation"
    )
    suggestions_parser.add_argument("--platform", choices=SOURCE_PLATFORMS, default=None)
    suggestions_parser.add_argument("--limit", type=int, default=None)
    suggestions_parser.set_defaults(func=_cmd_suggestions)

    audit_parser = subparsers.add_parser("audit", help="Show recent operator actions")
    audit_parser.add_argument("--entity-type", dest="entity_type", default=None)
    audit_parser.add_argument("--entity-id", dest="entity_id", default=None)
    audit_parser.add_argument("--limit", type=int, default=50)
    audit_parser.set_defaults(func=_cmd_audit)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8001)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    token = set_audit_actor("cli")
    try:
        return args.func(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    except LeadScoutError as exc:
        log_event(logger, logging.ERROR, exc.kind, error=exc.message)
        return 1
    finally:
        reset_audit_actor(token)


if __name__ == "__main__":
    raise SystemExit(main())
