from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml

from .agent import AgentChannel
from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .browser import PlaywrightBrowser
from .config import AppConfig, ensure_local_paths, load_config
from .discovery import FormDiscovery
from .models import JobStatus
from .pipeline import JobPipeline
from .reporter import ResultRecorder, build_reporter
from .scheduler import Scheduler
from .service import QueueService
from .store import Store
from .tabs import TabManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="formpilot", description="Contact form outreach queue runner")
    parser.add_argument("--config", required=True, help="Path to formpilot YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the scheduler loop")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Fill free slots once, wait for those jobs, then exit",
    )

    enqueue = subparsers.add_parser("enqueue", help="Add a batch of jobs from a JSON/YAML file")
    enqueue.add_argument("file", help="List of job items, or a mapping with an `items` list")

    status = subparsers.add_parser("status", help="Show queue counts")
    status.add_argument("--json", action="store_true", help="Print counts and jobs as JSON")

    show = subparsers.add_parser("show", help="Show one job with its diagnostics and events")
    show.add_argument("--job-id", required=True)

    subparsers.add_parser("pause", help="Stop claiming new jobs")
    subparsers.add_parser("resume", help="Resume claiming jobs")

    clear = subparsers.add_parser("clear", help="Delete completed and failed jobs")
    clear.add_argument("--all", action="store_true", help="Delete every job, whatever its status")

    concurrency = subparsers.add_parser("concurrency", help="Set how many jobs may run at once (1-5)")
    concurrency.add_argument("value", type=int)

    resubmit = subparsers.add_parser("resubmit", help="Queue a new copy of a failed job")
    resubmit.add_argument("--job-id", required=True)
    return parser


@dataclass(slots=True)
class Runtime:
    store: Store
    browser: PlaywrightBrowser
    scheduler: Scheduler
    service: QueueService


def _open_store(config: AppConfig) -> Store:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    store.init_schema()
    return store


def _open_runtime(config: AppConfig) -> Runtime:
    store = _open_store(config)
    logger = setup_logger(config.paths.log)
    browser = PlaywrightBrowser(config.browser, config.agent, logger)
    tabs = TabManager(browser, config.tabs, logger)
    agent = AgentChannel(browser, config.agent, logger)
    discovery = FormDiscovery(
        tabs,
        agent,
        logger,
        fallback_paths=config.discovery.fallback_paths,
        same_origin_only=config.discovery.same_origin_only,
    )
    recorder = ResultRecorder(store, build_reporter(config.reporter, logger), logger)
    pipeline = JobPipeline(
        store,
        tabs,
        agent,
        discovery,
        recorder,
        config.pipeline,
        logger,
        lease_seconds=config.scheduler.lease_seconds,
    )
    scheduler = Scheduler(store, pipeline, config.scheduler, logger)
    service = QueueService(store, logger, scheduler, default_max_concurrent=config.scheduler.max_concurrent)
    return Runtime(store=store, browser=browser, scheduler=scheduler, service=service)


def _offline_service(config: AppConfig) -> QueueService:
    return QueueService(
        _open_store(config),
        logging.getLogger(LOGGER_NAME),
        default_max_concurrent=config.scheduler.max_concurrent,
    )


def cmd_run(config: AppConfig, *, once: bool = False) -> int:
    runtime = _open_runtime(config)
    try:
        runtime.browser.start()
        if once:
            runtime.scheduler.run_once()
            return 0
        runtime.scheduler.run_forever()
        return 0
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        runtime.scheduler.shutdown(wait_for_jobs=True)
        runtime.browser.stop()
        runtime.store.close()


def load_batch(path: Path) -> list[object]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("items")
    if not isinstance(raw, list):
        raise ValueError("batch file must hold a list of jobs or a mapping with an `items` list")
    return raw


def cmd_enqueue(config: AppConfig, batch_path: str) -> int:
    items = load_batch(Path(batch_path))
    service = _offline_service(config)
    try:
        accepted = service.submit_batch(items)
        print(f"accepted {accepted} of {len(items)} jobs")
        return 0 if accepted == len(items) else 1
    finally:
        service.store.close()


def cmd_status(config: AppConfig, *, as_json: bool = False) -> int:
    service = _offline_service(config)
    try:
        snapshot = service.status(include_jobs=as_json)
        if as_json:
            print(json.dumps(snapshot, indent=2, ensure_ascii=False))
            return 0
        counts = snapshot["counts"]
        print("Jobs:")
        for status in JobStatus:
            print(f"  {status.value:12} {counts.get(status.value, 0)}")
        print(f"  {'total':12} {counts.get('total', 0)}")
        print(f"\npaused={snapshot['paused']} max_concurrent={snapshot['max_concurrent']}")
        return 0
    finally:
        service.store.close()


def cmd_show(config: AppConfig, job_id: str) -> int:
    service = _offline_service(config)
    try:
        job = service.store.get_job(job_id)
        if job is None:
            print(f"job not found: {job_id}", file=sys.stderr)
            return 2
        output = job.to_dict()
        output["events"] = service.store.list_events(job_id)
        print(json.dumps(output, indent=2, ensure_ascii=False))
        return 0
    finally:
        service.store.close()


def cmd_pause(config: AppConfig, *, paused: bool) -> int:
    service = _offline_service(config)
    try:
        if paused:
            service.pause()
        else:
            service.resume()
        print("paused" if paused else "resumed")
        return 0
    finally:
        service.store.close()


def cmd_clear(config: AppConfig, *, everything: bool = False) -> int:
    service = _offline_service(config)
    try:
        removed = service.clear_all() if everything else service.clear_finished()
        print(f"removed {removed} jobs")
        return 0
    finally:
        service.store.close()


def cmd_concurrency(config: AppConfig, value: int) -> int:
    service = _offline_service(config)
    try:
        try:
            service.set_max_concurrent(value)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        print(f"max_concurrent={value}")
        return 0
    finally:
        service.store.close()


def cmd_resubmit(config: AppConfig, job_id: str) -> int:
    service = _offline_service(config)
    try:
        copy = service.resubmit(job_id)
        if copy is None:
            print(f"job must exist and be failed to resubmit: {job_id}", file=sys.stderr)
            return 2
        print(f"resubmitted {job_id} -> {copy.job_id}")
        return 0
    finally:
        service.store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, once=bool(args.once))
    if args.command == "enqueue":
        return cmd_enqueue(config, args.file)
    if args.command == "status":
        return cmd_status(config, as_json=bool(args.json))
    if args.command == "show":
        return cmd_show(config, args.job_id)
    if args.command in {"pause", "resume"}:
        return cmd_pause(config, paused=args.command == "pause")
    if args.command == "clear":
        return cmd_clear(config, everything=bool(args.all))
    if args.command == "concurrency":
        return cmd_concurrency(config, args.value)
    if args.command == "resubmit":
        return cmd_resubmit(config, args.job_id)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
