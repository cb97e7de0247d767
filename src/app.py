"""Application entry point for the subscope scanner."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv
from rich.console import Console

import settings
from adapters.json_evidence import HintPassthroughParser, JsonEvidenceCollector
from adapters.report_formatting import (
    candidates_table,
    detection_table,
    format_error,
    format_session_line,
    session_table,
)
from adapters.sqlite_storage import SQLiteStorage
from adapters.telemetry import LoggingTelemetrySink
from core.circuit_breaker import CircuitBreakerRegistry
from core.detection import DetectionEngine
from core.errors import ScanError
from core.locks import LockManager
from core.materializer import CandidateMaterializer
from core.models import CandidateStatus
from core.orchestrator import Outcome, RunOutcome, ScanOrchestrator
from core.signals import KeywordEvidenceClassifier
from core.state_machine import ScanStateMachine
from core.states import ScanState

NAME = "SUBSCOPE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(redact_cfg: dict) -> list[str]:
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(verbose: bool = False) -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = "DEBUG" if verbose else str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(settings.REDACT or {})
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/subscope.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _build_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH, busy_timeout_ms=settings.DB_BUSY_TIMEOUT_MS)
    storage.init_db()
    return storage


def _build_detection(storage: SQLiteStorage) -> DetectionEngine:
    classifier = KeywordEvidenceClassifier(settings.SIGNALS_CONFIG)
    return DetectionEngine(storage, storage, classifier, settings.DETECTION_CONFIG)


def _build_orchestrator(storage: SQLiteStorage, evidence_path: str) -> ScanOrchestrator:
    return ScanOrchestrator(
        sessions=ScanStateMachine(storage),
        locks=LockManager(storage),
        evidence=storage,
        detection=_build_detection(storage),
        materializer=CandidateMaterializer(storage, storage, storage, settings.DETECTION_CONFIG),
        collector=JsonEvidenceCollector(evidence_path, page_size=settings.EVIDENCE_PAGE_SIZE),
        parser=HintPassthroughParser(),
        telemetry=LoggingTelemetrySink(),
        breakers=CircuitBreakerRegistry(
            threshold=settings.BREAKER_CONFIG.threshold,
            cooldown_seconds=settings.BREAKER_CONFIG.cooldown_seconds,
        ),
        lock_config=settings.LOCK_CONFIG,
        retry_config=settings.RETRY_CONFIG,
        pipeline_config=settings.PIPELINE_CONFIG,
    )


def _report_outcome(console: Console, storage: SQLiteStorage, outcome: RunOutcome) -> None:
    session = ScanStateMachine(storage).get_session(outcome.session_id)
    console.print(format_session_line(session), markup=False)
    if outcome.outcome == Outcome.LOCKED:
        console.print("Another scan for this owner is running; try again later.", style="yellow")
    elif outcome.outcome == Outcome.PAUSED:
        console.print(
            f"Scan paused. Continue with: subscope resume --session {session.id}", style="yellow", markup=False
        )
    elif outcome.outcome in {Outcome.FAILED, Outcome.CANCELLED}:
        console.print(format_error(outcome.error), style="red", markup=False)
    elif outcome.outcome == Outcome.COMPLETED:
        pending = storage.list_candidates(session.owner_id, [CandidateStatus.PENDING])
        console.print(candidates_table(pending))


def _scan(args: argparse.Namespace) -> None:
    _print_banner()
    console = Console()
    storage = _build_storage()
    orchestrator = _build_orchestrator(storage, args.evidence)

    start = orchestrator.start_scan(args.owner, force_full=args.full)
    if start.created:
        LOGGER.info("Started %s scan %s", start.session.run_type.value, start.session.id)
    else:
        LOGGER.info("Continuing scan %s (%s)", start.session.id, start.session.status.value)

    if not start.created and start.session.status == ScanState.PAUSED:
        outcome = asyncio.run(orchestrator.resume(start.session.id))
    else:
        outcome = asyncio.run(orchestrator.run(start.session.id))
    _report_outcome(console, storage, outcome)


def _resume(args: argparse.Namespace) -> None:
    _print_banner()
    console = Console()
    storage = _build_storage()
    orchestrator = _build_orchestrator(storage, args.evidence)
    outcome = asyncio.run(orchestrator.resume(args.session))
    _report_outcome(console, storage, outcome)


def _cancel(args: argparse.Namespace) -> None:
    storage = _build_storage()
    machine = ScanStateMachine(storage)
    if machine.cancel(args.session, args.reason):
        print(f"Session {args.session} cancelled.")
    else:
        print(f"Session {args.session} already finished; nothing to cancel.")


def _status(args: argparse.Namespace) -> None:
    console = Console()
    storage = _build_storage()
    session = ScanStateMachine(storage).latest_session(args.owner)
    if session is None:
        console.print(f"No scans recorded for {args.owner}.", markup=False)
    else:
        console.print(session_table(session))
    candidates = storage.list_candidates(args.owner, [CandidateStatus.PENDING, CandidateStatus.ACCEPTED])
    if candidates:
        console.print(candidates_table(candidates))


def _detect(args: argparse.Namespace) -> None:
    console = Console()
    storage = _build_storage()
    report = _build_detection(storage).detect_active_subscriptions(args.owner)
    console.print(detection_table(report))


def _cleanup(args: argparse.Namespace) -> None:
    storage = _build_storage()
    locks_removed = LockManager(storage).cleanup_expired()
    retention = args.days if args.days is not None else settings.PIPELINE_CONFIG.session_retention_days
    sessions_removed = ScanStateMachine(storage).cleanup_old_sessions(retention)
    print(f"Removed {locks_removed} expired locks and {sessions_removed} finished sessions.")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="subscope")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Start or continue a scan for an owner")
    scan.add_argument("--owner", required=True)
    scan.add_argument("--evidence", required=True, help="JSON export of receipt messages")
    scan.add_argument("--full", action="store_true", help="Force a full scan")
    scan.set_defaults(handler=_scan)

    resume = subparsers.add_parser("resume", help="Resume a paused or failed scan")
    resume.add_argument("--session", required=True)
    resume.add_argument("--evidence", required=True)
    resume.set_defaults(handler=_resume)

    cancel = subparsers.add_parser("cancel", help="Cancel a running scan")
    cancel.add_argument("--session", required=True)
    cancel.add_argument("--reason", default="Cancelled by user")
    cancel.set_defaults(handler=_cancel)

    status = subparsers.add_parser("status", help="Show the latest scan and its candidates")
    status.add_argument("--owner", required=True)
    status.set_defaults(handler=_status)

    detect = subparsers.add_parser("detect", help="Dry-run detection without writing candidates")
    detect.add_argument("--owner", required=True)
    detect.set_defaults(handler=_detect)

    cleanup = subparsers.add_parser("cleanup", help="Remove expired locks and old finished sessions")
    cleanup.add_argument("--days", type=int, default=None, help="Session retention in days")
    cleanup.set_defaults(handler=_cleanup)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        args.handler(args)
    except ScanError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
