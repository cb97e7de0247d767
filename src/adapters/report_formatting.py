"""Shared report formatting helpers for the CLI.

Keeping formatting here keeps status, scan and detect output consistent.
"""

from __future__ import annotations

from typing import Iterable, Optional

from rich.markup import escape
from rich.table import Table

from core.detection import DetectionReport
from core.errors import ErrorMetadata
from core.models import DetectionCandidate, ScanSession, SessionError
from core.states import progress, state_info


def format_money(amount: Optional[float], currency: Optional[str]) -> str:
    if amount is None:
        return "-"
    return f"{amount:.2f} {(currency or 'USD').upper()}"


def format_confidence(confidence: float) -> str:
    return f"{round(confidence * 100)}%"


def format_progress(session: ScanSession) -> str:
    info = state_info(session.status)
    percent = progress(session.status)
    if percent < 0:
        return info.display_name
    return f"{info.display_name} ({percent}%)"


def format_error(error: Optional[SessionError | ErrorMetadata]) -> str:
    if error is None:
        return ""
    text = f"[{error.type.value}/{error.code}] {error.message}"
    retry_count = getattr(error, "retry_count", 0)
    if retry_count:
        text += f" (retries: {retry_count})"
    return text


def format_session_line(session: ScanSession) -> str:
    line = f"Session {session.id} ({session.run_type.value}) for {session.owner_id}: {format_progress(session)}"
    if session.error is not None:
        line += f" - {format_error(session.error)}"
    return line


def session_table(session: ScanSession) -> Table:
    table = Table(title=f"Scan {escape(session.id)}")
    table.add_column("Field")
    table.add_column("Value", overflow="fold")

    info = state_info(session.status)
    table.add_row("Owner", escape(session.owner_id))
    table.add_row("Run type", session.run_type.value)
    table.add_row("Status", format_progress(session))
    table.add_row("Stage", info.description)
    table.add_row("Started", session.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    if session.completed_at is not None:
        table.add_row("Completed", session.completed_at.strftime("%Y-%m-%d %H:%M:%S"))
    table.add_row("Messages", str(session.stats.total_messages_found))
    table.add_row("Receipts parsed", str(session.checkpoint.receipts_processed))
    table.add_row("Subscriptions", str(session.stats.subscriptions_detected))
    table.add_row("Retries", str(session.stats.retries))
    if session.stats.partial_failures:
        table.add_row("Skipped", str(session.stats.partial_failures))
    if session.error is not None:
        table.add_row("Error", escape(format_error(session.error)))
    return table


def candidates_table(candidates: Iterable[DetectionCandidate], title: str = "Detection candidates") -> Table:
    table = Table(title=title)
    table.add_column("Merchant")
    table.add_column("Amount", justify="right")
    table.add_column("Cadence")
    table.add_column("Next billing")
    table.add_column("Confidence", justify="right")
    table.add_column("Status")
    table.add_column("Reason", overflow="fold")

    for candidate in candidates:
        table.add_row(
            escape(candidate.proposed_name),
            format_money(candidate.amount, candidate.currency),
            candidate.cadence.value,
            candidate.next_billing.date().isoformat(),
            format_confidence(candidate.confidence),
            candidate.status.value,
            escape(candidate.detection_reason),
        )
    return table


def detection_table(report: DetectionReport) -> Table:
    """Every assessed merchant group, active or not."""

    active = {item.merchant_key: item for item in report.active}
    table = Table(title=f"Detection report ({report.generated_at.date().isoformat()})")
    table.add_column("Merchant")
    table.add_column("Verdict")
    table.add_column("Cadence")
    table.add_column("Receipts", justify="right")
    table.add_column("Last charge")
    table.add_column("Confidence", justify="right")
    table.add_column("Note", overflow="fold")

    for assessment in report.assessments:
        item = active.get(assessment.merchant_key)
        cadence = "-"
        if assessment.cadence is not None and assessment.cadence_source is not None:
            cadence = f"{assessment.cadence.value} ({assessment.cadence_source.value})"
        table.add_row(
            escape(item.name if item else assessment.merchant_key),
            assessment.classification.value,
            cadence,
            str(assessment.receipt_count),
            assessment.anchor_at.date().isoformat() if assessment.anchor_at else "-",
            format_confidence(item.confidence) if item else "-",
            escape(item.reason if item else assessment.note),
        )
    return table
