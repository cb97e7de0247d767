"""Scan lifecycle states and the transition table.

The table is the sole authority for status changes; the state machine
consults it before every write.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ScanState(str, Enum):
    QUEUED = "queued"
    CONNECTING = "connecting"
    COLLECTING = "collecting"
    FILTERING = "filtering"
    PARSING = "parsing"
    DETECTING = "detecting"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED = "paused"


TRANSITIONS: dict[ScanState, frozenset[ScanState]] = {
    ScanState.QUEUED: frozenset({ScanState.CONNECTING}),
    ScanState.CONNECTING: frozenset({ScanState.COLLECTING, ScanState.FAILED}),
    ScanState.COLLECTING: frozenset({ScanState.FILTERING, ScanState.FAILED, ScanState.PAUSED}),
    ScanState.FILTERING: frozenset({ScanState.PARSING, ScanState.FAILED}),
    ScanState.PARSING: frozenset({ScanState.DETECTING, ScanState.FAILED, ScanState.PAUSED}),
    ScanState.DETECTING: frozenset({ScanState.REVIEWING, ScanState.FAILED}),
    ScanState.REVIEWING: frozenset({ScanState.COMPLETE, ScanState.FAILED}),
    ScanState.COMPLETE: frozenset(),
    ScanState.FAILED: frozenset({ScanState.QUEUED}),
    ScanState.PAUSED: frozenset({ScanState.COLLECTING, ScanState.PARSING}),
}

TERMINAL_STATES = frozenset({ScanState.COMPLETE})

# Sessions in these states are not running and hold no claim on the owner.
INACTIVE_STATES = frozenset({ScanState.COMPLETE, ScanState.FAILED})

# Forward order the orchestrator drives a session through.
PIPELINE_ORDER = (
    ScanState.QUEUED,
    ScanState.CONNECTING,
    ScanState.COLLECTING,
    ScanState.FILTERING,
    ScanState.PARSING,
    ScanState.DETECTING,
    ScanState.REVIEWING,
    ScanState.COMPLETE,
)


@dataclass(frozen=True)
class StateInfo:
    display_name: str
    description: str
    progress: int


STATE_INFO: dict[ScanState, StateInfo] = {
    ScanState.QUEUED: StateInfo("Queued", "Scan is waiting to start", 0),
    ScanState.CONNECTING: StateInfo("Connecting", "Verifying the evidence source", 10),
    ScanState.COLLECTING: StateInfo("Collecting", "Fetching messages from the evidence source", 30),
    ScanState.FILTERING: StateInfo("Filtering", "Selecting receipts to analyse", 50),
    ScanState.PARSING: StateInfo("Analyzing", "Extracting merchant and amount hints", 70),
    ScanState.DETECTING: StateInfo("Detecting Patterns", "Finding recurring subscriptions", 85),
    ScanState.REVIEWING: StateInfo("Ready for Review", "Candidates are ready for review", 95),
    ScanState.COMPLETE: StateInfo("Complete", "Scan finished successfully", 100),
    ScanState.FAILED: StateInfo("Failed", "Scan encountered an error", -1),
    ScanState.PAUSED: StateInfo("Paused", "Scan temporarily paused", -1),
}


def is_valid_transition(current: ScanState, target: ScanState) -> bool:
    return target in TRANSITIONS[current]


def state_info(state: ScanState) -> StateInfo:
    return STATE_INFO[state]


def progress(state: ScanState) -> int:
    """Return the progress percentage shown for a state (-1 when not running)."""

    return STATE_INFO[state].progress
