from __future__ import annotations

from collections.abc import Callable
from typing import Literal

from outreach.domain.models import JobStatus

OutputSignal = Literal["already_retrieved", "no_results", "manually_stopped", "invalid_parameters"]

# Exit code the runner reports when a search ends with "no results found".
NO_RESULTS_EXIT_CODE = 1
# SIGKILL / SIGTERM exit codes of an externally terminated job.
EXTERNAL_TERMINATION_EXIT_CODES = frozenset({137, 143})
EXTERNAL_TERMINATION_END_TYPES = frozenset({"killed", "aborted", "stopped", "manually_stopped"})

ALREADY_RETRIEVED_PHRASES = ("already retrieved", "already been retrieved", "already scraped")
NO_RESULTS_PHRASES = ("no results found", "no leads found")
MANUALLY_STOPPED_PHRASES = ("manually stopped", "stopped manually", "stopped by user", "agent was stopped")
INVALID_PARAMETER_PHRASES = (
    "phantom argument is invalid",
    "argument is invalid",
    "invalid argument",
    "search => must be string",
)


def _contains(text: str, phrases: tuple[str, ...]) -> bool:
    return any(phrase in text for phrase in phrases)


def _already_retrieved(status: JobStatus, text: str) -> bool:
    del status
    return _contains(text, ALREADY_RETRIEVED_PHRASES)


def _no_results(status: JobStatus, text: str) -> bool:
    return _contains(text, NO_RESULTS_PHRASES) and status.exit_code == NO_RESULTS_EXIT_CODE


def _manually_stopped(status: JobStatus, text: str) -> bool:
    if _contains(text, MANUALLY_STOPPED_PHRASES):
        return True
    if status.exit_code in EXTERNAL_TERMINATION_EXIT_CODES:
        return True
    return (status.end_type or "").lower() in EXTERNAL_TERMINATION_END_TYPES


def _invalid_parameters(status: JobStatus, text: str) -> bool:
    del status
    return _contains(text, INVALID_PARAMETER_PHRASES)


# Evaluated in order; the first match decides the outcome.
OUTPUT_SIGNAL_TABLE: tuple[tuple[OutputSignal, Callable[[JobStatus, str], bool]], ...] = (
    ("already_retrieved", _already_retrieved),
    ("no_results", _no_results),
    ("manually_stopped", _manually_stopped),
    ("invalid_parameters", _invalid_parameters),
)


def detect_output_signal(status: JobStatus) -> OutputSignal | None:
    text = status.text().lower()
    for signal, predicate in OUTPUT_SIGNAL_TABLE:
        if predicate(status, text):
            return signal
    return None
