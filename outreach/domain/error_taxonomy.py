from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import re
from typing import Literal

# Canonical vocabulary for persisted known errors.
KnownErrorCategory = Literal[
    "credits_exhausted",
    "argument_validation_error",
    "no_results_found",
    "authentication_error",
    "permission_error",
    "agent_not_found",
    "connectivity_error",
    "rate_limit_error",
    "manually_stopped",
    "malformed_data_error",
    "unknown_error",
]

KNOWN_ERROR_CATEGORIES: tuple[KnownErrorCategory, ...] = (
    "credits_exhausted",
    "argument_validation_error",
    "no_results_found",
    "authentication_error",
    "permission_error",
    "agent_not_found",
    "connectivity_error",
    "rate_limit_error",
    "manually_stopped",
    "malformed_data_error",
    "unknown_error",
)

# Categories where relaunching the same source without operator action will fail again.
OPERATOR_ACTION_CATEGORIES: frozenset[KnownErrorCategory] = frozenset(
    {
        "credits_exhausted",
        "argument_validation_error",
        "authentication_error",
        "permission_error",
        "agent_not_found",
    }
)

TextPredicate = Callable[[str], bool]


def _matches_any(*phrases: str, codes: tuple[int, ...] = ()) -> TextPredicate:
    code_patterns = tuple(re.compile(rf"\b{code}\b") for code in codes)

    def _predicate(text: str) -> bool:
        if any(phrase in text for phrase in phrases):
            return True
        return any(pattern.search(text) for pattern in code_patterns)

    return _predicate


# Evaluated top to bottom over lower-cased text; the first match wins.
# Credits must precede auth and generic not-found, because runner billing
# errors often also carry "unauthorized" or "not found" wording.
CLASSIFICATION_TABLE: tuple[tuple[KnownErrorCategory, TextPredicate], ...] = (
    (
        "credits_exhausted",
        _matches_any(
            "no monthly execution time remaining",
            "execution time exhausted",
            "credits exhausted",
            "insufficient credits",
            "payment required",
            codes=(402,),
        ),
    ),
    (
        "argument_validation_error",
        _matches_any(
            "phantom argument is invalid",
            "search => must be string",
            "argument is invalid",
            "invalid argument",
        ),
    ),
    ("no_results_found", _matches_any("no results found", "no leads found")),
    (
        "authentication_error",
        _matches_any("unauthorized", "invalid api key", "authentication failed", codes=(401,)),
    ),
    (
        "permission_error",
        _matches_any("forbidden", "access denied", "permission denied", codes=(403,)),
    ),
    (
        "manually_stopped",
        _matches_any("manually stopped", "stopped manually", "stopped by user", "was aborted"),
    ),
    (
        "malformed_data_error",
        _matches_any("malformed", "unexpected token", "invalid json", "could not parse"),
    ),
    ("agent_not_found", _matches_any("agent not found", "not found", codes=(404,))),
    (
        "connectivity_error",
        _matches_any("no response", "timeout", "timed out", "connection", "network error"),
    ),
    ("rate_limit_error", _matches_any("rate limit", "too many requests", codes=(429,))),
)

CATEGORY_MESSAGES: Mapping[KnownErrorCategory, str] = {
    "credits_exhausted": "Runner account has no execution time left",
    "argument_validation_error": "Runner rejected the job arguments",
    "no_results_found": "Job finished without results",
    "authentication_error": "Runner rejected the API credentials",
    "permission_error": "Runner denied access to the job definition",
    "agent_not_found": "Job or job definition was not found on the runner",
    "connectivity_error": "Runner could not be reached",
    "rate_limit_error": "Runner rate limit reached",
    "manually_stopped": "Job was stopped before completion",
    "malformed_data_error": "Job output could not be parsed",
    "unknown_error": "Unclassified runner failure",
}


@dataclass(frozen=True)
class Recommendation:
    title: str
    description: str
    actions: tuple[str, ...]


RECOMMENDATIONS: Mapping[KnownErrorCategory, Recommendation] = {
    "credits_exhausted": Recommendation(
        title="Execution credits exhausted",
        description="The runner plan has no execution time left for the current period.",
        actions=(
            "Check the plan usage on the runner account",
            "Upgrade the plan or wait for the monthly reset",
            "Relaunch the failed sources once credits are available",
        ),
    ),
    "argument_validation_error": Recommendation(
        title="Invalid job arguments",
        description="The runner refused the source template or pagination parameters.",
        actions=(
            "Verify the source template is a plain search URL",
            "Check start page and page count are positive integers",
        ),
    ),
    "no_results_found": Recommendation(
        title="Search returned no results",
        description="The job completed but the search produced no records.",
        actions=(
            "Broaden the search criteria of the source",
            "Confirm the start page is within the available result pages",
        ),
    ),
    "authentication_error": Recommendation(
        title="Runner authentication failed",
        description="The API key was rejected by the runner.",
        actions=("Rotate RUNNER_API_KEY", "Confirm the key belongs to the expected workspace"),
    ),
    "permission_error": Recommendation(
        title="Runner access denied",
        description="The API key cannot operate the configured job definition.",
        actions=("Check workspace membership of the job definition", "Verify RUNNER_AGENT_ID"),
    ),
    "agent_not_found": Recommendation(
        title="Job definition or job not found",
        description="The runner does not know the job or its definition, or the job output has expired.",
        actions=("Verify RUNNER_AGENT_ID", "Recover sooner after completion to avoid expiry"),
    ),
    "connectivity_error": Recommendation(
        title="Runner unreachable",
        description="Requests to the runner timed out or the connection failed.",
        actions=("Check outbound network access to the runner", "Retry the recovery later"),
    ),
    "rate_limit_error": Recommendation(
        title="Runner rate limit reached",
        description="Too many requests were sent to the runner in a short period.",
        actions=("Reduce the monitor poll frequency", "Retry after the rate limit window"),
    ),
    "manually_stopped": Recommendation(
        title="Job stopped",
        description="The job was stopped externally before it produced results.",
        actions=("Confirm the stop was intended", "Relaunch the source if results are still needed"),
    ),
    "malformed_data_error": Recommendation(
        title="Unreadable job output",
        description="The job finished but its output could not be parsed into records.",
        actions=("Inspect the raw job output on the runner", "Check the result file format"),
    ),
    "unknown_error": Recommendation(
        title="Unclassified failure",
        description="The failure did not match any known pattern.",
        actions=("Inspect the stored details and the runner job log",),
    ),
}


def is_known_category(category: str) -> bool:
    return category in KNOWN_ERROR_CATEGORIES


def match_category(text: str) -> KnownErrorCategory:
    lowered = text.lower()
    for category, predicate in CLASSIFICATION_TABLE:
        if predicate(lowered):
            return category
    return "unknown_error"


def requires_operator_action(category: KnownErrorCategory) -> bool:
    return category in OPERATOR_ACTION_CATEGORIES
