import pytest

from outreach.domain.error_taxonomy import (
    CLASSIFICATION_TABLE,
    KNOWN_ERROR_CATEGORIES,
    RECOMMENDATIONS,
    is_known_category,
    match_category,
    requires_operator_action,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("text", "category"),
    [
        ("No monthly execution time remaining", "credits_exhausted"),
        ("HTTP 402 Payment Required", "credits_exhausted"),
        ("Phantom argument is invalid: search => must be string", "argument_validation_error"),
        ("Search finished: No results found", "no_results_found"),
        ("401 Unauthorized", "authentication_error"),
        ("Access denied for this agent", "permission_error"),
        ("Agent was stopped by user", "manually_stopped"),
        ("Unexpected token < in JSON at position 0", "malformed_data_error"),
        ("Agent not found", "agent_not_found"),
        ("request timed out, no response", "connectivity_error"),
        ("429 Too Many Requests", "rate_limit_error"),
        ("something odd happened", "unknown_error"),
        ("", "unknown_error"),
    ],
)
def test_match_category_follows_classification_table(text: str, category: str) -> None:
    assert match_category(text) == category


@pytest.mark.unit
def test_credits_take_precedence_over_auth_and_not_found() -> None:
    assert match_category("unauthorized: execution time exhausted") == "credits_exhausted"
    assert match_category("agent not found, insufficient credits") == "credits_exhausted"


@pytest.mark.unit
def test_status_codes_match_on_word_boundaries_only() -> None:
    assert match_category("order 14012 processed") == "unknown_error"
    assert match_category("responded 404") == "agent_not_found"


@pytest.mark.unit
def test_table_and_vocabulary_are_consistent() -> None:
    table_categories = [category for category, _ in CLASSIFICATION_TABLE]
    assert table_categories[0] == "credits_exhausted"
    assert set(table_categories) <= set(KNOWN_ERROR_CATEGORIES)
    assert set(RECOMMENDATIONS) == set(KNOWN_ERROR_CATEGORIES)
    assert is_known_category("rate_limit_error") is True
    assert is_known_category("nope") is False


@pytest.mark.unit
def test_operator_action_categories() -> None:
    assert requires_operator_action("credits_exhausted") is True
    assert requires_operator_action("connectivity_error") is False
