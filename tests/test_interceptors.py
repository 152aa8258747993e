import pytest

from blog_pipeline.executor.interceptors import (
    REFUSAL_TEXT,
    GuardrailFilter,
    LoggingFilter,
    PIIFilter,
    build_interceptor_chain,
)


def test_pii_masks_contact_data():
    result = PIIFilter().filter(
        "Mail jane.doe@example.com or call 555-123-4567 from 192.168.1.20, "
        "card 4111 1111 1111 1111."
    )

    assert "[EMAIL]" in result.text
    assert "[PHONE]" in result.text
    assert "[IP]" in result.text
    assert "[CARD]" in result.text
    assert "jane.doe" not in result.text
    assert not result.blocked


def test_pii_leaves_plain_text_alone():
    text = "Python 3.12 shipped in 2023 with faster startup."
    result = PIIFilter().filter(text)
    assert result.text == text
    assert result.violations == []


def test_guardrail_masks_case_insensitively():
    result = GuardrailFilter().filter("Avoid Online Gambling sites.")
    assert result.text == "Avoid *************** sites."
    assert result.violations == ["online gambling"]
    assert not result.blocked


def test_guardrail_blocks_severe_keywords():
    result = GuardrailFilter().filter("A history of terrorism")
    assert result.blocked


def test_guardrail_custom_lists():
    guard = GuardrailFilter(forbidden=["legacy"], severe=[])
    result = guard.filter("legacy code")
    assert result.text == "****** code"
    assert not result.blocked


def test_logging_filter_is_passthrough():
    assert LoggingFilter().filter("unchanged").text == "unchanged"


def test_chain_applies_filters_in_order():
    chain = build_interceptor_chain(["pii", "guardrail", "logging"])
    result = chain.apply_input("Send sports betting tips to tips@example.com")

    assert result.text == "Send ************** tips to [EMAIL]"
    assert result.violations == ["pii:emailx1", "guardrail:sports betting"]


def test_chain_substitutes_refusal_when_blocked():
    chain = build_interceptor_chain(["guardrail"])
    result = chain.apply_output("Some pornography links")
    assert result.blocked
    assert result.text == REFUSAL_TEXT


def test_empty_chain():
    chain = build_interceptor_chain([])
    assert len(chain) == 0
    assert chain.apply_input("text").text == "text"


def test_unknown_interceptor_rejected():
    with pytest.raises(ValueError):
        build_interceptor_chain(["pii", "spellcheck"])
