"""Tests for router.py - model identifier to backend family.

These tests verify that:
1. Every documented pattern routes to its family
2. The first matching family wins (claude-3/opus is not lightweight-session)
3. Unknown and empty identifiers raise UnrecognizedModel naming the patterns
4. Capabilities: threaded families resume in place, session families fork
"""

from __future__ import annotations

import pytest

from orchestrate.runtime.errors import UnrecognizedModel
from orchestrate.runtime.router import (
    BackendFamily,
    get_capabilities,
    route_model,
    supported_patterns,
)


@pytest.mark.parametrize(
    "model,family",
    [
        ("gpt-5.3-codex", BackendFamily.THREADED_RESUMABLE),
        ("gpt-4o", BackendFamily.THREADED_RESUMABLE),
        ("o1-preview", BackendFamily.THREADED_RESUMABLE),
        ("o3-mini", BackendFamily.THREADED_RESUMABLE),
        ("o4-mini", BackendFamily.THREADED_RESUMABLE),
        ("codex-mini-latest", BackendFamily.THREADED_RESUMABLE),
        ("opus", BackendFamily.SESSION_CONVERSATIONAL),
        ("sonnet-4.5", BackendFamily.SESSION_CONVERSATIONAL),
        ("haiku", BackendFamily.SESSION_CONVERSATIONAL),
        ("claude-opus-4-6", BackendFamily.SESSION_CONVERSATIONAL),
        ("opencode-gpt-5", BackendFamily.LIGHTWEIGHT_SESSION),
        ("openai/gpt-4o-mini", BackendFamily.LIGHTWEIGHT_SESSION),
    ],
)
def test_route_model(model, family):
    assert route_model(model) == family


def test_first_match_wins():
    """A slash-qualified claude model still routes to the session family."""
    assert route_model("claude-3/opus") == BackendFamily.SESSION_CONVERSATIONAL


def test_every_pattern_routes_to_its_own_family():
    for family, patterns in supported_patterns().items():
        for pattern in patterns:
            sample = pattern.replace("*", "x")
            assert route_model(sample) == family, pattern


def test_route_is_pure():
    assert route_model("gpt-5") == route_model("gpt-5")


@pytest.mark.parametrize("model", ["llama3", "", "   ", "mistral-large"])
def test_unrecognized_model(model):
    with pytest.raises(UnrecognizedModel) as exc_info:
        route_model(model)

    message = str(exc_info.value)
    assert "Unknown model family" in message
    assert "gpt-*" in message
    assert "*/*" in message
    assert set(exc_info.value.supported) == {f.value for f in BackendFamily}
    assert exc_info.value.supported == {f.value: list(p) for f, p in supported_patterns().items()}


def test_capabilities():
    threaded = get_capabilities(BackendFamily.THREADED_RESUMABLE)
    assert threaded.resume_in_place and not threaded.fork

    for family in (BackendFamily.SESSION_CONVERSATIONAL, BackendFamily.LIGHTWEIGHT_SESSION):
        caps = get_capabilities(family)
        assert caps.fork and not caps.resume_in_place


def test_capabilities_accepts_family_value():
    assert get_capabilities("threaded-resumable").resume_in_place
