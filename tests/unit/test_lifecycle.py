"""Tests for the source status table and type-specific field rules."""

from __future__ import annotations

import pytest

from docfuse.errors import IllegalTransitionError, ValidationError
from docfuse.lifecycle import can_transition, check_transition, validate_type_fields, validate_url


@pytest.mark.parametrize("current,new", [
    ("pending", "processing"),
    ("processing", "completed"),
    ("processing", "failed"),
    ("completed", "pending"),
    ("failed", "pending"),
])
def test_legal_transitions(current, new):
    assert can_transition(current, new)
    check_transition(current, new)


@pytest.mark.parametrize("current,new", [
    ("pending", "completed"),
    ("pending", "failed"),
    ("completed", "processing"),
    ("failed", "processing"),
    ("completed", "failed"),
    ("processing", "pending"),
])
def test_illegal_transitions(current, new):
    assert not can_transition(current, new)
    with pytest.raises(IllegalTransitionError):
        check_transition(current, new)


def test_unknown_status_is_illegal():
    with pytest.raises(IllegalTransitionError, match="Unknown"):
        check_transition("pending", "archived")


# ------------------------------------------------------------------
# Type-specific fields
# ------------------------------------------------------------------


def test_file_fields_valid():
    validate_type_fields("file", file_name="a.pdf", file_size=10, mime_type="application/pdf")


def test_url_fields_valid():
    validate_type_fields("url", url="https://example.com/a")


def test_text_without_fields_valid():
    validate_type_fields("text")


@pytest.mark.parametrize("source_type,kwargs", [
    ("file", {}),
    ("file", {"file_name": "a.txt", "url": "https://example.com"}),
    ("file", {"file_name": "a.txt", "file_size": -1}),
    ("url", {}),
    ("url", {"url": "https://example.com", "mime_type": "text/html"}),
    ("text", {"url": "https://example.com"}),
    ("text", {"file_name": "a.txt"}),
    ("audio", {}),
])
def test_invalid_field_groups(source_type, kwargs):
    with pytest.raises(ValidationError):
        validate_type_fields(source_type, **kwargs)


@pytest.mark.parametrize("url", ["ftp://example.com", "javascript:alert(1)", "http://", "example.com"])
def test_validate_url_rejects(url):
    with pytest.raises(ValidationError):
        validate_url(url)
