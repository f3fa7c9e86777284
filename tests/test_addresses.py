"""Tests for sender address parsing."""

import pytest

from mailflow.engine.addresses import (
    extract_domain,
    extract_email_address,
    extract_name_from_email,
    is_assistant_email,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Jane Doe <Jane@Example.com>", "jane@example.com"),
        ('"Doe, Jane" < jane@example.com >', "jane@example.com"),
        ("jane@example.com", "jane@example.com"),
        ("mailto jane@example.com, bob@example.com", "jane@example.com"),
        ("Nobody", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_extract_email_address(value, expected):
    assert extract_email_address(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Jane Doe <jane@example.com>", "Jane Doe"),
        ('"Jane Doe" <jane@example.com>', "Jane Doe"),
        ("<jane@example.com>", "jane@example.com"),
        ("jane@example.com", "jane@example.com"),
        (None, ""),
    ],
)
def test_extract_name_from_email(value, expected):
    assert extract_name_from_email(value) == expected


def test_extract_domain():
    assert extract_domain("jane@Mail.Example.com") == "mail.example.com"
    assert extract_domain("not-an-address") == ""


class TestAssistantEmail:
    def test_plus_address_of_user(self):
        assert is_assistant_email("jane@example.com", "Assistant <JANE+assistant@example.com>")

    def test_user_plus_tag_is_ignored(self):
        assert is_assistant_email("jane+work@example.com", "jane+assistant@example.com")

    def test_configured_address(self):
        assert is_assistant_email("jane@example.com", "bot@example.org", "Bot <bot@example.org>")

    def test_other_senders(self):
        assert not is_assistant_email("jane@example.com", "jane@example.com")
        assert not is_assistant_email("jane@example.com", "bob+assistant@example.com")
        assert not is_assistant_email("jane@example.com", "")
