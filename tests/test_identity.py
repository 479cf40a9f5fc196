"""Unit tests for the two-variant Identity type."""
from __future__ import annotations

import pytest

from graph_corpus.identity import ByHandle, ByNumericID, identity_params, normalize_handle, parse_identity


@pytest.mark.unit
class TestParseIdentity:
    def test_digits_become_numeric_id(self):
        assert parse_identity("12345") == ByNumericID(12345)

    def test_leading_at_is_stripped(self):
        assert parse_identity("@alice") == ByHandle("alice")

    def test_whitespace_is_ignored(self):
        assert parse_identity("  bob \n") == ByHandle("bob")

    def test_mixed_text_is_a_handle(self):
        assert parse_identity("user42") == ByHandle("user42")

    def test_empty_handle_rejected(self):
        with pytest.raises(ValueError):
            parse_identity("@")


@pytest.mark.unit
class TestIdentityParams:
    def test_handle_selects_screen_name(self):
        assert identity_params(ByHandle("alice")) == {"screen_name": "alice"}

    def test_numeric_selects_user_id(self):
        assert identity_params(ByNumericID(7)) == {"user_id": "7"}

    def test_other_types_rejected(self):
        with pytest.raises(TypeError):
            identity_params("alice")  # type: ignore[arg-type]


@pytest.mark.unit
def test_identities_are_hashable_values():
    assert {ByHandle("a"), ByHandle("a"), ByNumericID(1), ByNumericID(1)} == {ByHandle("a"), ByNumericID(1)}
    assert str(ByHandle("a")) == "@a"
    assert str(ByNumericID(1)) == "#1"


@pytest.mark.unit
def test_normalize_handle():
    assert normalize_handle(" @carol ") == "carol"
    assert normalize_handle("@Carol") == "carol"
