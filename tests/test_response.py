"""Tests for authorization response parsing."""

from __future__ import annotations

import pytest

from desklogin.auth.response import AuthorizeResponse


class TestParse:
    """Accepted input shapes."""

    @pytest.mark.parametrize(
        "value",
        [
            "code=abc&state=s1",
            "?code=abc&state=s1",
            "  code=abc&state=s1\n",
            "http://localhost:18989/signin-oidc/?code=abc&state=s1",
            "myapp://signin?code=abc&state=s1",
            "myapp://signin#code=abc&state=s1",
        ],
    )
    def test_shapes_yield_same_parameters(self, value: str) -> None:
        """Query strings, form bodies and URIs parse alike."""
        response = AuthorizeResponse.parse(value)
        assert response.code == "abc"
        assert response.state == "s1"
        assert not response.is_error

    def test_query_and_fragment_are_combined(self) -> None:
        """Hybrid responses carry parameters in both parts."""
        response = AuthorizeResponse.parse("myapp://cb?code=abc#id_token=x.y.z&state=s1")
        assert response.code == "abc"
        assert response.params["id_token"] == "x.y.z"
        assert response.state == "s1"

    def test_first_value_wins(self) -> None:
        """Repeated keys keep their first value."""
        response = AuthorizeResponse.parse("state=first&state=second")
        assert response.state == "first"

    def test_values_are_decoded(self) -> None:
        """Percent and plus encoding is decoded."""
        response = AuthorizeResponse.parse("error=access_denied&error_description=User+said+no%21")
        assert response.is_error
        assert response.error == "access_denied"
        assert response.error_description == "User said no!"

    def test_blank_values(self) -> None:
        """Blank parameters count as missing."""
        response = AuthorizeResponse.parse("code=&state=&error=")
        assert response.code is None
        assert response.state is None
        assert not response.is_error
        assert not response.is_empty

    @pytest.mark.parametrize("value", ["", "?", "#", "myapp://signin"])
    def test_empty(self, value: str) -> None:
        """Inputs without parameters are empty."""
        assert AuthorizeResponse.parse(value).is_empty


class TestWithState:
    """State substitution for unsolicited responses."""

    def test_with_state_replaces_only_state(self) -> None:
        """The copy has a new state; the original is unchanged."""
        original = AuthorizeResponse.parse("code=abc&state=foreign")
        copy = original.with_state("local-1")

        assert copy.state == "local-1"
        assert copy.code == "abc"
        assert AuthorizeResponse.parse(copy.raw).state == "local-1"
        assert original.state == "foreign"
