"""Tests for manifest location rewriting."""

import pytest

from tuneshelf.core.exceptions import InvalidSubstitutionsError
from tuneshelf.worker.paths import apply_substitutions, normalize_location, validate_substitutions


def test_strips_file_scheme_and_decodes():
    assert normalize_location("file:///Music/My%20Song%20%231.mp3") == "/Music/My Song #1.mp3"


@pytest.mark.parametrize(
    "location,expected",
    [
        ("/music/file://odd/a.mp3", "/music/file://odd/a.mp3"),
        ("file:///music/file://odd/a.mp3", "/music/file://odd/a.mp3"),
        ("/music/a%20b.mp3", "/music/a b.mp3"),
    ],
)
def test_only_a_leading_scheme_is_stripped(location, expected):
    assert normalize_location(location) == expected


def test_substitutions_applied_in_order():
    subs = ["/Users/me/Music", "/srv/music", "/srv/music/iTunes", "/srv/itunes"]

    result = normalize_location("file:///Users/me/Music/iTunes/a.mp3", subs)

    # The second pair sees the output of the first
    assert result == "/srv/itunes/a.mp3"


def test_odd_length_substitutions_are_ignored():
    result = normalize_location("file:///Users/me/Music/a%20b.mp3", ["/Users/me/Music"])

    assert result == "/Users/me/Music/a b.mp3"


def test_substitution_runs_before_decoding():
    # Find strings match the encoded form found in the manifest
    result = normalize_location("file:///My%20Music/a.mp3", ["/My%20Music", "/music"])

    assert result == "/music/a.mp3"


def test_strict_validation():
    validate_substitutions([])
    validate_substitutions(["a", "b"])
    with pytest.raises(InvalidSubstitutionsError) as exc_info:
        validate_substitutions(["a", "b", "c"])

    assert exc_info.value.substitutions == ["a", "b", "c"]
    assert isinstance(exc_info.value, ValueError)


def test_apply_substitutions_replaces_every_occurrence():
    assert apply_substitutions("/a/x/a", ["/a", "/b"]) == "/b/x/b"
