import pytest

from bulk_mail_service import recipients


def test_encode_joins_with_comma_space():
    assert recipients.encode(["a@example.com", "b@example.com"]) == "a@example.com, b@example.com"


def test_decode_tolerates_spacing_and_empty_items():
    assert recipients.decode("a@example.com,b@example.com ,, c@example.com") == [
        "a@example.com",
        "b@example.com",
        "c@example.com",
    ]
    assert recipients.decode("") == []
    assert recipients.decode(None) == []


def test_decode_reverses_encode():
    original = ["first@example.com", "second@example.com", "third@example.com"]
    assert recipients.decode(recipients.encode(original)) == original


def test_normalise_trims_and_dedupes_in_order():
    value = [" b@example.com", "a@example.com", "b@example.com", "", None]
    assert recipients.normalise(value) == ["b@example.com", "a@example.com"]


def test_normalise_accepts_comma_separated_string():
    assert recipients.normalise("a@example.com, b@example.com,") == ["a@example.com", "b@example.com"]


def test_normalise_rejects_embedded_delimiter():
    with pytest.raises(ValueError):
        recipients.normalise(["a@example.com,b@example.com"])


def test_normalise_rejects_other_types():
    with pytest.raises(ValueError):
        recipients.normalise(42)
    assert recipients.normalise(None) == []
