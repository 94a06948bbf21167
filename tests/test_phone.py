import pytest

from stagekey.service.phone import is_e164, normalize_phone


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("4155551234", "+14155551234"),
        ("5551234567", "+15551234567"),
        ("(415) 555-1234", "+14155551234"),
        ("415.555.1234", "+14155551234"),
        ("+14155551234", "+14155551234"),
        ("+44 20 7946 0958", "+442079460958"),
        ("14155551234", "+14155551234"),
    ],
)
def test_normalizes_to_e164(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["notaphone", "", "   ", "12345", "+0123456789", "415555123x", "+1234567890123456", None],
)
def test_rejects_invalid(raw):
    assert normalize_phone(raw) is None


def test_default_country_code_applies_to_ten_digits():
    assert normalize_phone("2079460958", default_country_code="44") == "+442079460958"


def test_is_e164():
    assert is_e164("+14155551234")
    assert not is_e164("4155551234")
