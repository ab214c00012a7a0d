import pytest

from memberhub.core.errors import ValidationError
from memberhub.utils.phone import mask_phone, normalize_phone, require_phone


@pytest.mark.parametrize(
    "raw",
    [" +91-8085816197", "8085816197", "(808) 581-6197", "+91 80858 16197", "918085816197"],
)
def test_normalize_phone_keeps_last_ten_digits(raw):
    assert normalize_phone(raw) == "8085816197"


@pytest.mark.parametrize("raw", [None, "", "   ", "abc"])
def test_normalize_phone_empty_input(raw):
    assert normalize_phone(raw) == ""


def test_require_phone_rejects_short_numbers():
    with pytest.raises(ValidationError) as exc_info:
        require_phone("12345")

    assert exc_info.value.errors == [{"field": "phone", "message": exc_info.value.message}]


def test_require_phone_accepts_formatted_input():
    assert require_phone("+91-808-581-6197") == "8085816197"


def test_mask_phone():
    assert mask_phone("8085816197") == "***6197"
    assert mask_phone(None) == "N/A"
