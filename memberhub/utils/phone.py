import re

from memberhub.core.errors import ValidationError

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str:
    """
    Correlation key for every phone-addressed record: digits only, last 10.
    " +91-8085816197" and "8085816197" both become "8085816197".
    """
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))[-10:]


def require_phone(raw: str | None, field: str = "phone") -> str:
    phone = normalize_phone(raw)
    if len(phone) != 10:
        raise ValidationError("Invalid phone number. Please provide a 10-digit phone number.", field=field)
    return phone


def mask_phone(phone: str | None) -> str:
    # for logs
    if not phone:
        return "N/A"
    return f"***{phone[-4:]}"
