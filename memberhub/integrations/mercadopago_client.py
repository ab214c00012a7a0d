import mercadopago

from memberhub.core.config import settings
from memberhub.core.errors import ExternalServiceError


def mp_sdk() -> mercadopago.SDK:
    if not settings.mp_access_token:
        raise ExternalServiceError("Mercado Pago access token is not set in configuration.")
    return mercadopago.SDK(settings.mp_access_token)


def is_test_token() -> bool:
    return (settings.mp_access_token or "").startswith("TEST-")
