from fastapi import FastAPI

from memberhub.core.config import configure_logging, settings
from memberhub.core.errors import register_error_handlers

# Import routers
from memberhub.api.access import router as access_router
from memberhub.api.auth import router as auth_router
from memberhub.api.clubs import router as clubs_router
from memberhub.api.memberships import maintenance_router
from memberhub.api.memberships import public_router as memberships_public_router
from memberhub.api.memberships import router as memberships_router
from memberhub.api.payments import router as payments_router
from memberhub.api.premium import router as premium_router
from memberhub.api.requests import admin_router as requests_admin_router
from memberhub.api.requests import public_router as requests_public_router
from memberhub.api.subscriptions import router as subscriptions_router


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name)
    register_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "env": settings.app_env}

    # Admin authentication
    app.include_router(auth_router)
    # Entitlement lifecycle
    app.include_router(memberships_router)
    app.include_router(memberships_public_router)
    app.include_router(subscriptions_router)
    app.include_router(maintenance_router)
    # Approval workflows
    app.include_router(requests_public_router)
    app.include_router(requests_admin_router)
    app.include_router(clubs_router)
    # Mercado Pago webhook
    app.include_router(payments_router)
    # Feature gates
    app.include_router(access_router)
    app.include_router(premium_router)

    return app


app = create_app()
