"""
Lazy-expiry sweep, meant for cron. Access checks never depend on it having
run; it only brings the persisted status in line for list views.
"""

from memberhub.core.clock import get_clock
from memberhub.core.config import configure_logging
from memberhub.db.session import SessionLocal
from memberhub.models.membership import UserMembership
from memberhub.models.subscription import UserServiceSubscription
from memberhub.services.entitlements import auto_expire_sweep, reconcile_purchase_counts


def main():
    configure_logging()
    now = get_clock().now()
    db = SessionLocal()
    try:
        expired = {
            model.__tablename__: auto_expire_sweep(db, model, now=now)
            for model in (UserMembership, UserServiceSubscription)
        }
        # expired subscriptions free service slots
        if expired[UserServiceSubscription.__tablename__]:
            reconcile_purchase_counts(db)
        print("Expired:", expired)
    finally:
        db.close()


if __name__ == "__main__":
    main()
