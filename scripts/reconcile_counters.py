from memberhub.core.config import configure_logging
from memberhub.db.session import SessionLocal
from memberhub.services.entitlements import reconcile_purchase_counts


def main():
    configure_logging()
    db = SessionLocal()
    try:
        fixed = reconcile_purchase_counts(db)
        print("Counters fixed:", fixed)
    finally:
        db.close()


if __name__ == "__main__":
    main()
