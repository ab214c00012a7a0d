from sqlalchemy.orm import Session

from memberhub.db.session import SessionLocal, init_db
from memberhub.models.plan import MembershipPlan, Service

PLANS = [
    {
        "name": "Monthly", "description": "30 days of member access",
        "price": 499.00, "duration_in_days": 30, "is_lifetime": False,
        "perks": ["Members-only events", "Community access"],
    },
    {
        "name": "Annual", "description": "365 days of member access",
        "price": 4999.00, "duration_in_days": 365, "is_lifetime": False,
        "perks": ["Members-only events", "Community access", "Priority booking"],
    },
    {
        "name": "Lifetime", "description": "Member access forever",
        "price": 19999.00, "duration_in_days": 36500, "is_lifetime": True,
        "perks": ["Everything in Annual"], "max_purchases": 100,
    },
]

SERVICES = [
    {"name": "1:1 Coaching", "description": "Four coaching sessions", "price": 2999.00, "duration_in_days": 30},
    {"name": "Course Library", "description": "Recorded course access", "price": 1499.00, "duration_in_days": None},
]


def upsert_plan(db: Session, data: dict) -> MembershipPlan:
    plan = db.query(MembershipPlan).filter(MembershipPlan.name == data["name"]).first()
    if plan:
        for k, v in data.items():
            setattr(plan, k, v)
        return plan

    plan = MembershipPlan(**data)
    db.add(plan)
    return plan


def upsert_service(db: Session, data: dict) -> Service:
    service = db.query(Service).filter(Service.name == data["name"]).first()
    if service:
        for k, v in data.items():
            setattr(service, k, v)
        return service

    service = Service(**data)
    db.add(service)
    return service


def main():
    init_db()
    db = SessionLocal()
    try:
        for data in PLANS:
            upsert_plan(db, data)
        for data in SERVICES:
            upsert_service(db, data)
        db.commit()
        print("Seeded plans:", [p["name"] for p in PLANS])
        print("Seeded services:", [s["name"] for s in SERVICES])
    finally:
        db.close()


if __name__ == "__main__":
    main()
