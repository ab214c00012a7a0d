import sys

from memberhub.core.security import hash_password
from memberhub.db.session import SessionLocal, init_db
from memberhub.models.user import Admin


def main():
    if len(sys.argv) < 3:
        print("usage: python scripts/create_admin.py <username> <password> [name]")
        sys.exit(1)

    username, password = sys.argv[1], sys.argv[2]
    name = sys.argv[3] if len(sys.argv) > 3 else username

    init_db()
    db = SessionLocal()
    try:
        admin = db.query(Admin).filter(Admin.username == username).first()
        if admin:
            admin.password_hash = hash_password(password)
            admin.is_active = True
        else:
            admin = Admin(username=username, name=name, password_hash=hash_password(password))
            db.add(admin)
        db.commit()
        print("Admin ready:", admin.username)
    finally:
        db.close()


if __name__ == "__main__":
    main()
