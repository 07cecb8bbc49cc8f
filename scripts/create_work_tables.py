"""
Create work assignment tables in the database and make sure an admin exists.

Usage:
  python scripts/create_work_tables.py [admin_username] [admin_password]

This script creates the tables using SQLAlchemy's create_all().
It's safe to run multiple times - it won't recreate existing tables or
overwrite an existing admin.
"""
import sys

from repaircrm.auth.security import get_password_hash, password_problems
from repaircrm.db import Base, SessionLocal, engine
from repaircrm.models.models import AuditLog, Notification, User, WorkAssignment, WorkCheckin


TABLES = [
    User.__table__,
    WorkAssignment.__table__,
    WorkCheckin.__table__,
    AuditLog.__table__,
    Notification.__table__,
]


def create_work_tables():
    """Create all work assignment tables"""
    print("Creating work assignment tables...")
    Base.metadata.create_all(bind=engine, tables=TABLES)
    print("Tables created/verified:")
    for table in TABLES:
        print(f"  - {table.name}")


def ensure_admin(username: str, password: str) -> User:
    problems = password_problems(password)
    if problems:
        raise ValueError(problems[0])
    db = SessionLocal()
    try:
        admin = db.query(User).filter(User.username == username).first()
        if admin:
            print(f"Admin '{username}' already exists (id={admin.id})")
            return admin
        admin = User(username=username, password_hash=get_password_hash(password), role="admin", name="Administrator")
        db.add(admin)
        db.commit()
        db.refresh(admin)
        print(f"Admin '{username}' created (id={admin.id})")
        return admin
    finally:
        db.close()


if __name__ == "__main__":
    create_work_tables()
    if len(sys.argv) >= 3:
        ensure_admin(sys.argv[1], sys.argv[2])
