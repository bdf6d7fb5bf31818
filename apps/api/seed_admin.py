#!/usr/bin/env python3
"""
Seed the first billing staff accounts so a fresh deployment can log in.

Credentials come from SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD and
SEED_MANAGER_EMAIL / SEED_MANAGER_PASSWORD; a manager is only created when
its email is set.
"""

import logging
import os
import sys
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv
from sqlmodel import Session, select

from auth import get_password_hash
from database import create_db_and_tables, engine
from models import User, UserRole

logger = logging.getLogger(__name__)


def seed_user(session: Session, email: str, password: str, role: UserRole, full_name: str) -> User:
    """Create the user unless one with this email already exists"""
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        logger.info(f"{role.value} {email} already exists")
        return existing

    user = User(
        email=email,
        password_hash=get_password_hash(password),
        full_name=full_name,
        role=role.value,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Created {role.value} {email}")
    return user


def seed_staff(session: Session) -> list:
    seeded = []
    admin_email = os.getenv("SEED_ADMIN_EMAIL", "admin@carelink-hms.org")
    admin_password = os.getenv("SEED_ADMIN_PASSWORD")
    if not admin_password:
        raise RuntimeError("SEED_ADMIN_PASSWORD must be set")
    seeded.append(seed_user(session, admin_email, admin_password, UserRole.ADMIN, "System Administrator"))

    manager_email = os.getenv("SEED_MANAGER_EMAIL")
    if manager_email:
        manager_password = os.getenv("SEED_MANAGER_PASSWORD") or admin_password
        seeded.append(seed_user(session, manager_email, manager_password, UserRole.MANAGER, "Billing Manager"))
    return seeded


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    load_dotenv()
    create_db_and_tables()
    with Session(engine) as session:
        for user in seed_staff(session):
            print(f"✅ {user.role}: {user.email}")
