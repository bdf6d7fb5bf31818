"""Staff seeding is idempotent and needs an explicit password"""
import pytest
from sqlmodel import select

from auth import verify_password
from models import User
from seed_admin import seed_staff


def test_seed_staff_creates_admin_and_manager_once(session, monkeypatch):
    monkeypatch.setenv("SEED_ADMIN_PASSWORD", "Adm1n!pass")
    monkeypatch.setenv("SEED_MANAGER_EMAIL", "billing@carelink-hms.org")

    first = seed_staff(session)
    second = seed_staff(session)

    assert [u.role for u in first] == ["admin", "manager"]
    assert [u.id for u in first] == [u.id for u in second]
    assert len(session.exec(select(User)).all()) == 2
    assert verify_password("Adm1n!pass", first[1].password_hash)


def test_seed_staff_requires_password(session, monkeypatch):
    monkeypatch.delenv("SEED_ADMIN_PASSWORD", raising=False)
    with pytest.raises(RuntimeError):
        seed_staff(session)
