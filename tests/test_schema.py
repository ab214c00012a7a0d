from collections import Counter

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

import memberhub.models  # noqa: F401
from memberhub.db import session as db_session
from memberhub.db.base import Base

TABLES = {
    "users",
    "admins",
    "membership_plans",
    "services",
    "user_memberships",
    "user_service_subscriptions",
    "membership_requests",
    "service_requests",
    "payments",
    "clubs",
    "club_members",
    "club_join_requests",
}


@pytest.fixture
def fresh_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield engine
    engine.dispose()


def test_index_names_are_unique_across_tables():
    names = Counter(index.name for table in Base.metadata.tables.values() for index in table.indexes)
    assert [name for name, count in names.items() if count > 1] == []


def test_create_all_builds_every_table(fresh_engine):
    Base.metadata.create_all(fresh_engine)

    inspector = inspect(fresh_engine)
    assert TABLES <= set(inspector.get_table_names())
    index_names = {ix["name"] for ix in inspector.get_indexes("user_memberships")}
    assert "ix_user_memberships_payment_status_status" in index_names


def test_init_db_is_repeatable(fresh_engine, monkeypatch):
    monkeypatch.setattr(db_session, "engine", fresh_engine)

    db_session.init_db()
    db_session.init_db()

    assert TABLES <= set(inspect(fresh_engine).get_table_names())
