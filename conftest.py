import os

# main.py opens its store at import time
os.environ["DATABASE_PATH"] = ":memory:"

import pytest
from database import Database


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "coordinet.db")


@pytest.fixture
def store(store_path):
    db = Database(store_path)
    yield db
    db.close()


@pytest.fixture
def leader(store):
    return store.create_user(email="leader@example.com", password="password123", name="Lena Leader", role="club_leader")


@pytest.fixture
def festival(store, leader):
    club = store.create_club(name="Drama Club", description="Stage and screen", leader_id=leader.id)
    return store.create_festival(
        name="Spring Fest",
        description="Annual festival",
        start_date="2030-04-01",
        end_date="2030-04-03",
        location="Main Quad",
        organizer_id=leader.id,
        club_id=club.id,
    )
