import pytest
from fastapi.testclient import TestClient
from main import app, db


@pytest.fixture
def client():
    db.clear()
    return TestClient(app)


def signup(client, email, role, name="Test User"):
    return client.post("/auth/signup", json={
        "name": name,
        "email": email,
        "password": "password123",
        "role": role
    })


@pytest.fixture
def leader(client):
    return signup(client, "leader@example.com", "club_leader", "Lena Leader").json()["data"]


@pytest.fixture
def festival(client, leader):
    club = client.post("/clubs", json={"name": "Drama Club", "description": "Stage"}).json()["data"]
    response = client.post("/festivals", json={
        "clubId": club["id"],
        "name": "Spring Fest",
        "description": "Annual festival",
        "startDate": "2030-04-01",
        "endDate": "2030-04-03",
        "location": "Main Quad"
    })
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def sub_event(client, festival):
    response = client.post(f"/festivals/{festival['id']}/subevents", json={
        "name": "Improv Night",
        "startDate": "2030-04-01",
        "startTime": "18:00",
        "endDate": "2030-04-01",
        "endTime": "20:00",
        "location": "Hall B",
        "maxParticipants": 2
    })
    assert response.status_code == 201
    return response.json()["data"]


def test_signup_sets_session(client):
    response = signup(client, "student@example.com", "student")
    assert response.status_code == 201
    assert response.json()["message"] == "User registered"
    session = client.get("/auth/session").json()["data"]
    assert session["email"] == "student@example.com"
    assert session["role"] == "student"


def test_signup_duplicate_email(client):
    signup(client, "student@example.com", "student")
    response = signup(client, "student@example.com", "club_leader")
    assert response.status_code == 400
    assert "already exists" in response.json()["detail"]


def test_signin_and_signout(client):
    signup(client, "student@example.com", "student")
    client.post("/auth/signout")
    assert client.get("/auth/session").status_code == 401

    bad = client.post("/auth/signin", json={"email": "student@example.com", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "Invalid email or password"

    response = client.post("/auth/signin", json={"email": "student@example.com", "password": "password123"})
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "student"


def test_route_guard_redirects(client):
    response = client.get("/dashboard/leader")
    assert response.status_code == 401
    assert response.headers["location"] == "/auth/signin"

    signup(client, "student@example.com", "student")
    response = client.get("/dashboard/leader")
    assert response.status_code == 403
    assert response.headers["location"] == "/dashboard/student"


def test_leader_dashboard(client, festival):
    data = client.get("/dashboard/leader").json()["data"]
    assert len(data["clubs"]) == 1
    assert data["clubs"][0]["memberIds"] == [data["clubs"][0]["leaderId"]]
    assert data["festivals"][0]["clubName"] == "Drama Club"
    assert data["festivals"][0]["festival"]["id"] == festival["id"]


def test_festival_requires_own_club(client, festival):
    signup(client, "other@example.com", "club_leader")
    response = client.post("/festivals", json={
        "clubId": festival["clubId"],
        "name": "Hijack Fest",
        "startDate": "2030-05-01",
        "endDate": "2030-05-02"
    })
    assert response.status_code == 403


def test_invalid_capacity(client, festival):
    response = client.post(f"/festivals/{festival['id']}/subevents", json={
        "name": "Empty",
        "startDate": "2030-04-01",
        "startTime": "10:00",
        "endDate": "2030-04-01",
        "endTime": "11:00",
        "maxParticipants": 0
    })
    assert response.status_code == 422


def test_sub_event_registration_capacity(client, sub_event):
    for email in ("a@example.com", "b@example.com"):
        signup(client, email, "student")
        response = client.post(f"/subevents/{sub_event['id']}/register")
        assert response.status_code == 201

    signup(client, "c@example.com", "student")
    response = client.post(f"/subevents/{sub_event['id']}/register")
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Registration failed")

    overview = client.get(f"/subevents/{sub_event['id']}").json()["data"]
    assert overview["remainingSpots"] == 0
    assert len(overview["participants"]) == 2


def test_duplicate_registration(client, festival):
    signup(client, "a@example.com", "student")
    assert client.post(f"/festivals/{festival['id']}/register").status_code == 201
    response = client.post(f"/festivals/{festival['id']}/register")
    assert response.status_code == 400
    assert response.json()["detail"] == "User is already participating in this event"


def test_festival_overview_with_tasks_and_expenses(client, festival):
    task = client.post(f"/festivals/{festival['id']}/tasks", json={
        "title": "Book stage",
        "dueDate": "2030-03-15"
    }).json()["data"]
    assert task["status"] == "pending"
    assert task["assigneeId"] == festival["organizerId"]
    for amount in (100, 50.25):
        client.post(f"/festivals/{festival['id']}/expenses", json={
            "title": "Supplies",
            "amount": amount,
            "category": "materials",
            "date": "2030-03-01"
        })
    data = client.get(f"/festivals/{festival['id']}").json()["data"]
    assert data["isOrganizer"] is True
    assert data["totalExpenses"] == 150.25
    assert [t["id"] for t in data["tasks"]] == [task["id"]]
    assert len(data["expenses"]) == 2


def test_update_and_delete_task(client, festival):
    task = client.post(f"/festivals/{festival['id']}/tasks", json={
        "title": "Book stage",
        "dueDate": "2030-03-15"
    }).json()["data"]
    response = client.put(f"/tasks/{task['id']}", json={"status": "completed"})
    assert response.status_code == 200
    updated = response.json()["data"]
    assert updated["status"] == "completed"
    assert updated["title"] == "Book stage"
    assert updated["updatedAt"] > task["updatedAt"]

    assert client.delete(f"/tasks/{task['id']}").status_code == 200
    assert client.put(f"/tasks/{task['id']}", json={"status": "pending"}).status_code == 404


def test_upload_poster(client, festival):
    response = client.put(
        f"/festivals/{festival['id']}/poster",
        content=b"\x89PNG",
        headers={"Content-Type": "image/png"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["poster"] == "data:image/png;base64,iVBORw=="


def test_delete_festival_leaves_sub_events(client, festival, sub_event):
    assert client.delete(f"/festivals/{festival['id']}").status_code == 200
    assert client.get(f"/festivals/{festival['id']}").status_code == 404
    data = client.get(f"/subevents/{sub_event['id']}").json()["data"]
    assert data["festival"] is None


def test_participant_can_cancel(client, sub_event):
    signup(client, "a@example.com", "student")
    participation = client.post(f"/subevents/{sub_event['id']}/register").json()["data"]
    response = client.put(f"/participations/{participation['id']}", json={"status": "cancelled"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    signup(client, "b@example.com", "student")
    response = client.put(f"/participations/{participation['id']}", json={"status": "attended"})
    assert response.status_code == 403


def test_student_dashboard(client, festival, sub_event):
    signup(client, "a@example.com", "student")
    client.post(f"/subevents/{sub_event['id']}/register")
    data = client.get("/dashboard/student").json()["data"]
    assert [f["id"] for f in data["upcomingFestivals"]] == [festival["id"]]
    assert [s["id"] for s in data["participatedSubEvents"]] == [sub_event["id"]]


def test_festival_dates_are_validated(client, festival):
    response = client.post("/festivals", json={
        "clubId": festival["clubId"],
        "name": "Someday Fest",
        "startDate": "2030-05-01",
        "endDate": "soon"
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid date format"

    response = client.put(f"/festivals/{festival['id']}", json={"endDate": "2030-03-01"})
    assert response.status_code == 400
    assert client.get("/festivals/upcoming").status_code == 200


def test_update_ignores_null_for_required_fields(client, festival):
    response = client.put(f"/festivals/{festival['id']}", json={"name": None, "location": "Stadium"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Spring Fest"
    assert data["location"] == "Stadium"


def test_task_sub_event_can_be_cleared(client, sub_event):
    task = client.post(f"/festivals/{sub_event['festivalId']}/tasks", json={
        "title": "Set chairs",
        "dueDate": "2030-03-30",
        "subEventId": sub_event["id"]
    }).json()["data"]
    response = client.put(f"/tasks/{task['id']}", json={"subEventId": None, "title": None})
    assert response.status_code == 200
    assert response.json()["data"]["subEventId"] is None
    assert response.json()["data"]["title"] == "Set chairs"
