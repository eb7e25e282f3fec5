import datetime

from fastapi.testclient import TestClient
import pytest
from sqlmodel import Session, select

from .app import app
from .auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    create_access_token,
    get_current_user,
    get_password_hash,
)
from .database import engine
from .models import User

client = TestClient(app)


def teardown_function():
    app.dependency_overrides = {}


@pytest.fixture(scope="module", autouse=True)
def create_users():
    with Session(engine) as session:
        session.add_all(
            [
                User(
                    username="olanordmann",
                    email="ola@nordmann.no",
                    first_name="Ola",
                    hashed_password=get_password_hash("olaspass"),
                ),
                User(
                    username="karinordmann",
                    email="kari@nordmann.no",
                    first_name="Kari",
                    hashed_password=get_password_hash("karispass"),
                ),
                User(
                    username="perhansen",
                    email="per@hansen.no",
                    hashed_password=get_password_hash("perspass"),
                ),
                User(
                    username="admin",
                    email="admin@shelters.no",
                    hashed_password=get_password_hash("adminpass"),
                    is_admin=True,
                ),
            ]
        )
        session.commit()


def get_user_by_username(username: str):
    with Session(engine) as session:
        return session.exec(select(User).where(User.username == username)).first()


def mock_owner():
    return get_user_by_username("olanordmann")


def mock_booker():
    return get_user_by_username("karinordmann")


def mock_other_user():
    return get_user_by_username("perhansen")


def mock_admin():
    return get_user_by_username("admin")


def act_as(user):
    app.dependency_overrides[get_current_user] = user


def shelter_payload(**overrides):
    payload = {
        "name": "Fjellstua",
        "description": "Turf-roofed hut by the lake",
        "capacity": 4,
        "booking_policy": "both",
        "latitude": 61.5,
        "longitude": 8.3,
    }
    payload.update(overrides)
    return payload


def create_shelter(**overrides):
    act_as(mock_owner)
    response = client.post("/shelters", json=shelter_payload(**overrides))
    assert response.status_code == 201
    return response.json()


def book(shelter_id, start, end, guests=1, type="inclusive", user=mock_booker):
    act_as(user)
    return client.post(
        f"/shelters/{shelter_id}/bookings",
        json={
            "start_utc": start,
            "end_utc": end,
            "guests": guests,
            "type": type,
        },
    )


# -------
# Users
# -------


def test_login():
    response = client.post(
        "/register",
        json={
            "username": "testuser",
            "email": "test@example.com",
            "password": "password",
        },
    )
    assert response.status_code == 200
    assert "password" not in response.json()
    assert "hashed_password" not in response.json()

    # Test valid login
    response = client.post(
        "/token", data={"username": "testuser", "password": "password"}
    )
    assert response.status_code == 200
    data = response.json()
    assert "access_token" in data
    assert data["token_type"] == "bearer"

    response = client.get(
        "/users/me", headers={"Authorization": f"Bearer {data['access_token']}"}
    )
    assert response.status_code == 200
    assert response.json()["username"] == "testuser"

    # Test invalid login
    response = client.post(
        "/token", data={"username": "testuser", "password": "wrong"}
    )
    assert response.status_code == 401
    response = client.post(
        "/token", data={"username": "nonexistentuser", "password": "password"}
    )
    assert response.status_code == 401


def test_register_taken_username():
    response = client.post(
        "/register",
        json={"username": "olanordmann", "email": "x@y.no", "password": "pw"},
    )
    assert response.status_code == 400


def test_users_me_with_bad_token():
    response = client.get("/users/me", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_token_lifetime_and_expiry():
    token = create_access_token("karinordmann")
    lifetime = token.expires_at - datetime.datetime.now(datetime.timezone.utc)
    assert lifetime <= datetime.timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    assert lifetime > datetime.timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES - 1)

    headers = {"Authorization": f"Bearer {token.access_token}"}
    assert client.get("/users/me", headers=headers).json()["first_name"] == "Kari"

    expired = create_access_token("karinordmann", datetime.timedelta(seconds=-1))
    headers = {"Authorization": f"Bearer {expired.access_token}"}
    assert client.get("/users/me", headers=headers).status_code == 401


# ----------
# Shelters
# ----------


def test_post_shelter_not_logged_in():
    response = client.post("/shelters", json=shelter_payload())
    assert response.status_code == 401


def test_post_shelter_needs_positive_capacity():
    act_as(mock_owner)
    response = client.post("/shelters", json=shelter_payload(capacity=0))
    assert response.status_code == 422


def test_create_and_get_shelter():
    created = create_shelter()
    assert created["owner_id"] == str(mock_owner().id)
    assert created["is_active"] is True

    app.dependency_overrides = {}
    response = client.get(f"/shelters/{created['id']}")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Fjellstua"
    assert data["booking_policy"] == "both"
    assert data["review_summary"] == {"average_rating": 0, "total_count": 0}


def test_get_unknown_shelter():
    response = client.get("/shelters/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404


def test_only_owner_can_update_shelter():
    shelter = create_shelter()
    update = {"name": "Fjellstua II", "capacity": 6, "is_active": True}

    act_as(mock_other_user)
    response = client.put(f"/shelters/{shelter['id']}", json=update)
    assert response.status_code == 403

    act_as(mock_owner)
    response = client.put(f"/shelters/{shelter['id']}", json=update)
    assert response.status_code == 200
    assert response.json()["name"] == "Fjellstua II"
    assert response.json()["capacity"] == 6


def test_only_admin_can_delete_shelter():
    shelter = create_shelter()
    book(shelter["id"], "2031-01-01T10:00:00", "2031-01-01T11:00:00")

    act_as(mock_owner)
    response = client.delete(f"/shelters/{shelter['id']}")
    assert response.status_code == 403

    act_as(mock_admin)
    response = client.delete(f"/shelters/{shelter['id']}")
    assert response.status_code == 204
    assert client.get(f"/shelters/{shelter['id']}").status_code == 404


# ---------
# Search
# ---------


def test_search_in_bounding_box():
    # A corner of Antarctica nothing else in this module uses.
    for name in ["Camp C", "Camp A", "Camp B"]:
        create_shelter(name=name, latitude=-80.0, longitude=-120.0)
    create_shelter(name="Camp Outside", latitude=-80.0, longitude=-100.0)

    app.dependency_overrides = {}
    params = {"min_lat": -81, "max_lat": -79, "min_lon": -121, "max_lon": -119}
    response = client.get("/shelters", params=params)
    assert response.status_code == 200
    assert [s["name"] for s in response.json()] == ["Camp A", "Camp B", "Camp C"]

    response = client.get("/shelters", params={**params, "limit": 2})
    assert [s["name"] for s in response.json()] == ["Camp A", "Camp B"]


def test_search_with_only_latitude_bounds_is_unfiltered():
    create_shelter(name="Far East", latitude=10.0, longitude=170.0)

    app.dependency_overrides = {}
    everything = client.get("/shelters").json()
    response = client.get("/shelters", params={"min_lat": -1, "max_lat": 1})
    assert response.status_code == 200
    assert response.json() == everything
    assert "Far East" in [s["name"] for s in everything]
    assert [s["name"] for s in everything] == sorted(s["name"] for s in everything)


def test_search_results_carry_review_summary():
    rated = create_shelter(name="Rated hut", latitude=-70.0, longitude=60.0)
    create_shelter(name="Unrated hut", latitude=-70.0, longitude=60.0)
    act_as(mock_booker)
    for rating in (5, 2):
        response = client.post(
            f"/shelters/{rated['id']}/reviews", json={"rating": rating}
        )
        assert response.status_code == 201

    app.dependency_overrides = {}
    params = {"min_lat": -71, "max_lat": -69, "min_lon": 59, "max_lon": 61}
    found = {s["name"]: s for s in client.get("/shelters", params=params).json()}
    assert found["Rated hut"]["review_summary"] == {
        "average_rating": 3.5,
        "total_count": 2,
    }
    assert found["Unrated hut"]["review_summary"] == {
        "average_rating": 0,
        "total_count": 0,
    }


# ----------
# Bookings
# ----------


def test_post_booking_not_logged_in():
    shelter = create_shelter()
    app.dependency_overrides = {}
    response = client.post(
        f"/shelters/{shelter['id']}/bookings",
        json={"start_utc": "2030-01-01T10:00:00", "end_utc": "2030-01-01T11:00:00"},
    )
    assert response.status_code == 401


def test_capacity_scenario():
    shelter = create_shelter(capacity=4)
    start, end = "2030-01-01T10:00:00", "2030-01-01T11:00:00"

    a = book(shelter["id"], start, end, guests=3)
    assert a.status_code == 201
    assert a.json()["status"] == "confirmed"
    assert a.json()["booker_id"] == str(mock_booker().id)

    b = book(shelter["id"], start, end, guests=2)
    assert b.status_code == 409

    c = book(shelter["id"], start, end, guests=1, user=mock_other_user)
    assert c.status_code == 201

    d = book(
        shelter["id"], "2030-01-01T10:30:00", "2030-01-01T10:45:00", type="exclusive"
    )
    assert d.status_code == 409


def test_exclusive_blocks_overlap_but_not_touching():
    shelter = create_shelter()
    first = book(
        shelter["id"], "2030-02-01T10:00:00", "2030-02-01T12:00:00", type="exclusive"
    )
    assert first.status_code == 201

    overlapping = book(shelter["id"], "2030-02-01T11:00:00", "2030-02-01T13:00:00")
    assert overlapping.status_code == 409

    touching = book(shelter["id"], "2030-02-01T12:00:00", "2030-02-01T13:00:00")
    assert touching.status_code == 201


def test_timezones_are_compared_in_utc():
    shelter = create_shelter()
    first = book(
        shelter["id"], "2030-03-01T10:00:00Z", "2030-03-01T12:00:00Z", type="exclusive"
    )
    assert first.status_code == 201

    # 13:00+02:00 is 11:00 UTC.
    clash = book(
        shelter["id"],
        "2030-03-01T13:00:00+02:00",
        "2030-03-01T15:00:00+02:00",
        type="exclusive",
    )
    assert clash.status_code == 409


def test_policy_violation():
    shelter = create_shelter(booking_policy="exclusive_only", capacity=50)
    response = book(shelter["id"], "2030-01-01T10:00:00", "2030-01-01T11:00:00")
    assert response.status_code == 422
    assert "exclusive_only" in response.json()["detail"]


def test_invalid_window():
    shelter = create_shelter()
    response = book(shelter["id"], "2030-01-01T11:00:00", "2030-01-01T10:00:00")
    assert response.status_code == 422


def test_zero_guests_rejected():
    shelter = create_shelter()
    response = book(shelter["id"], "2030-01-01T10:00:00", "2030-01-01T11:00:00", 0)
    assert response.status_code == 422


def test_book_unknown_shelter():
    response = book(
        "00000000-0000-0000-0000-000000000000",
        "2030-01-01T10:00:00",
        "2030-01-01T11:00:00",
    )
    assert response.status_code == 404


def test_deactivated_shelter_keeps_bookings_but_blocks_new_ones():
    shelter = create_shelter()
    existing = book(shelter["id"], "2030-04-01T10:00:00", "2030-04-01T11:00:00")
    assert existing.status_code == 201

    act_as(mock_owner)
    response = client.put(
        f"/shelters/{shelter['id']}",
        json={"name": "Fjellstua", "capacity": 4, "is_active": False},
    )
    assert response.status_code == 200

    blocked = book(shelter["id"], "2030-05-01T10:00:00", "2030-05-01T11:00:00")
    assert blocked.status_code == 409

    response = client.get(f"/bookings/{existing.json()['id']}")
    assert response.json()["status"] == "confirmed"


def test_get_booking_not_logged_in():
    response = client.get("/bookings/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 401


def test_bookings_carry_booker_name():
    shelter = create_shelter()
    response = book(shelter["id"], "2030-05-01T10:00:00", "2030-05-01T11:00:00")
    assert response.status_code == 201
    booking = response.json()
    assert booking["booker_name"] == "Kari"

    assert client.get(f"/bookings/{booking['id']}").json()["booker_name"] == "Kari"
    listed = client.get(f"/shelters/{shelter['id']}/bookings").json()
    assert [b["booker_name"] for b in listed] == ["Kari"]

    per = book(
        shelter["id"],
        "2030-05-02T10:00:00",
        "2030-05-02T11:00:00",
        user=mock_other_user,
    ).json()
    assert per["booker_name"] is None


def test_list_shelter_bookings_in_range():
    shelter = create_shelter()
    for day in ("01", "02", "03"):
        response = book(
            shelter["id"], f"2030-06-{day}T10:00:00", f"2030-06-{day}T11:00:00"
        )
        assert response.status_code == 201

    app.dependency_overrides = {}
    response = client.get(
        f"/shelters/{shelter['id']}/bookings",
        params={"from": "2030-06-02T11:00:00", "to": "2030-06-03T10:00:00"},
    )
    assert response.status_code == 200
    starts = [b["start_utc"] for b in response.json()]
    assert starts == ["2030-06-02T10:00:00Z", "2030-06-03T10:00:00Z"]

    response = client.get(f"/shelters/{shelter['id']}/bookings")
    assert len(response.json()) == 3


# --------------
# Cancellation
# --------------


def test_booker_cancels_and_frees_capacity():
    shelter = create_shelter(capacity=2)
    start, end = "2030-07-01T10:00:00", "2030-07-01T11:00:00"
    first = book(shelter["id"], start, end, guests=2).json()
    other = book(shelter["id"], "2030-07-02T10:00:00", "2030-07-02T11:00:00").json()
    assert book(shelter["id"], start, end, guests=1).status_code == 409

    act_as(mock_booker)
    response = client.post(f"/bookings/{first['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = client.post(f"/bookings/{first['id']}/cancel")
    assert response.status_code == 409

    assert client.get(f"/bookings/{other['id']}").json()["status"] == "confirmed"
    assert book(shelter["id"], start, end, guests=2).status_code == 201


def test_user_cannot_cancel_others_booking():
    shelter = create_shelter()
    booking = book(shelter["id"], "2030-08-01T10:00:00", "2030-08-01T11:00:00").json()

    act_as(mock_other_user)
    response = client.post(f"/bookings/{booking['id']}/cancel")
    assert response.status_code == 403


def test_shelter_owner_can_cancel_booking():
    shelter = create_shelter()
    booking = book(shelter["id"], "2030-08-01T10:00:00", "2030-08-01T11:00:00").json()

    act_as(mock_owner)
    response = client.post(f"/bookings/{booking['id']}/cancel")
    assert response.status_code == 200


def test_cancel_unknown_booking():
    act_as(mock_booker)
    response = client.post("/bookings/00000000-0000-0000-0000-000000000000/cancel")
    assert response.status_code == 404


# ---------
# Reviews
# ---------


def test_reviews_pagination_and_summary():
    shelter = create_shelter()
    act_as(mock_booker)
    for rating, comment in [(5, "Lovely"), (4, "Good stove"), (2, "Mice")]:
        response = client.post(
            f"/shelters/{shelter['id']}/reviews",
            json={"rating": rating, "comment": comment},
        )
        assert response.status_code == 201

    app.dependency_overrides = {}
    response = client.get(
        f"/shelters/{shelter['id']}/reviews", params={"page": 2, "page_size": 2}
    )
    assert response.status_code == 200
    data = response.json()
    assert len(data["reviews"]) == 1
    assert data["pagination"] == {
        "page": 2,
        "page_size": 2,
        "total_count": 3,
        "total_pages": 2,
    }

    response = client.get(
        f"/shelters/{shelter['id']}/reviews", params={"page": 0, "page_size": 500}
    )
    pagination = response.json()["pagination"]
    assert pagination["page"] == 1
    assert pagination["page_size"] == 10

    summary = client.get(f"/shelters/{shelter['id']}").json()["review_summary"]
    assert summary == {"average_rating": 3.67, "total_count": 3}


def test_review_rating_out_of_range():
    shelter = create_shelter()
    act_as(mock_booker)
    response = client.post(
        f"/shelters/{shelter['id']}/reviews", json={"rating": 6}
    )
    assert response.status_code == 422
