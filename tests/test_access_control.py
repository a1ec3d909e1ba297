from datetime import timedelta

import pytest

from conftest import auth_headers
from dependencies import create_access_token


@pytest.mark.parametrize("method,path", [
    ("get", "/auth/me"),
    ("get", "/participant/registrations"),
    ("post", "/participant/events/1/register"),
    ("get", "/organizer/dashboard"),
    ("post", "/organizer/events/1/publish"),
    ("get", "/admin/dashboard"),
    ("get", "/forum/1/messages"),
])
def test_missing_credentials_is_401(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_garbage_token_is_401(client):
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_expired_token_is_401(client, participant):
    token = create_access_token(participant, expires_delta=timedelta(minutes=-1))
    response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_token_for_deleted_account_is_401(client, db, participant):
    headers = auth_headers(participant)
    db.delete(participant)
    db.commit()
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_wrong_role_is_403(client, participant, organizer, admin):
    assert client.get("/organizer/dashboard", headers=auth_headers(participant)).status_code == 403
    assert client.get("/admin/dashboard", headers=auth_headers(organizer)).status_code == 403
    assert client.get("/participant/dashboard", headers=auth_headers(admin)).status_code == 403


def test_disabled_organizer_is_403(client, make_organizer):
    organizer = make_organizer(is_active=False)
    response = client.get("/organizer/dashboard", headers=auth_headers(organizer))
    assert response.status_code == 403
    assert response.json()["detail"] == "Organizer account is disabled"


@pytest.mark.parametrize("method,suffix", [
    ("get", ""),
    ("put", ""),
    ("delete", ""),
    ("post", "/publish"),
    ("post", "/cancel"),
    ("post", "/end"),
    ("get", "/participants"),
    ("get", "/participants/export"),
    ("get", "/attendance"),
    ("get", "/orders"),
])
def test_other_organizers_event_looks_absent(client, make_organizer, make_event, method, suffix):
    owner, intruder = make_organizer(), make_organizer()
    event = make_event(owner)
    kwargs = {"headers": auth_headers(intruder)}
    if method == "put":
        kwargs["json"] = {"name": "Hijacked"}

    response = getattr(client, method)(f"/organizer/events/{event.id}{suffix}", **kwargs)

    assert response.status_code == 404
    assert response.json()["detail"] == "Event not found or unauthorized"


def test_owner_sees_own_event(client, organizer, make_event):
    event = make_event(organizer)
    response = client.get(f"/organizer/events/{event.id}", headers=auth_headers(organizer))
    assert response.status_code == 200
    assert response.json()["event"]["id"] == event.id
    assert "analytics" in response.json()


def test_public_routes_need_no_token(client, organizer, make_event):
    event = make_event(organizer)
    assert client.get("/events/").status_code == 200
    assert client.get(f"/events/{event.id}").status_code == 200
    assert client.get("/health").json() == {"status": "healthy"}
