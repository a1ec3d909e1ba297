from datetime import datetime, timedelta

from conftest import PASSWORD, auth_headers
from models import Account
from services import attendance, registrations


class TestParticipantProfile:
    def test_update_names_and_college(self, client, participant):
        headers = auth_headers(participant)

        response = client.put("/participant/profile", json={"first_name": " Meera ", "college_name": "JNTU"},
                              headers=headers)

        assert response.status_code == 200
        assert response.json()["first_name"] == "Meera"
        assert response.json()["college_name"] == "JNTU"
        assert client.get("/participant/profile", headers=headers).json()["display_name"] == "Meera Rao"

    def test_iiit_college_is_fixed(self, client, make_participant):
        student = make_participant(email="asha@students.iiit.ac.in")

        response = client.put("/participant/profile", json={"college_name": "Elsewhere"},
                              headers=auth_headers(student))

        assert response.status_code == 400

    def test_blank_name_rejected(self, client, participant):
        response = client.put("/participant/profile", json={"last_name": "  "}, headers=auth_headers(participant))
        assert response.status_code == 400

    def test_change_password(self, client, db, participant):
        headers = auth_headers(participant)

        wrong = client.put("/participant/password", json={"current_password": "nope", "new_password": "newpass1"},
                           headers=headers)
        short = client.put("/participant/password", json={"current_password": PASSWORD, "new_password": "abc"},
                           headers=headers)
        ok = client.put("/participant/password", json={"current_password": PASSWORD, "new_password": "newpass1"},
                        headers=headers)

        assert wrong.status_code == 400
        assert short.status_code == 422
        assert ok.status_code == 200
        login = client.post("/auth/login", json={"email": participant.email, "password": "newpass1"})
        assert login.status_code == 200


class TestPreferences:
    def test_defaults_then_update(self, client, participant):
        headers = auth_headers(participant)

        empty = client.get("/participant/preferences", headers=headers).json()
        updated = client.put("/participant/preferences", json={"interests": ["music", " ", "music", "dance"]},
                             headers=headers).json()

        assert empty == {"interests": [], "followed_organizers": []}
        assert updated["interests"] == ["music", "dance"]

    def test_follow_and_unfollow(self, client, participant, organizer):
        headers = auth_headers(participant)
        url = f"/participant/follow/{organizer.id}"

        followed = client.post(url, headers=headers)
        again = client.post(url, headers=headers)
        listed = client.get("/participant/following", headers=headers).json()
        unfollowed = client.delete(url, headers=headers)
        not_following = client.delete(url, headers=headers)

        assert [o["id"] for o in followed.json()["followed_organizers"]] == [organizer.id]
        assert again.status_code == 409
        assert [o["organizer_name"] for o in listed] == [organizer.organizer_name]
        assert unfollowed.json()["followed_organizers"] == []
        assert not_following.status_code == 409

    def test_cannot_follow_disabled_or_unknown(self, client, participant, make_organizer):
        headers = auth_headers(participant)
        disabled = make_organizer(is_active=False)

        assert client.post(f"/participant/follow/{disabled.id}", headers=headers).status_code == 404
        assert client.post(f"/participant/follow/{participant.id}", headers=headers).status_code == 404


def test_participant_dashboard(client, db, participant, organizer, make_event, notifier):
    upcoming = make_event(organizer, name="Upcoming")
    other = make_event(organizer, name="Cancelled Later")
    registrations.register(db, upcoming, participant, notifier)
    registrations.register(db, other, participant, notifier)
    registrations.cancel_registration(db, other.id, participant, notifier)

    body = client.get("/participant/dashboard", headers=auth_headers(participant)).json()

    assert body["registered_count"] == 1
    assert body["upcoming_count"] == 1
    assert body["followed_count"] == 0
    assert [e["event"]["name"] for e in body["upcoming_events"]] == ["Upcoming"]


class TestOrganizerProfile:
    def test_update_profile(self, client, organizer):
        headers = auth_headers(organizer)

        updated = client.put("/organizer/profile", json={
            "description": "Coding club",
            "contact_email": "hello@clubs.iiit.ac.in",
        }, headers=headers)
        blank = client.put("/organizer/profile", json={"organizer_name": ""}, headers=headers)

        assert updated.json()["description"] == "Coding club"
        assert updated.json()["contact_email"] == "hello@clubs.iiit.ac.in"
        assert blank.status_code == 400
        assert client.get("/organizer/profile", headers=headers).json()["organizer_name"] == organizer.organizer_name

    def test_change_password(self, client, organizer):
        response = client.put("/organizer/password", json={"current_password": PASSWORD, "new_password": "clubpass"},
                              headers=auth_headers(organizer))

        assert response.status_code == 200
        assert client.post("/auth/login", json={"email": organizer.email, "password": "clubpass"}).status_code == 200

    def test_password_reset_request_flags_account(self, client, db, organizer):
        client.post("/organizer/password-reset-request", headers=auth_headers(organizer))

        db.expire_all()
        account = db.get(Account, organizer.id)
        assert account.password_reset_requested is True
        assert account.password_reset_requested_at is not None


class TestOrganizerViews:
    def test_event_analytics(self, client, db, organizer, make_participant, make_event, notifier):
        event = make_event(organizer, registration_limit=4, registration_fee=50)
        first = registrations.register(db, event, make_participant(), notifier)
        registrations.register(db, event, make_participant(), notifier)
        attendance.mark_manual(db, first, organizer)

        stats = client.get(f"/organizer/events/{event.id}/analytics", headers=auth_headers(organizer)).json()

        assert stats["total_registrations"] == 2
        assert stats["registered"] == 1
        assert stats["attended"] == 1
        assert stats["revenue"] == 100
        assert stats["capacity_utilization"] == 50

    def test_ongoing_events_use_derived_status(self, client, organizer, make_event):
        now = datetime.utcnow()
        make_event(organizer, name="Running", start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=3),
                   registration_deadline=now - timedelta(hours=2))
        make_event(organizer, name="Next Week")

        response = client.get("/organizer/events/ongoing", headers=auth_headers(organizer))

        assert [e["name"] for e in response.json()] == ["Running"]

    def test_dashboard_counts_by_effective_status(self, client, organizer, make_event):
        now = datetime.utcnow()
        make_event(organizer, name="Draft", status="draft")
        make_event(organizer, name="Running", start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=3),
                   registration_deadline=now - timedelta(hours=2))

        analytics = client.get("/organizer/dashboard", headers=auth_headers(organizer)).json()["analytics"]

        assert analytics["total_events"] == 2
        assert analytics["draft_events"] == 1
        assert analytics["ongoing_events"] == 1
