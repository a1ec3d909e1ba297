import csv
import io
import json
from datetime import datetime, timedelta

import pytest

from conftest import auth_headers, iso
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import EventStatus, Registration, RegistrationStatus
from services import registrations


def register_url(event):
    return f"/participant/events/{event.id}/register"


class TestRegister:
    def test_normal_event_registers_and_issues_ticket(self, client, participant, organizer, make_event, notifier):
        event = make_event(organizer, registration_fee=50)

        response = client.post(register_url(event), json={}, headers=auth_headers(participant))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "registered"
        assert body["payment_status"] == "not_required"
        assert body["payment_amount"] == 50
        assert body["ticket_id"].startswith("TKT-")
        payload = json.loads(body["ticket_payload"])
        assert payload["event_id"] == event.id
        assert payload["participant_id"] == participant.id
        assert payload["ticket_id"] == body["ticket_id"]
        assert "timestamp" in payload

        confirmation = notifier.emails_to(participant.email)
        assert len(confirmation) == 1
        assert confirmation[0].qr_png.startswith(b"\x89PNG")

    def test_registration_webhook_respects_toggle(self, db, make_organizer, participant, make_event, notifier):
        organizer = make_organizer(webhook_url="https://discord.example/hook")
        event = make_event(organizer)

        registrations.register(db, event, participant, notifier)
        assert len(notifier.webhooks()) == 1

        organizer.notify_on_registration = False
        db.commit()
        other = make_event(organizer, name="Quiz")
        registrations.register(db, other, participant, notifier)
        assert len(notifier.webhooks()) == 1

    def test_second_registration_is_a_conflict(self, client, participant, organizer, make_event, db):
        event = make_event(organizer)
        headers = auth_headers(participant)

        assert client.post(register_url(event), json={}, headers=headers).status_code == 201
        second = client.post(register_url(event), json={}, headers=headers)

        assert second.status_code == 409
        assert second.json()["detail"] == "You are already registered for this event"
        assert db.query(Registration).filter(Registration.event_id == event.id).count() == 1

    def test_cancel_then_register_again_creates_new_row(self, client, db, participant, organizer, make_event):
        event = make_event(organizer)
        headers = auth_headers(participant)

        first = client.post(register_url(event), json={}, headers=headers).json()
        cancelled = client.post(f"/participant/events/{event.id}/cancel", headers=headers)
        again = client.post(register_url(event), json={}, headers=headers)

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert again.status_code == 201
        assert again.json()["id"] != first["id"]
        rows = db.query(Registration).filter(Registration.event_id == event.id).all()
        assert sorted(r.status for r in rows) == ["cancelled", "registered"]

    def test_at_most_one_active_registration_at_store_level(self, db, participant, organizer, make_event):
        from sqlalchemy.exc import IntegrityError

        event = make_event(organizer)
        db.add(Registration(event_id=event.id, participant_id=participant.id, status="registered"))
        db.commit()
        db.add(Registration(event_id=event.id, participant_id=participant.id, status="pending"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    @pytest.mark.parametrize("status", [EventStatus.DRAFT, EventStatus.CANCELLED, EventStatus.COMPLETED])
    def test_closed_events_reject(self, db, participant, organizer, make_event, notifier, status):
        event = make_event(organizer, status=status)
        with pytest.raises(ConflictError, match="not open for registration"):
            registrations.register(db, event, participant, notifier)

    def test_draft_event_is_not_found_over_http(self, client, participant, organizer, make_event):
        event = make_event(organizer, status=EventStatus.DRAFT)
        response = client.post(register_url(event), json={}, headers=auth_headers(participant))
        assert response.status_code == 404

    def test_deadline_passed(self, db, participant, organizer, make_event, notifier):
        now = datetime.utcnow()
        event = make_event(organizer, registration_deadline=now - timedelta(minutes=1))
        with pytest.raises(ConflictError, match="deadline"):
            registrations.register(db, event, participant, notifier)

    def test_registration_open_while_ongoing(self, db, participant, organizer, make_event, notifier):
        now = datetime.utcnow()
        event = make_event(organizer, start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=3),
                           registration_deadline=now + timedelta(hours=1))
        registration = registrations.register(db, event, participant, notifier, now=now)
        assert registration.status == RegistrationStatus.REGISTERED

    def test_eligibility(self, db, make_participant, organizer, make_event, notifier):
        event = make_event(organizer, eligibility="iiit")
        outsider = make_participant(email="someone@gmail.com")
        insider = make_participant(email="student@students.iiit.ac.in")

        with pytest.raises(ForbiddenError):
            registrations.register(db, event, outsider, notifier)
        assert registrations.register(db, event, insider, notifier).status == RegistrationStatus.REGISTERED

    def test_registration_limit(self, client, make_participant, organizer, make_event):
        event = make_event(organizer, registration_limit=2)
        codes = [
            client.post(register_url(event), json={}, headers=auth_headers(make_participant())).status_code
            for _ in range(3)
        ]
        assert codes == [201, 201, 409]

    def test_cancelled_registrations_free_a_seat(self, db, make_participant, organizer, make_event, notifier):
        event = make_event(organizer, registration_limit=1)
        first, second = make_participant(), make_participant()
        registrations.register(db, event, first, notifier)
        registrations.cancel_registration(db, event.id, first, notifier)
        assert registrations.register(db, event, second, notifier).status == RegistrationStatus.REGISTERED

    def test_custom_form_required_and_select(self, db, participant, organizer, make_event, notifier):
        event = make_event(organizer, custom_form_fields=[
            {"label": "Team name", "type": "text", "required": True},
            {"label": "Track", "type": "select", "options": ["AI", "Web"], "required": False},
        ])

        with pytest.raises(ValidationError, match="'Team name' is required"):
            registrations.register(db, event, participant, notifier, form_responses={})
        with pytest.raises(ValidationError, match="'Track' must be one of"):
            registrations.register(db, event, participant, notifier,
                                   form_responses={"Team name": "Bits", "Track": "Games"})

        registration = registrations.register(db, event, participant, notifier,
                                              form_responses={"Team name": "  Bits ", "Track": "AI"})
        assert registration.form_responses == {"Team name": "Bits", "Track": "AI"}

    def test_only_participants_register(self, client, organizer, make_event):
        event = make_event(organizer)
        response = client.post(register_url(event), json={}, headers=auth_headers(organizer))
        assert response.status_code == 403


class TestCancel:
    def test_cancel_without_active_registration(self, client, participant, organizer, make_event):
        event = make_event(organizer)
        response = client.post(f"/participant/events/{event.id}/cancel", headers=auth_headers(participant))
        assert response.status_code == 404
        assert response.json()["detail"] == "No active registration found for this event"

    def test_cancel_sends_notification(self, db, participant, organizer, make_event, notifier):
        event = make_event(organizer)
        registrations.register(db, event, participant, notifier)
        registrations.cancel_registration(db, event.id, participant, notifier)
        subjects = [job.subject for job in notifier.emails_to(participant.email)]
        assert subjects[-1] == f"Registration Cancelled: {event.name}"

    def test_attended_registration_cannot_be_cancelled(self, db, participant, organizer, make_event, notifier):
        event = make_event(organizer)
        registration = registrations.register(db, event, participant, notifier)
        registration.status = RegistrationStatus.ATTENDED
        db.commit()
        with pytest.raises(NotFoundError):
            registrations.cancel_registration(db, event.id, participant, notifier)


class TestOrganizerOverride:
    def test_override_to_cancelled_and_attended(self, client, db, make_participant, organizer, make_event, notifier):
        event = make_event(organizer)
        a = registrations.register(db, event, make_participant(), notifier)
        b = registrations.register(db, event, make_participant(), notifier)
        headers = auth_headers(organizer)
        url = f"/organizer/events/{event.id}/registrations"

        cancelled = client.patch(f"{url}/{a.id}", json={"status": "cancelled"}, headers=headers)
        attended = client.patch(f"{url}/{b.id}", json={"status": "attended"}, headers=headers)
        again = client.patch(f"{url}/{a.id}", json={"status": "cancelled"}, headers=headers)

        assert cancelled.json()["status"] == "cancelled"
        assert attended.json()["status"] == "attended"
        assert attended.json()["attendance_method"] == "manual"
        assert again.status_code == 409

    def test_filter_by_status(self, client, db, make_participant, organizer, make_event, notifier):
        event = make_event(organizer)
        keep = registrations.register(db, event, make_participant(), notifier)
        drop = registrations.register(db, event, make_participant(), notifier)
        registrations.cancel_registration(db, event.id, drop.participant, notifier)

        response = client.get(f"/organizer/events/{event.id}/registrations", params={"status": "registered"},
                              headers=auth_headers(organizer))

        assert [r["id"] for r in response.json()] == [keep.id]


def test_scenario_create_publish_register_export(client, organizer, participant):
    """Normal event from creation to the participant CSV."""
    now = datetime.utcnow()
    org_headers = auth_headers(organizer)
    created = client.post("/organizer/events", json={
        "name": "Code Golf",
        "category": "Technical",
        "registration_deadline": iso(now + timedelta(hours=1)),
        "start_at": iso(now + timedelta(hours=2)),
        "end_at": iso(now + timedelta(hours=3)),
    }, headers=org_headers)
    assert created.status_code == 201
    event_id = created.json()["id"]

    published = client.post(f"/organizer/events/{event_id}/publish", headers=org_headers)
    assert published.json()["status"] == "published"

    registered = client.post(f"/participant/events/{event_id}/register", json={},
                             headers=auth_headers(participant))
    assert registered.status_code == 201

    export = client.get(f"/organizer/events/{event_id}/participants/export", headers=org_headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert 'filename="Code_Golf_participants.csv"' in export.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(export.text)))
    assert len(rows) == 1
    assert rows[0]["Email"] == participant.email
    assert rows[0]["Status"] == "registered"
