import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth_headers
from dependencies import create_access_token
from errors import ForbiddenError, ValidationError
from models import EventStatus
from services import forum, registrations


@pytest.fixture
def event(make_event, organizer):
    return make_event(organizer)


@pytest.fixture
def member(db, event, participant, notifier):
    registrations.register(db, event, participant, notifier)
    return participant


def messages_url(event):
    return f"/forum/{event.id}/messages"


class TestPosting:
    def test_registered_participant_posts(self, client, event, member):
        response = client.post(messages_url(event), json={"content": "  Is there parking?  "},
                               headers=auth_headers(member))

        assert response.status_code == 201
        body = response.json()
        assert body["content"] == "Is there parking?"
        assert body["author"]["id"] == member.id
        assert body["author"]["display_name"] == "Asha Rao"
        assert body["is_announcement"] is False

    def test_unregistered_participant_is_forbidden(self, client, event, make_participant):
        response = client.post(messages_url(event), json={"content": "hi"}, headers=auth_headers(make_participant()))
        assert response.status_code == 403

    def test_other_organizer_is_forbidden(self, client, event, make_organizer):
        response = client.post(messages_url(event), json={"content": "hi"}, headers=auth_headers(make_organizer()))
        assert response.status_code == 403

    def test_admin_may_post(self, client, event, admin):
        response = client.post(messages_url(event), json={"content": "Moderator here"}, headers=auth_headers(admin))
        assert response.status_code == 201

    def test_content_rules(self, db, event, member):
        with pytest.raises(ValidationError, match="required"):
            forum.post_message(db, event.id, member, "   ")
        with pytest.raises(ValidationError, match="too long"):
            forum.post_message(db, event.id, member, "x" * 2001)
        assert forum.post_message(db, event.id, member, "x" * 2000).id

    def test_only_owner_makes_announcements(self, db, event, organizer, member):
        announcement = forum.post_message(db, event.id, organizer, "Venue changed", is_announcement=True)
        attempt = forum.post_message(db, event.id, member, "Me too", is_announcement=True)
        assert announcement.is_announcement is True
        assert attempt.is_announcement is False

    def test_replies_attach_to_thread_root(self, db, event, organizer, member):
        root = forum.post_message(db, event.id, organizer, "Welcome!")
        reply = forum.post_message(db, event.id, member, "Thanks", parent_id=root.id)
        nested = forum.post_message(db, event.id, organizer, "Anytime", parent_id=reply.id)
        assert reply.parent_id == root.id
        assert nested.parent_id == root.id

    def test_draft_forum_is_not_found(self, client, make_event, organizer):
        draft = make_event(organizer, status=EventStatus.DRAFT)
        response = client.get(messages_url(draft), headers=auth_headers(organizer))
        assert response.status_code == 404


class TestModeration:
    def test_list_puts_pinned_first(self, client, db, event, organizer, member):
        first = forum.post_message(db, event.id, member, "first")
        forum.post_message(db, event.id, member, "second")
        headers = auth_headers(organizer)

        pinned = client.patch(f"{messages_url(event)}/{first.id}/pin", headers=headers)
        listing = client.get(messages_url(event), headers=headers).json()

        assert pinned.json()["is_pinned"] is True
        assert listing["total"] == 2
        # Page is oldest-first, built from pinned-then-newest
        assert [m["content"] for m in listing["messages"]] == ["second", "first"]

    def test_participant_cannot_pin(self, client, db, event, member):
        message = forum.post_message(db, event.id, member, "pin me")
        response = client.patch(f"{messages_url(event)}/{message.id}/pin", headers=auth_headers(member))
        assert response.status_code == 403

    def test_soft_delete(self, client, db, event, organizer, member, make_participant, notifier):
        message = forum.post_message(db, event.id, member, "oops")
        other = make_participant()
        registrations.register(db, event, other, notifier)

        assert client.delete(f"{messages_url(event)}/{message.id}", headers=auth_headers(other)).status_code == 403
        assert client.delete(f"{messages_url(event)}/{message.id}", headers=auth_headers(member)).status_code == 200
        assert client.get(messages_url(event), headers=auth_headers(organizer)).json()["total"] == 0
        db.refresh(message)
        assert message.is_deleted is True
        assert message.deleted_by == member.id

    def test_organizer_deletes_any_message(self, db, event, organizer, member):
        message = forum.post_message(db, event.id, member, "spam")
        forum.delete_message(db, event.id, message.id, organizer)
        assert message.is_deleted is True


class TestReactions:
    def test_toggle_on_and_off(self, client, db, event, organizer, member):
        message = forum.post_message(db, event.id, organizer, "Tickets are live")
        url = f"{messages_url(event)}/{message.id}/reactions"
        headers = auth_headers(member)

        on = client.post(url, json={"emoji": "🎉"}, headers=headers)
        off = client.post(url, json={"emoji": "🎉"}, headers=headers)

        assert on.json()["reactions"] == [{"user_id": member.id, "emoji": "🎉"}]
        assert off.json()["reactions"] == []

    def test_unknown_emoji(self, db, event, organizer, member):
        message = forum.post_message(db, event.id, organizer, "hello")
        with pytest.raises(ValidationError):
            forum.toggle_reaction(db, event.id, message.id, member, "🦄")

    def test_ensure_can_post_for_non_member(self, db, event, make_participant):
        with pytest.raises(ForbiddenError):
            forum.ensure_can_post(db, event, make_participant())


class TestSocket:
    def connect(self, client, account):
        return client.websocket_connect(f"/forum/ws?token={create_access_token(account)}")

    def test_rejects_missing_or_bad_token(self, client):
        for url in ("/forum/ws", "/forum/ws?token=garbage"):
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(url) as ws:
                    ws.receive_json()
            assert exc.value.code == 1008

    def test_join_send_and_ping(self, client, event, member):
        with self.connect(client, member) as ws:
            assert ws.receive_json()["type"] == "connection"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "join", "event_id": event.id})
            assert ws.receive_json() == {"type": "joined", "event_id": event.id}

            ws.send_json({"type": "send_message", "event_id": event.id, "content": "Hello from the socket"})
            frame = ws.receive_json()
            assert frame["type"] == "new_message"
            assert frame["message"]["content"] == "Hello from the socket"
            message_id = frame["message"]["id"]

            ws.send_json({"type": "toggle_reaction", "event_id": event.id, "message_id": message_id, "emoji": "👍"})
            frame = ws.receive_json()
            assert frame == {
                "type": "reaction_updated",
                "message_id": message_id,
                "reactions": [{"user_id": member.id, "emoji": "👍"}],
            }

    def test_rest_writes_are_mirrored_to_room(self, client, event, organizer, member):
        with self.connect(client, member) as ws:
            ws.receive_json()
            ws.send_json({"type": "join", "event_id": event.id})
            ws.receive_json()

            posted = client.post(messages_url(event), json={"content": "Doors open at 6"},
                                 headers=auth_headers(organizer)).json()
            assert ws.receive_json()["message"]["id"] == posted["id"]

            client.patch(f"{messages_url(event)}/{posted['id']}/pin", headers=auth_headers(organizer))
            assert ws.receive_json() == {"type": "message_pinned", "message_id": posted["id"], "is_pinned": True}

            client.delete(f"{messages_url(event)}/{posted['id']}", headers=auth_headers(organizer))
            assert ws.receive_json() == {"type": "message_deleted", "message_id": posted["id"]}

    def test_errors_are_sent_as_frames(self, client, event, make_participant):
        outsider = make_participant()
        with self.connect(client, outsider) as ws:
            ws.receive_json()

            ws.send_json({"type": "send_message", "event_id": event.id, "content": "let me in"})
            assert ws.receive_json() == {
                "type": "error",
                "detail": "You must be registered for this event to post in the forum",
            }

            ws.send_json({"type": "join"})
            assert ws.receive_json() == {"type": "error", "detail": "event_id is required"}

            ws.send_json({"type": "shout", "event_id": event.id})
            assert ws.receive_json()["type"] == "error"

    def test_malformed_frames_keep_connection_open(self, client, event, member):
        with self.connect(client, member) as ws:
            ws.receive_json()

            ws.send_json({"type": "send_message", "event_id": event.id, "content": 5})
            assert ws.receive_json() == {"type": "error", "detail": "Invalid content: Input should be a valid string"}

            ws.send_json({"type": "toggle_reaction", "event_id": event.id, "message_id": "first", "emoji": "👍"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["detail"].startswith("Invalid message_id")

            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "detail": "Frames must be valid JSON"}

            ws.send_json(["join", event.id])
            assert ws.receive_json() == {"type": "error", "detail": "Frames must be JSON objects"}

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "join", "event_id": event.id})
            ws.receive_json()
            ws.send_json({"type": "send_message", "event_id": event.id, "content": "still here"})
            assert ws.receive_json()["message"]["content"] == "still here"

    def test_leave_stops_delivery(self, client, event, organizer, member):
        with self.connect(client, member) as ws:
            ws.receive_json()
            ws.send_json({"type": "join", "event_id": event.id})
            ws.receive_json()
            ws.send_json({"type": "leave", "event_id": event.id})
            assert ws.receive_json() == {"type": "left", "event_id": event.id}

            client.post(messages_url(event), json={"content": "Nobody hears this"}, headers=auth_headers(organizer))
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
