"""Tests for the relay envelope and typed inbound events."""

import json

import pytest

from chatroom_rtc.exceptions import ProtocolError
from chatroom_rtc.protocol import (
    EVT_ERROR,
    EVT_NEW_MESSAGE,
    EVT_USER_JOINED,
    EVT_USER_JOINED_CALL,
    EVT_USER_MEDIA_STATE_CHANGED,
    EVT_USER_TYPING,
    EVT_WEBRTC_ANSWER,
    EVT_WEBRTC_ICE_CANDIDATE,
    EVT_WEBRTC_OFFER,
    KIND_TEXT,
    CallMembership,
    IceCandidate,
    MediaState,
    NewMessage,
    RelayError,
    RosterSnapshot,
    SessionDescription,
    UserTyping,
    build_envelope,
    parse_envelope,
    parse_event,
)


class TestEnvelope:
    """Tests for build_envelope / parse_envelope."""

    def test_type_sits_beside_payload(self):
        raw = build_envelope("join-room", {"roomId": "R1", "userId": "alice"})
        assert json.loads(raw) == {"type": "join-room", "roomId": "R1", "userId": "alice"}

    def test_parse_splits_event_from_payload(self):
        event, payload = parse_envelope('{"type": "user-typing", "userId": "bob", "isTyping": true}')
        assert event == "user-typing"
        assert payload == {"userId": "bob", "isTyping": True}

    def test_parse_accepts_bytes(self):
        event, payload = parse_envelope(b'{"type": "error", "message": "nope"}')
        assert (event, payload) == ("error", {"message": "nope"})

    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", '{"roomId": "R1"}', '{"type": 7}', None],
    )
    def test_malformed_frames_raise(self, raw):
        with pytest.raises(ProtocolError):
            parse_envelope(raw)


class TestParseEvent:
    """Tests for parse_event typed variants."""

    def test_roster_snapshot(self):
        event = parse_event(
            EVT_USER_JOINED,
            {"roomId": "R1", "userId": "bob", "userCount": 2, "users": ["alice", "bob"]},
        )
        assert event == RosterSnapshot(EVT_USER_JOINED, "R1", "bob", 2, ("alice", "bob"))

    def test_roster_snapshot_requires_users(self):
        with pytest.raises(ProtocolError, match="users"):
            parse_event(EVT_USER_JOINED, {"roomId": "R1", "userId": "bob"})

    def test_new_message_defaults(self):
        event = parse_event(EVT_NEW_MESSAGE, {"roomId": "R1", "userId": "a", "message": "hi"})
        assert event == NewMessage("R1", "a", "hi", KIND_TEXT, None, None)

    def test_typing_and_media_coerce_flags(self):
        assert parse_event(EVT_USER_TYPING, {"userId": "b", "isTyping": 1}) == UserTyping("b", True)
        assert parse_event(
            EVT_USER_MEDIA_STATE_CHANGED, {"userId": "b", "isVideoOn": 0, "isAudioOn": "yes"}
        ) == MediaState("b", False, True)

    def test_call_membership(self):
        event = parse_event(EVT_USER_JOINED_CALL, {"roomId": "R1", "userId": "b"})
        assert event == CallMembership(EVT_USER_JOINED_CALL, "R1", "b")

    def test_offer_with_description_object(self):
        event = parse_event(
            EVT_WEBRTC_OFFER,
            {
                "roomId": "R1",
                "fromUserId": "a",
                "toUserId": "b",
                "sdp": {"type": "offer", "sdp": "v=0"},
            },
        )
        assert event == SessionDescription(EVT_WEBRTC_OFFER, "R1", "a", "b", "offer", "v=0")

    def test_answer_with_bare_string(self):
        event = parse_event(
            EVT_WEBRTC_ANSWER,
            {"roomId": "R1", "fromUserId": "a", "toUserId": "b", "sdp": "v=0"},
        )
        assert event.sdp_type == "answer"
        assert event.sdp == "v=0"

    def test_description_without_sdp_rejected(self):
        with pytest.raises(ProtocolError):
            parse_event(
                EVT_WEBRTC_OFFER,
                {"roomId": "R1", "fromUserId": "a", "toUserId": "b", "sdp": {"type": "offer"}},
            )

    def test_bare_candidate_string_wrapped(self):
        event = parse_event(
            EVT_WEBRTC_ICE_CANDIDATE,
            {"roomId": "R1", "fromUserId": "a", "toUserId": "b", "candidate": "candidate:1"},
        )
        assert isinstance(event, IceCandidate)
        assert event.candidate == {"candidate": "candidate:1", "sdpMid": None, "sdpMLineIndex": None}

    def test_error_event(self):
        assert parse_event(EVT_ERROR, {}) == RelayError("unknown error")

    def test_unknown_event_returns_none(self):
        assert parse_event("room-archived", {"roomId": "R1"}) is None
