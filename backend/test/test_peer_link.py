"""PeerLink 상태 전이 및 ICE candidate 변환 테스트."""

import pytest

from conftest import FakePeerConnection
from meshcall.errors import NegotiationError
from meshcall.webrtc.peer_link import LinkState, PeerLink, candidate_to_dict, parse_candidate

HOST_CANDIDATE = "candidate:842163049 1 udp 1677729535 192.168.0.10 54400 typ host"


def test_parse_browser_candidate():
    candidate = parse_candidate({"candidate": HOST_CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0})

    assert candidate.ip == "192.168.0.10"
    assert candidate.port == 54400
    assert candidate.protocol == "udp"
    assert candidate.type == "host"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


def test_parse_plain_string_defaults_mline_index():
    candidate = parse_candidate(HOST_CANDIDATE[len("candidate:"):])
    assert candidate.sdpMLineIndex == 0
    assert candidate.sdpMid is None


@pytest.mark.parametrize("payload", [None, "", {"candidate": ""}, {"candidate": None}])
def test_end_of_candidates_is_none(payload):
    assert parse_candidate(payload) is None


@pytest.mark.parametrize("payload", ["garbage", {"candidate": "candidate:1 1 udp"}, 42, {"candidate": 7}])
def test_malformed_candidate_raises(payload):
    with pytest.raises(NegotiationError):
        parse_candidate(payload)


def test_candidate_to_dict_keeps_browser_prefix():
    candidate = parse_candidate({"candidate": HOST_CANDIDATE, "sdpMid": "1", "sdpMLineIndex": 1})
    data = candidate_to_dict(candidate)

    assert data["candidate"].startswith("candidate:842163049 1 udp")
    assert data["sdpMid"] == "1"
    assert data["sdpMLineIndex"] == 1
    assert parse_candidate(data).ip == candidate.ip


async def test_closed_is_terminal():
    link = PeerLink("remote-participant", FakePeerConnection())
    link.transition(LinkState.HAVE_LOCAL_OFFER)
    link.transition(LinkState.CLOSED)
    link.transition(LinkState.CONNECTED)

    assert link.state == LinkState.CLOSED
    assert link.closed
    assert not link.active


async def test_failed_only_moves_to_closed():
    link = PeerLink("remote-participant", FakePeerConnection())
    link.transition(LinkState.FAILED)
    link.transition(LinkState.CONNECTED)
    assert link.state == LinkState.FAILED

    link.transition(LinkState.CLOSED)
    assert link.state == LinkState.CLOSED


async def test_events_ignored_after_close():
    link = PeerLink("remote-participant", FakePeerConnection())
    link.push_event("track", None)
    link.transition(LinkState.CLOSED)
    link.push_event("track", None)

    assert link.events.qsize() == 1
