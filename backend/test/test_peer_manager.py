"""PeerConnectionManager 협상 및 송신 트랙 관리 테스트."""

import asyncio

import pytest
from aiortc import RTCConfiguration, RTCPeerConnection

from meshcall.signaling import schemas
from meshcall.webrtc.peer_link import LinkState
from meshcall.webrtc.peer_manager import PeerConnectionManager

REMOTE = "remote-participant-1"
OFFER = {"type": "offer", "sdp": "v=0 remote offer"}
ANSWER = {"type": "answer", "sdp": "v=0 remote answer"}


def candidate(port: int) -> dict:
    return {"candidate": f"candidate:1 1 udp 2130706431 10.0.0.2 {port} typ host", "sdpMid": "0", "sdpMLineIndex": 0}


class RemoteTrack:
    kind = "video"


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
async def manager(media, signals, pc_factory):
    manager = PeerConnectionManager(media, signals, pc_factory=pc_factory, negotiation_timeout=0)
    yield manager
    await manager.close_all()


async def test_ensure_link_is_idempotent(manager, pc_factory):
    link = manager.ensure_link(REMOTE)
    assert manager.ensure_link(REMOTE) is link
    assert len(pc_factory.created) == 1


async def test_create_offer_sends_offer_with_one_track_per_kind(manager, signals):
    await manager.create_offer(REMOTE)

    link = manager.get_link(REMOTE)
    assert link.state == LinkState.HAVE_LOCAL_OFFER
    assert sorted(link.pc.sender_kinds()) == ["audio", "video"]

    (offer,) = signals.of_type(schemas.OFFER)
    assert offer["to"] == REMOTE
    assert offer["sdp"]["type"] == "offer"


async def test_answer_completes_negotiation(manager):
    await manager.create_offer(REMOTE)
    await manager.handle_answer(REMOTE, ANSWER)

    link = manager.get_link(REMOTE)
    assert link.state == LinkState.CONNECTED
    assert link.pc.remoteDescription.type == "answer"


async def test_handle_offer_replies_with_answer(manager, signals):
    await manager.handle_offer(REMOTE, OFFER)

    link = manager.get_link(REMOTE)
    assert link.state == LinkState.CONNECTED
    assert sorted(link.pc.sender_kinds()) == ["audio", "video"]
    (answer,) = signals.of_type(schemas.ANSWER)
    assert answer == {"to": REMOTE, "sdp": {"type": "answer", "sdp": link.pc.localDescription.sdp}}


async def test_repeated_offers_never_duplicate_tracks(manager, signals):
    await manager.handle_offer(REMOTE, OFFER)
    await manager.handle_offer(REMOTE, OFFER)
    await manager.create_offer(REMOTE)
    await manager.handle_answer(REMOTE, ANSWER)

    link = manager.get_link(REMOTE)
    assert len(link.pc.senders) == 2
    assert len(signals.of_type(schemas.ANSWER)) == 2
    assert link.state == LinkState.CONNECTED


async def test_answer_in_wrong_state_is_ignored(manager):
    manager.ensure_link(REMOTE)
    await manager.handle_answer(REMOTE, ANSWER)

    link = manager.get_link(REMOTE)
    assert link.state == LinkState.NEW
    assert link.pc.remoteDescription is None


async def test_offer_during_own_offer_is_dropped(manager, signals):
    await manager.create_offer(REMOTE)
    await manager.handle_offer(REMOTE, OFFER)

    assert manager.get_link(REMOTE).state == LinkState.HAVE_LOCAL_OFFER
    assert signals.of_type(schemas.ANSWER) == []


async def test_invalid_offer_is_dropped(manager, signals):
    await manager.handle_offer(REMOTE, {"type": "bogus", "sdp": ""})
    await manager.handle_offer(REMOTE, "not a description")

    assert manager.get_link(REMOTE).state == LinkState.NEW
    assert signals.of_type(schemas.ANSWER) == []


async def test_rejected_remote_description_is_local(manager, pc_factory, signals):
    link = manager.ensure_link(REMOTE)
    link.pc.reject_remote = True

    await manager.handle_offer(REMOTE, OFFER)

    assert link.state == LinkState.NEW
    assert signals.of_type(schemas.ANSWER) == []


async def test_candidates_buffered_until_remote_description(manager):
    await manager.create_offer(REMOTE)
    link = manager.get_link(REMOTE)

    await manager.add_ice_candidate(REMOTE, candidate(5001))
    await manager.add_ice_candidate(REMOTE, candidate(5002))
    assert link.pc.added_candidates == []
    assert len(link.pending_candidates) == 2

    await manager.handle_answer(REMOTE, ANSWER)
    await manager.add_ice_candidate(REMOTE, candidate(5003))

    assert [c.port for c in link.pc.added_candidates] == [5001, 5002, 5003]
    assert link.pending_candidates == []


async def test_bad_candidates_are_dropped(manager):
    await manager.handle_offer(REMOTE, OFFER)
    link = manager.get_link(REMOTE)

    await manager.add_ice_candidate(REMOTE, {"candidate": "candidate:nonsense"})
    await manager.add_ice_candidate(REMOTE, {"candidate": ""})
    await manager.add_ice_candidate("unknown", candidate(5000))

    assert link.pc.added_candidates == []
    assert link.state == LinkState.CONNECTED


async def test_screen_share_replaces_video_on_every_link(manager, media):
    for remote in ("p1", "p2", "p3"):
        await manager.handle_offer(remote, OFFER)
    camera = media.camera_track

    await media.start_screen_share()
    screen = media.screen_track

    for remote in ("p1", "p2", "p3"):
        link = manager.get_link(remote)
        assert manager.outbound_source(remote, "video") is screen
        assert len(link.pc.senders) == 2

    media.stop_screen_share()
    for remote in ("p1", "p2", "p3"):
        assert manager.outbound_source(remote, "video") is camera
        assert manager.outbound_source(remote, "audio") is media.audio_track


async def test_link_created_during_screen_share_gets_screen(manager, media):
    await media.start_screen_share()
    await manager.create_offer(REMOTE)

    assert manager.outbound_source(REMOTE, "video") is media.screen_track


async def test_each_link_gets_its_own_proxy(manager, media):
    await manager.handle_offer("p1", OFFER)
    await manager.handle_offer("p2", OFFER)

    video_p1 = [s.track for s in manager.get_link("p1").pc.senders if s.track.kind == "video"]
    video_p2 = [s.track for s in manager.get_link("p2").pc.senders if s.track.kind == "video"]
    assert video_p1[0] is not video_p2[0]
    assert video_p1[0] is not media.camera_track


async def test_remote_track_and_state_events(manager):
    received, failures = [], []

    async def on_track(participant_id, track):
        received.append((participant_id, track))

    async def on_failed(participant_id, failure):
        failures.append(failure)

    manager.on_remote_track_callback = on_track
    manager.on_link_failed_callback = on_failed
    await manager.handle_offer(REMOTE, OFFER)
    link = manager.get_link(REMOTE)

    remote_track = RemoteTrack()
    link.pc.emit("track", remote_track)
    link.pc.connectionState = "failed"
    link.pc.emit("connectionstatechange")
    await settle()

    assert received == [(REMOTE, remote_track)]
    assert link.state == LinkState.FAILED
    assert failures[0].participant_id == REMOTE


async def test_local_candidates_are_signaled(manager, signals):
    from meshcall.webrtc.peer_link import parse_candidate

    await manager.handle_offer(REMOTE, OFFER)
    link = manager.get_link(REMOTE)
    link.pc.emit("icecandidate", parse_candidate(candidate(6000)))
    link.pc.emit("icecandidate", None)
    await settle()

    (sent,) = signals.of_type(schemas.ICE_CANDIDATE)
    assert sent["to"] == REMOTE
    assert "10.0.0.2 6000" in sent["candidate"]["candidate"]


async def test_negotiation_timeout_fails_link(media, signals, pc_factory):
    manager = PeerConnectionManager(media, signals, pc_factory=pc_factory, negotiation_timeout=0.05)
    await manager.create_offer(REMOTE)

    await asyncio.sleep(0.2)

    assert manager.get_link(REMOTE).state == LinkState.FAILED
    await manager.close_all()


async def test_close_link_is_idempotent(manager, pc_factory):
    closed = []

    async def on_closed(participant_id):
        closed.append(participant_id)

    manager.on_link_closed_callback = on_closed
    await manager.handle_offer(REMOTE, OFFER)
    link = manager.get_link(REMOTE)

    await manager.close_link(REMOTE)
    await manager.close_link(REMOTE)

    assert closed == [REMOTE]
    assert link.state == LinkState.CLOSED
    assert link.pc.closed
    assert manager.get_link(REMOTE) is None
    await settle()
    assert not link.tasks


async def test_close_during_negotiation_discards_result(manager, signals):
    link = manager.ensure_link(REMOTE)
    gate = asyncio.Event()
    original = link.pc.setRemoteDescription

    async def slow_set_remote(description):
        await gate.wait()
        await original(description)

    link.pc.setRemoteDescription = slow_set_remote
    task = link.spawn(manager.handle_offer(REMOTE, OFFER))
    await settle()

    await manager.close_link(REMOTE)
    await settle()

    assert task.cancelled() or task.done()
    assert signals.of_type(schemas.ANSWER) == []


async def test_real_peer_connection_keeps_one_sender_per_kind(media, signals):
    manager = PeerConnectionManager(
        media, signals,
        pc_factory=lambda: RTCPeerConnection(configuration=RTCConfiguration(iceServers=[])),
        negotiation_timeout=0,
    )
    await manager.create_offer(REMOTE)
    link = manager.get_link(REMOTE)

    await media.start_screen_share()
    media.stop_screen_share()
    manager._attach_outbound_tracks(link)

    kinds = sorted(sender.track.kind for sender in link.pc.getSenders())
    assert kinds == ["audio", "video"]
    sdp = signals.of_type(schemas.OFFER)[0]["sdp"]["sdp"]
    assert sdp.count("m=audio") == 1
    assert sdp.count("m=video") == 1

    await manager.close_all()


async def test_no_new_links_after_close_all_until_reopen(manager, pc_factory):
    await manager.handle_offer("p1", OFFER)
    await manager.close_all()

    assert manager.ensure_link("p2") is None
    await manager.handle_offer("p2", OFFER)
    await manager.create_offer("p3")
    assert manager.links == {}
    assert len(pc_factory.created) == 1

    manager.reopen()
    assert manager.ensure_link("p2") is not None
    assert len(pc_factory.created) == 2
