import pytest

from turnproxy.plan import (
    DEFAULT_MAX_WORKER_RESTARTS,
    DEFAULT_WORKER_RESTART_BACKOFF,
    SessionConfig,
    TransportMode,
    build_session_plan,
    build_transport_plan,
)
from turnproxy.transport_types import PeerMode, TURNMode


@pytest.mark.parametrize(
    "mode, use_dtls, bind_target, want_mode, want_turn, want_peer, want_bind",
    [
        (TransportMode.AUTO, True, "", TransportMode.UDP, TURNMode.UDP, PeerMode.DTLS, ""),
        (TransportMode.TCP, True, "", TransportMode.TCP, TURNMode.TCP, PeerMode.DTLS, ""),
        (TransportMode.UDP, False, "", TransportMode.UDP, TURNMode.UDP, PeerMode.PLAIN, ""),
        (
            TransportMode.TCP,
            False,
            "127.0.0.1",
            TransportMode.TCP,
            TURNMode.TCP,
            PeerMode.PLAIN,
            "127.0.0.1",
        ),
    ],
    ids=["auto-dtls", "tcp-dtls", "udp-plain", "tcp-plain-with-bind"],
)
def test_build_transport_plan_supports_expanded_matrix(
    mode, use_dtls, bind_target, want_mode, want_turn, want_peer, want_bind
):
    plan = build_transport_plan(
        SessionConfig(connections=1, mode=mode, use_dtls=use_dtls, bind_interface=bind_target)
    )
    assert plan.mode == want_mode
    assert plan.turn_mode == want_turn
    assert plan.peer_mode == want_peer
    got_bind = "" if plan.bind_ip is None else str(plan.bind_ip)
    assert got_bind == want_bind


def test_build_transport_plan_rejects_non_ip_bind_interface():
    with pytest.raises(ValueError, match="expected literal IP address"):
        build_transport_plan(
            SessionConfig(connections=1, mode=TransportMode.UDP, use_dtls=True, bind_interface="eth0")
        )


def test_build_transport_plan_rejects_unknown_mode():
    with pytest.raises(ValueError, match="unsupported transport mode"):
        build_transport_plan(SessionConfig(mode="quic"))


def test_build_transport_plan_accepts_mode_as_string():
    assert build_transport_plan(SessionConfig(mode="tcp")).turn_mode == TURNMode.TCP


def test_build_session_plan_carries_supervision_policy():
    plan = build_session_plan(
        SessionConfig(connections=3, mode=TransportMode.UDP, use_dtls=True),
        restart_backoff=50,
        max_worker_restarts=2,
    )
    assert plan.connections == 3
    assert plan.restart_backoff == 50
    assert plan.max_worker_restarts == 2
    assert plan.transport.turn_mode == TURNMode.UDP


def test_build_session_plan_uses_defaults_for_non_positive_overrides():
    plan = build_session_plan(
        SessionConfig(connections=2, mode=TransportMode.UDP),
        restart_backoff=0,
        max_worker_restarts=-1,
    )
    assert plan.restart_backoff == DEFAULT_WORKER_RESTART_BACKOFF == 0.2
    assert plan.max_worker_restarts == DEFAULT_MAX_WORKER_RESTARTS == 1


def test_build_session_plan_propagates_transport_errors():
    with pytest.raises(ValueError):
        build_session_plan(SessionConfig(mode=TransportMode.UDP, bind_interface="eth0"))