"""
Tests for the RemoteSpaceHost protocol handlers.
"""

import asyncio

import pytest

from elements.elements.components.space.loom_types import TimelineContext
from elements.elements.components.uplink.protocol import (
    ConnectRequest, HistoryRequest, ActionRequest, ACTION_SUBMIT_EVENT, sign_agent_id,
)
from host.space_host import RemoteSpaceHost


def _connect(host, token="token_alice", agent_id="alice", space_id="remote_space", push=None, **extra):
    credentials = {"agent_id": agent_id, "token": token, **extra}
    return host.handle_connect(ConnectRequest(agent_credentials=credentials, target_space_id=space_id), push=push)


def _action(session_id, action_data=None, action_type=ACTION_SUBMIT_EVENT, space_id="remote_space"):
    return ActionRequest(space_id=space_id, action_type=action_type,
                         action_data=action_data or {"object_id": "chat", "payload": {"text": "hi"}},
                         session_id=session_id)


class TestConnect:
    """Test suite for credential checks on connect."""

    def test_accepted_connection(self, space_host, remote_space):
        head = remote_space.submit_event("chat", {"text": "x"}, remote_space.context_for()).event_id

        response = _connect(space_host)

        assert response.accepted is True
        assert response.connection_params["head_event_id"] == head
        assert response.connection_params["primary_branch_id"] == "primary"
        assert response.space_summary["space_id"] == "remote_space"
        assert [s.agent_id for s in space_host.sessions_for("remote_space")] == ["alice"]

    @pytest.mark.parametrize("token,agent_id,reason", [
        ("token_missing", "alice", "invalid_token"),
        ("token_alice", "mallory", "invalid_token"),
        ("token_nobody", "nobody", "insufficient_permissions"),
    ])
    def test_rejections(self, space_host, token, agent_id, reason):
        response = _connect(space_host, token=token, agent_id=agent_id)

        assert response.accepted is False
        assert response.reason == reason
        assert space_host.sessions_for("remote_space") == []

    def test_unknown_space(self, space_host):
        response = _connect(space_host, space_id="space_missing")

        assert response.reason == "unknown_space"

    def test_signature_checked_first(self, registry, remote_space):
        host = RemoteSpaceHost(registry, tokens={"token_alice": {"agent_id": "alice", "permissions": ["read"]}},
                               shared_secret="secret")

        unsigned = _connect(host, token="token_missing")
        forged = _connect(host, signature=sign_agent_id("alice", "wrong"))
        signed = _connect(host, signature=sign_agent_id("alice", "secret"))

        assert unsigned.reason == "invalid_signature"
        assert forged.reason == "invalid_signature"
        assert signed.accepted is True
        host.close()

    def test_register_token(self, space_host):
        space_host.register_token("token_new", "newcomer", ["read"])

        assert _connect(space_host, token="token_new", agent_id="newcomer").accepted is True


class TestHistory:
    """Test suite for history paging through the host."""

    def test_requires_session(self, space_host):
        response = space_host.handle_history(HistoryRequest(space_id="remote_space", max_events=5))

        assert response.error == "invalid_token"

    def test_pages_are_capped(self, space_host, remote_space):
        # Setup
        ids = [remote_space.submit_event("chat", {"n": i}, remote_space.context_for()).event_id for i in range(6)]
        session_id = _connect(space_host).session_id

        # Execute
        page = space_host.handle_history(HistoryRequest(space_id="remote_space", max_events=100,
                                                        session_id=session_id))
        rest = space_host.handle_history(HistoryRequest(space_id="remote_space", max_events=100,
                                                        start_from=page.continuation_token, session_id=session_id))

        # Verify
        assert [e.id for e in page.events] == ids[:4]
        assert page.has_more is True
        assert [e.id for e in rest.events] == ids[4:]
        assert rest.has_more is False
        assert rest.head_event_id == ids[-1]

    def test_unknown_start_is_reported(self, space_host, remote_space):
        remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())
        session_id = _connect(space_host).session_id

        response = space_host.handle_history(HistoryRequest(space_id="remote_space", max_events=5,
                                                            start_from="event_missing", session_id=session_id))

        assert response.error is not None
        assert response.events == []

    def test_ended_session(self, space_host):
        session_id = _connect(space_host).session_id

        assert space_host.end_session(session_id) is True
        assert space_host.end_session(session_id) is False
        response = space_host.handle_history(HistoryRequest(space_id="remote_space", max_events=5,
                                                            session_id=session_id))
        assert response.error == "invalid_token"


class TestActions:
    """Test suite for inbound actions."""

    def test_submit_event(self, space_host, remote_space):
        session_id = _connect(space_host).session_id

        response = space_host.handle_action(_action(session_id))

        assert response.ok is True
        assert remote_space.timeline.head("primary") == response.result_id
        assert response.timestamp is not None

    def test_read_only_session(self, space_host):
        session_id = _connect(space_host, token="token_reader", agent_id="reader").session_id

        response = space_host.handle_action(_action(session_id))

        assert response.ok is False
        assert response.error == {"reason": "insufficient_permissions"}

    def test_unsupported_action(self, space_host):
        session_id = _connect(space_host).session_id

        response = space_host.handle_action(_action(session_id, action_type="delete_space"))

        assert response.error["reason"] == "unsupported_action"

    def test_unknown_session(self, space_host):
        response = space_host.handle_action(_action("session_missing"))

        assert response.error == {"reason": "invalid_token"}

    def test_decoherence_is_returned(self, space_host, remote_space):
        remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())
        session_id = _connect(space_host).session_id
        stale = TimelineContext(branch_id="primary", is_primary=True, last_event_id="event_elsewhere",
                                root_branch_id="primary")

        response = space_host.handle_action(_action(session_id, {"object_id": "chat", "payload": {},
                                                                 "timeline_context": stale.to_dict()}))

        assert response.ok is False
        assert response.error["code"] == "STALE_CONTEXT"


class TestBroadcast:
    """Test suite for pushing appended events to sessions."""

    def test_only_primary_appends_are_broadcast(self, space_host, remote_space):
        # Setup
        remote_space.submit_event("chat", {"n": 0}, remote_space.context_for())
        pushed = []
        _connect(space_host, push=pushed.append)

        # Execute
        primary_id = remote_space.submit_event("chat", {"n": 1}, remote_space.context_for()).event_id
        fork_context = remote_space.fork(remote_space.context_for())
        remote_space.submit_event("chat", {"n": 2}, fork_context)

        # Verify
        assert [m.event.id for m in pushed] == [primary_id]
        assert pushed[0].space_id == "remote_space"

    def test_failing_push_does_not_block_writer(self, space_host, remote_space):
        def broken(message):
            raise RuntimeError("socket gone")

        received = []
        _connect(space_host, push=broken)
        _connect(space_host, push=received.append)

        result = remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())

        assert [m.event.id for m in received] == [result.event_id]

    @pytest.mark.asyncio
    async def test_coroutine_push_is_scheduled(self, space_host, remote_space):
        received = []

        async def push(message):
            received.append(message.event.id)

        _connect(space_host, push=push)
        result = remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())
        for _ in range(3):
            await asyncio.sleep(0)

        assert received == [result.event_id]

    @pytest.mark.asyncio
    async def test_drain_waits_for_pushes_in_flight(self, space_host, remote_space):
        # Setup
        released = asyncio.Event()
        received = []

        async def slow_push(message):
            await released.wait()
            received.append(message.event.id)

        _connect(space_host, push=slow_push)
        result = remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())
        await asyncio.sleep(0)
        assert received == []

        # Execute
        drain = asyncio.ensure_future(space_host.drain())
        released.set()
        await drain

        # Verify
        assert received == [result.event_id]

    @pytest.mark.asyncio
    async def test_failed_coroutine_push_is_logged(self, space_host, remote_space, caplog):
        async def broken(message):
            raise RuntimeError("socket gone")

        _connect(space_host, push=broken)
        remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())
        with caplog.at_level("ERROR"):
            await space_host.drain()

        assert "socket gone" in caplog.text

    def test_close_detaches_listeners(self, space_host, remote_space):
        pushed = []
        _connect(space_host, push=pushed.append)

        space_host.close()
        remote_space.submit_event("chat", {"n": 1}, remote_space.context_for())

        assert pushed == []
        assert space_host.sessions_for("remote_space") == []
