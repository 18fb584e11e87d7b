"""
Tests for the communication mesh and protocol dispatch.

Covers: registry, send/receive ordering, trust-derived confidence, channels,
bounded mailboxes, transports, protocol router.
"""

from __future__ import annotations

import dataclasses

import pytest

from collective.errors import CapacityError, UnknownAgentError, ValidationError
from collective.mesh import (
    CommunicationMesh,
    MessageType,
    Protocol,
    ProtocolRouter,
    RecordingTransport,
    Transport,
)


# ═══════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════


class TestRegistry:
    def test_register_and_lookup(self, mesh):
        assert [a.agent_id for a in mesh.agents()] == ["alice", "bob"]
        assert mesh.get_agent("alice").capabilities == frozenset({"code"})
        assert mesh.is_registered("bob")
        assert not mesh.is_registered("carol")

    def test_reregister_replaces_capabilities(self, mesh):
        mesh.register("alice", ["code", "review"])
        assert mesh.get_agent("alice").capabilities == frozenset({"code", "review"})

    def test_unregister_discards_mailbox(self, mesh):
        mesh.send("alice", "bob", MessageType.QUERY)
        assert mesh.unregister("bob")
        assert not mesh.unregister("bob")
        with pytest.raises(UnknownAgentError):
            mesh.receive("bob")

    def test_empty_agent_id_rejected(self, mesh):
        with pytest.raises(ValidationError):
            mesh.register("")


# ═══════════════════════════════════════════════════════════════════════════
# MESSAGING
# ═══════════════════════════════════════════════════════════════════════════


class TestSendReceive:
    def test_fifo_per_pair_and_drain(self, mesh):
        sent = [mesh.send("alice", "bob", MessageType.QUERY, {"n": i}) for i in range(3)]
        received = mesh.receive("bob")
        assert [m.id for m in received] == [m.id for m in sent]
        assert [m.payload["n"] for m in received] == [0, 1, 2]
        assert mesh.receive("bob") == []

    def test_confidence_tracks_trust(self, mesh, ledger):
        first = mesh.send("alice", "bob", MessageType.QUERY)
        assert first.confidence == pytest.approx(0.75)
        ledger.update("alice", "bob", True)
        second = mesh.send("alice", "bob", MessageType.QUERY)
        assert second.confidence == pytest.approx(0.775)

    def test_confidence_uses_sender_direction(self, mesh, ledger):
        ledger.update("bob", "alice", False)
        message = mesh.send("alice", "bob", MessageType.QUERY)
        assert message.confidence == pytest.approx(0.75)

    @pytest.mark.parametrize(
        "message_type, expected",
        [
            (MessageType.QUERY, True),
            (MessageType.NEGOTIATE, True),
            (MessageType.RESPONSE, False),
            (MessageType.BROADCAST, False),
        ],
    )
    def test_requires_response(self, mesh, message_type, expected):
        assert mesh.send("alice", "bob", message_type).requires_response is expected

    def test_string_type_and_protocol_coerced(self, mesh):
        message = mesh.send("alice", "bob", "query", protocol="task")
        assert message.type is MessageType.QUERY
        assert message.protocol is Protocol.TASK

    def test_unknown_recipient_leaves_no_trace(self, mesh):
        with pytest.raises(UnknownAgentError) as exc:
            mesh.send("alice", "zed", MessageType.QUERY)
        assert exc.value.agent_id == "zed"
        assert mesh.stats()["messages_sent"] == 0
        assert mesh.channel_stats("alice", "zed") is None
        assert mesh.pending("alice") == 0

    def test_unknown_sender_rejected(self, mesh):
        with pytest.raises(UnknownAgentError):
            mesh.send("zed", "bob", MessageType.QUERY)
        assert mesh.pending("bob") == 0

    def test_self_message_rejected(self, mesh):
        with pytest.raises(ValidationError):
            mesh.send("alice", "alice", MessageType.QUERY)

    def test_bad_type_rejected(self, mesh):
        with pytest.raises(ValidationError):
            mesh.send("alice", "bob", "shout")
        with pytest.raises(ValidationError):
            mesh.send("alice", "bob", MessageType.QUERY, protocol="gossip")

    def test_non_mapping_payload_rejected(self, mesh):
        with pytest.raises(ValidationError):
            mesh.send("alice", "bob", MessageType.QUERY, ["not", "a", "mapping"])

    def test_payload_is_copied_and_read_only(self, mesh):
        payload = {"items": [1, 2]}
        message = mesh.send("alice", "bob", MessageType.QUERY, payload)
        payload["items"].append(3)
        assert message.payload["items"] == [1, 2]
        with pytest.raises(TypeError):
            message.payload["extra"] = True  # type: ignore[index]

    def test_messages_are_frozen(self, mesh):
        message = mesh.send("alice", "bob", MessageType.QUERY)
        with pytest.raises(AttributeError):
            message.confidence = 1.0  # type: ignore[misc]

    def test_to_dict(self, mesh):
        message = mesh.send("alice", "bob", MessageType.QUERY, {"q": 1}, protocol=Protocol.TASK)
        data = message.to_dict()
        assert data["type"] == "query"
        assert data["protocol"] == "task"
        assert data["payload"] == {"q": 1}
        assert set(data) == {f.name for f in dataclasses.fields(message)}


class TestChannels:
    def test_created_lazily_and_symmetric(self, mesh, clock):
        assert mesh.channel_stats("alice", "bob") is None
        mesh.send("alice", "bob", MessageType.QUERY)
        clock.advance(3)
        mesh.send("bob", "alice", MessageType.RESPONSE)
        channel = mesh.channel_stats("bob", "alice")
        assert channel.agents == ("alice", "bob")
        assert channel.message_count == 2
        assert channel.last_activity == clock.now
        assert len(mesh.channels()) == 1

    def test_stats(self, mesh):
        mesh.send("alice", "bob", MessageType.QUERY)
        mesh.send("bob", "alice", MessageType.RESPONSE)
        stats = mesh.stats()
        assert stats["agents"] == 2
        assert stats["channels"] == 1
        assert stats["messages_sent"] == 2
        assert stats["pending"] == 2


class TestCapacity:
    def test_oldest_dropped_when_full(self, ledger):
        mesh = CommunicationMesh(ledger, capacity=2)
        mesh.register("alice")
        mesh.register("bob")
        for i in range(3):
            mesh.send("alice", "bob", MessageType.QUERY, {"n": i})
        assert [m.payload["n"] for m in mesh.receive("bob")] == [1, 2]
        assert mesh.stats()["dropped"] == 1

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_invalid_capacity(self, ledger, capacity):
        with pytest.raises(CapacityError):
            CommunicationMesh(ledger, capacity=capacity)


class TestBroadcast:
    def test_reaches_every_other_agent(self, mesh):
        mesh.register("carol")
        sent = mesh.broadcast("alice", {"note": "hi"}, protocol=Protocol.RESOURCE)
        assert sorted(m.recipient for m in sent) == ["bob", "carol"]
        assert mesh.pending("alice") == 0
        [received] = mesh.receive("carol")
        assert received.type is MessageType.BROADCAST
        assert received.requires_response is False

    def test_unknown_sender(self, mesh):
        with pytest.raises(UnknownAgentError):
            mesh.broadcast("zed")


class TestTransport:
    def test_recording_transport_sees_each_message(self, ledger):
        transport = RecordingTransport()
        assert isinstance(transport, Transport)
        mesh = CommunicationMesh(ledger, transport=transport)
        mesh.register("alice")
        mesh.register("bob")
        message = mesh.send("alice", "bob", MessageType.QUERY)
        assert transport.delivered == [message]

    def test_transport_failure_keeps_local_delivery(self, ledger):
        class Exploding:
            def deliver(self, message):
                raise ConnectionError("link down")

        mesh = CommunicationMesh(ledger, transport=Exploding())
        mesh.register("alice")
        mesh.register("bob")
        mesh.send("alice", "bob", MessageType.QUERY)
        assert mesh.pending("bob") == 1


# ═══════════════════════════════════════════════════════════════════════════
# PROTOCOL ROUTER
# ═══════════════════════════════════════════════════════════════════════════


class TestProtocolRouter:
    def test_capability_query_is_answered(self, mesh):
        router = ProtocolRouter.with_defaults(mesh)
        query = mesh.send(
            "alice", "bob", MessageType.QUERY, {"capability": "test"}, protocol=Protocol.CAPABILITY
        )
        replies = router.process(mesh, "bob")
        assert len(replies) == 1
        [answer] = mesh.receive("alice")
        assert answer.type is MessageType.RESPONSE
        assert answer.in_reply_to == query.id
        assert answer.protocol is Protocol.CAPABILITY
        assert answer.payload["has_capability"] is True
        assert answer.payload["capabilities"] == ["test"]

    def test_unhandled_messages_are_drained(self, mesh):
        router = ProtocolRouter()
        mesh.send("alice", "bob", MessageType.QUERY, protocol=Protocol.TASK)
        assert router.process(mesh, "bob") == []
        assert mesh.pending("bob") == 0
        assert mesh.pending("alice") == 0

    def test_no_reply_when_not_required(self, mesh):
        router = ProtocolRouter()
        router.register(lambda m: {"ok": True})
        mesh.send("alice", "bob", MessageType.BROADCAST)
        assert router.process(mesh, "bob") == []
        assert mesh.pending("alice") == 0

    def test_most_specific_handler_wins(self, mesh):
        router = ProtocolRouter()
        router.register(lambda m: {"by": "fallback"})
        router.register(lambda m: {"by": "type"}, type=MessageType.QUERY)
        router.register(lambda m: {"by": "protocol"}, protocol=Protocol.REVIEW)
        router.register(lambda m: {"by": "exact"}, Protocol.TASK, MessageType.QUERY)

        def route(protocol, message_type):
            message = mesh.send("alice", "bob", message_type, protocol=protocol)
            return router.dispatch(message)["by"]

        assert route(Protocol.TASK, MessageType.QUERY) == "exact"
        assert route(Protocol.REVIEW, MessageType.QUERY) == "protocol"
        assert route(Protocol.RESOURCE, MessageType.QUERY) == "type"
        assert route(None, MessageType.BROADCAST) == "fallback"

    def test_reply_skipped_when_sender_left(self, mesh):
        router = ProtocolRouter()
        router.register(lambda m: {"ok": True})
        mesh.send("alice", "bob", MessageType.QUERY)
        mesh.unregister("alice")
        assert router.process(mesh, "bob") == []

