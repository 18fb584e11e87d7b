"""
Communication Mesh — Trust-Weighted Agent Messaging

Routes messages between registered agents through per-recipient FIFO
mailboxes. Each message is stamped with a confidence derived from the
sender's trust in the recipient at send time:

    confidence = 0.5 + 0.5 * trust(sender, recipient)

A channel for the unordered pair is created on the first message and tracks
activity from then on. Mailboxes may be bounded, in which case the oldest
pending message is dropped to make room.
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from types import MappingProxyType
from typing import Any

import structlog

from collective.errors import CapacityError, UnknownAgentError, ValidationError
from collective.mesh.models import Agent, Channel, Message, MessageType, Protocol
from collective.mesh.transport import Transport
from collective.mesh.trust_ledger import TrustLedger
from collective.sync import ShardedLock

logger = structlog.get_logger()


class _Mailbox:
    """Pending messages for one recipient."""

    __slots__ = ("queue", "lock", "dropped")

    def __init__(self, capacity: int | None) -> None:
        self.queue: deque[Message] = deque(maxlen=capacity)
        self.lock = threading.Lock()
        self.dropped = 0


class CommunicationMesh:
    """
    Agent registry plus message routing.

    Unknown senders or recipients are rejected before anything is enqueued
    or any channel is touched. Messages from one sender to one recipient are
    delivered in send order; nothing is promised across different pairs.
    """

    def __init__(
        self,
        trust: TrustLedger,
        capacity: int | None = None,
        transport: Transport | None = None,
        clock: Callable[[], float] = time.time,
        shards: int = ShardedLock.DEFAULT_SHARDS,
    ) -> None:
        if capacity is not None and capacity <= 0:
            raise CapacityError(f"Mailbox capacity must be > 0, got {capacity}")

        self.trust = trust
        self.capacity = capacity
        self.transport = transport
        self._clock = clock
        self._agents: dict[str, Agent] = {}
        self._mailboxes: dict[str, _Mailbox] = {}
        self._registry_lock = threading.Lock()
        self._channels: dict[tuple[str, str], Channel] = {}
        self._channel_locks = ShardedLock(shards)
        self._sent = itertools.count(1)
        self._sent_total = 0

    # -- registry -----------------------------------------------------------

    def register(self, agent_id: str, capabilities: Iterable[str] = ()) -> Agent:
        """Register (or re-register with new capabilities) an agent."""
        agent = Agent(agent_id=agent_id, capabilities=frozenset(capabilities))
        with self._registry_lock:
            self._agents[agent_id] = agent
            self._mailboxes.setdefault(agent_id, _Mailbox(self.capacity))
        logger.debug("Agent registered", agent_id=agent_id, capabilities=sorted(agent.capabilities))
        return agent

    def unregister(self, agent_id: str) -> bool:
        """Remove an agent and discard its pending messages."""
        with self._registry_lock:
            removed = self._agents.pop(agent_id, None)
            self._mailboxes.pop(agent_id, None)
        return removed is not None

    def agents(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda a: a.agent_id)

    def get_agent(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._agents

    # -- messaging ----------------------------------------------------------

    def send(
        self,
        sender: str,
        recipient: str,
        type: MessageType | str,
        payload: Mapping[str, Any] | None = None,
        in_reply_to: str | None = None,
        protocol: Protocol | str | None = None,
    ) -> Message:
        """
        Route one message from ``sender`` to ``recipient``.

        Raises:
            UnknownAgentError: sender or recipient not registered
            ValidationError: unknown message type or protocol, non-mapping payload
        """
        message_type = _coerce(MessageType, type, "message type")
        message_protocol = _coerce(Protocol, protocol, "protocol") if protocol else None
        if payload is not None and not isinstance(payload, Mapping):
            raise ValidationError(f"payload must be a mapping, got {payload.__class__.__name__}")
        if sender == recipient:
            raise ValidationError(f"Agent {sender} cannot message itself")

        self.require(sender)
        mailbox = self.require(recipient)

        now = self._clock()
        message = Message(
            id=f"msg-{uuid.uuid4().hex[:12]}",
            sender=sender,
            recipient=recipient,
            type=message_type,
            payload=MappingProxyType(copy.deepcopy(dict(payload or {}))),
            timestamp=now,
            confidence=0.5 + 0.5 * self.trust.get(sender, recipient),
            requires_response=message_type.requires_response,
            in_reply_to=in_reply_to,
            protocol=message_protocol,
        )

        self._enqueue(mailbox, message)
        self._touch_channel(sender, recipient, now)
        self._sent_total = next(self._sent)

        if self.transport is not None:
            try:
                self.transport.deliver(message)
            except Exception:
                logger.exception("Transport delivery failed", message_id=message.id)

        return message

    def broadcast(
        self,
        sender: str,
        payload: Mapping[str, Any] | None = None,
        protocol: Protocol | str | None = None,
    ) -> list[Message]:
        """Send a BROADCAST message to every other registered agent."""
        self.require(sender)
        recipients = [a.agent_id for a in self.agents() if a.agent_id != sender]
        return [
            self.send(sender, r, MessageType.BROADCAST, payload, protocol=protocol)
            for r in recipients
        ]

    def receive(self, agent: str) -> list[Message]:
        """Drain and return everything pending for ``agent``. Never blocks."""
        mailbox = self.require(agent)
        with mailbox.lock:
            messages = list(mailbox.queue)
            mailbox.queue.clear()
        return messages

    def pending(self, agent: str) -> int:
        mailbox = self.require(agent)
        return len(mailbox.queue)

    def channel_stats(self, a: str, b: str) -> Channel | None:
        """Activity for the unordered pair, or None if they never exchanged a message."""
        channel = self._channels.get(Channel.key(a, b))
        return replace(channel) if channel is not None else None

    def channels(self) -> list[Channel]:
        return [replace(c) for c in list(self._channels.values())]

    def stats(self) -> dict[str, Any]:
        mailboxes = list(self._mailboxes.values())
        return {
            "agents": len(self._agents),
            "channels": len(self._channels),
            "messages_sent": self._sent_total,
            "pending": sum(len(m.queue) for m in mailboxes),
            "dropped": sum(m.dropped for m in mailboxes),
        }

    def require(self, agent_id: str) -> _Mailbox:
        """Mailbox of a registered agent; UnknownAgentError otherwise."""
        mailbox = self._mailboxes.get(agent_id)
        if mailbox is None or agent_id not in self._agents:
            raise UnknownAgentError(agent_id)
        return mailbox

    # -- internals ----------------------------------------------------------

    def _enqueue(self, mailbox: _Mailbox, message: Message) -> None:
        with mailbox.lock:
            if mailbox.queue.maxlen is not None and len(mailbox.queue) == mailbox.queue.maxlen:
                evicted = mailbox.queue[0]
                mailbox.dropped += 1
                logger.warning(
                    "Mailbox full, dropping oldest message",
                    recipient=message.recipient,
                    dropped_id=evicted.id,
                    capacity=mailbox.queue.maxlen,
                )
            mailbox.queue.append(message)

    def _touch_channel(self, a: str, b: str, now: float) -> None:
        key = Channel.key(a, b)
        with self._channel_locks.for_key(key):
            channel = self._channels.get(key)
            if channel is None:
                channel = Channel(agents=key, created_at=now)
                self._channels[key] = channel
                logger.debug("Channel created", agents=list(key))
            channel.message_count += 1
            channel.last_activity = now


def _coerce(enum_cls: Any, value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"Unknown {label}: {value!r}") from e
