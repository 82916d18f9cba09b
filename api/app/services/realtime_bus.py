"""Realtime fanout of request, conversation and message changes.

Topics are either a conversation (`conversation:{id}`, message and status
events) or a user (`user:{id}`, pending-queue, roster and chat-list events).
Delivery is ordered within a topic; nothing is promised across topics.
Consumers must treat events as idempotent by `event_id`.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Literal

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


def conversation_topic(conversation_id: int) -> str:
    return f'conversation:{conversation_id}'


def user_topic(user_id: int) -> str:
    return f'user:{user_id}'


class RealtimeEvent(BaseModel):
    """An insert or update pushed to subscribers."""
    event_id: str
    topic: str
    table: Literal['join_requests', 'conversations', 'messages', 'activity_attendees']
    type: Literal['insert', 'update']
    record: dict[str, Any]


EventHandler = Callable[[RealtimeEvent], Awaitable[None] | None]


class Subscription:
    """Handle returned by `RealtimeBus.subscribe`. Calling it unsubscribes."""

    def __init__(self, bus: 'RealtimeBus', topic: str, handler: EventHandler, drop_on_error: bool):
        self.bus = bus
        self.topic = topic
        self.handler = handler
        self.drop_on_error = drop_on_error
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.bus._remove(self)

    __call__ = unsubscribe


class RealtimeBus:
    """In-process topic bus. One instance per server process."""

    def __init__(self):
        # topic -> subscriptions (a user can have several tabs/devices)
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        # topic -> lock, kept only while the topic has subscribers or publishers
        self._locks: dict[str, asyncio.Lock] = {}
        self._publishing: dict[str, int] = defaultdict(int)

    def subscribe(self, topic: str, on_event: EventHandler, drop_on_error: bool = False) -> Subscription:
        sub = Subscription(self, topic, on_event, drop_on_error)
        self._subscribers[topic].append(sub)
        logger.debug(f'Subscribed to {topic} ({len(self._subscribers[topic])} subscribers)')
        return sub

    @asynccontextmanager
    async def subscription(self, topic: str, on_event: EventHandler):
        """Scoped subscription: released on exit even if the body raises."""
        sub = self.subscribe(topic, on_event)
        try:
            yield sub
        finally:
            sub.unsubscribe()

    def _remove(self, sub: Subscription):
        subs = self._subscribers.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.topic, None)
            self._prune(sub.topic)

    def _prune(self, topic: str):
        if topic not in self._subscribers and topic not in self._publishing:
            self._locks.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def lock_count(self) -> int:
        return len(self._locks)

    async def publish(self, event: RealtimeEvent):
        """Deliver to every subscriber of the event's topic, in subscription order."""
        topic = event.topic
        lock = self._locks.setdefault(topic, asyncio.Lock())
        self._publishing[topic] += 1
        try:
            async with lock:
                for sub in list(self._subscribers.get(topic, [])):
                    if not sub.active:
                        continue
                    try:
                        result = sub.handler(event)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.warning(f'Subscriber on {topic} failed for {event.event_id}: {e}')
                        if sub.drop_on_error:
                            sub.unsubscribe()
        finally:
            self._publishing[topic] -= 1
            if not self._publishing[topic]:
                del self._publishing[topic]
                self._prune(topic)

    async def publish_many(self, events: list[RealtimeEvent]):
        for event in events:
            await self.publish(event)


class WebSocketSubscriber:
    """Bridges one WebSocket connection onto bus topics for its lifetime.

    Entering accepts the socket and follows the user's own topic; exiting
    releases every topic the connection followed.
    """

    def __init__(self, bus: RealtimeBus, websocket: WebSocket, user_id: int):
        self.bus = bus
        self.websocket = websocket
        self.user_id = user_id
        self._subscriptions: dict[str, Subscription] = {}

    async def send(self, event: RealtimeEvent):
        await self.websocket.send_json(event.model_dump(mode='json'))

    def follow(self, topic: str):
        if topic not in self._subscriptions:
            self._subscriptions[topic] = self.bus.subscribe(topic, self.send, drop_on_error=True)

    def unfollow(self, topic: str):
        sub = self._subscriptions.pop(topic, None)
        if sub:
            sub.unsubscribe()

    @property
    def topics(self) -> list[str]:
        return [t for t, sub in self._subscriptions.items() if sub.active]

    async def __aenter__(self):
        await self.websocket.accept()
        self.follow(user_topic(self.user_id))
        logger.info(f'User {self.user_id} connected')
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for topic in list(self._subscriptions):
            self.unfollow(topic)
        logger.info(f'User {self.user_id} disconnected')
        return False


# Singleton instance
bus = RealtimeBus()
