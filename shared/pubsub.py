import os
import logging
import redis
from typing import Callable, Iterator, Optional
from .events import Event, EventType, mix_channel, mix_changed_event, roster_changed_event

logger = logging.getLogger(__name__)


class PubSubClient:
    """
    Change channel for mix records.

    Publishing is fire-and-forget: a failed publish is logged and never fails
    the write that triggered it, because the record store stays
    authoritative and observers can always re-read.
    """

    def __init__(self, redis_url: str = None, timeout: float = 5, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.timeout = timeout
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout
        )
        self._pubsub = None
        self._listener_thread = None
        self._handlers = {}

    def publish(self, channel: str, event: Event) -> bool:
        try:
            self.redis.publish(channel, event.to_json())
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to publish {event.type} on {channel}: {e}")
            return False

    def publish_mix_changed(self, mix_id: str) -> bool:
        return self.publish(mix_channel(mix_id), mix_changed_event(mix_id))

    def publish_roster_changed(self, mix_id: str) -> bool:
        return self.publish(mix_channel(mix_id), roster_changed_event(mix_id))

    def subscribe(self, channel: str, handler: Callable[[Event], None]):
        if self._pubsub is None:
            self._pubsub = self.redis.pubsub()

        self._handlers[channel] = handler
        self._pubsub.subscribe(**{channel: self._message_handler})

    def subscribe_mix(self, mix_id: str, handler: Callable[[Event], None]):
        self.subscribe(mix_channel(mix_id), handler)

    def _message_handler(self, message):
        if message['type'] == 'message':
            channel = message['channel']
            if channel in self._handlers:
                try:
                    event = Event.from_json(message['data'])
                    self._handlers[channel](event)
                except Exception as e:
                    logger.error(f"Error handling message on {channel}: {e}")

    def start_listening(self):
        if self._pubsub is None:
            return

        self._listener_thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)

    def stop_listening(self):
        if self._listener_thread is not None:
            self._listener_thread.stop()
            self._listener_thread = None
        if self._pubsub:
            self._pubsub.close()
            self._pubsub = None

    def stream_mix(self, mix_id: str, keepalive: float = 30) -> Iterator[Optional[Event]]:
        """
        Yield change events for a mix, or ``None`` after ``keepalive`` seconds
        of silence so the caller can emit a heartbeat.

        Uses its own connection without a socket timeout; the wait is bounded
        by ``get_message(timeout=...)`` instead.
        """
        stream_redis = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=None,
            socket_connect_timeout=self.timeout
        )
        pubsub = stream_redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(mix_channel(mix_id))
        try:
            yield Event(type=EventType.CONNECTED, mix_id=mix_id)
            while True:
                message = pubsub.get_message(timeout=keepalive)
                if message and message['type'] == 'message':
                    yield Event.from_json(message['data'])
                else:
                    yield None
        finally:
            pubsub.close()

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError:
            return False
