"""Realtime change feed delivered over MQTT.

The backend publishes one JSON message per row change on
``{topic_prefix}/{table}/{user_id}``; this client routes each message to the
subscriptions registered for that topic.
"""

import asyncio
import json
import logging
from typing import Any

import paho.mqtt.client as mqtt

from ..config import RealtimeConfig
from ..models import ChangeEvent
from .base import ChangeCallback, Subscription

logger = logging.getLogger(__name__)


class MQTTChangeFeed:
    """Async-facing MQTT client that fans change events out to subscriptions."""

    def __init__(self, config: RealtimeConfig):
        self.config = config
        self._topics: dict[str, list[Subscription]] = {}

        # Paho MQTT client
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

        self._connected = False

    def topic_for(self, table: str, user_id: str) -> str:
        return f"{self.config.topic_prefix}/{table}/{user_id}"

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(
                f"Change feed connected to {self.config.broker}:{self.config.port}"
            )
            # Re-establish topics after a reconnect
            for topic in self._topics:
                client.subscribe(topic)
        else:
            logger.error(f"Failed to connect change feed: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Decode a change message and hand it to matching subscriptions."""
        subs = self._topics.get(msg.topic)
        if not subs:
            return

        try:
            data = json.loads(msg.payload.decode("utf-8"))
            table = msg.topic.split("/")[-2]
            event = ChangeEvent.from_dict(data, table=table)
        except (UnicodeDecodeError, ValueError, KeyError, AttributeError, TypeError) as e:
            logger.warning(f"Dropping malformed change message on {msg.topic}: {e}")
            return

        for sub in list(subs):
            if sub.closed:
                subs.remove(sub)
                continue
            sub.deliver_threadsafe(event)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        logger.warning(f"Change feed disconnected: {reason_code}")

    async def connect(self) -> bool:
        """Connect to the broker.

        Returns:
            True if connection successful.
        """
        if self._connected:
            return True

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()

            # Wait for connection
            for _ in range(50):  # 5 second timeout
                if self._connected:
                    return True
                await asyncio.sleep(0.1)

            logger.error("Timeout waiting for change feed connection")
            return False

        except OSError as e:
            logger.error(f"Failed to connect change feed: {e}")
            return False

    async def disconnect(self) -> None:
        for subs in self._topics.values():
            for sub in subs:
                await sub.close()
        self._topics.clear()
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    async def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        if not self._connected:
            await self.connect()

        topic = self.topic_for(table, user_id)
        subscription = Subscription(table, user_id, callback)
        if topic not in self._topics:
            self._topics[topic] = []
            self._client.subscribe(topic)
            logger.info(f"Subscribed to change topic: {topic}")
        self._topics[topic].append(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        await subscription.close()
        topic = self.topic_for(subscription.table, subscription.user_id)
        subs = self._topics.get(topic)
        if subs is None:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._topics[topic]
            self._client.unsubscribe(topic)
            logger.info(f"Unsubscribed from change topic: {topic}")

    @property
    def is_connected(self) -> bool:
        return self._connected
