import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_RECONNECT_DELAY = float(os.getenv("REDIS_RECONNECT_DELAY", "2"))
POLL_INTERVAL = 0.05

Handler = Callable[[dict], Any]


class Channel:
    """
    One subscription to a session topic.
    Handlers registered with `on` run once per received message of that event,
    in arrival order, until the channel leaves.
    """

    def __init__(self, hub: "ChannelHub", key: str):
        self.hub = hub
        self.key = key
        self.joined = True
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event_name: str, handler: Handler) -> "Channel":
        self._handlers.setdefault(event_name, []).append(handler)
        return self

    def send(self, event_name: str, payload: dict) -> None:
        """Broadcasts to every subscriber of the topic, this one included."""
        if not self.joined:
            logger.warning(f"Send on a channel that left: {self.key} {event_name}")
            return
        self.hub.add_payload_to_publish_queue(self.key, event_name, payload)

    def leave(self) -> None:
        self.hub.leave(self)

    def dispatch(self, event_name: str, payload: dict) -> None:
        for handler in list(self._handlers.get(event_name, [])):
            if not self.joined:
                return
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Error in handler for {event_name} on {self.key}: {e}")


class ChannelHub:
    """
    Base pub/sub hub. Sends are queued and published by a background loop,
    so a send never waits for delivery.
    """

    def __init__(self):
        self.publish_queue: asyncio.Queue = asyncio.Queue()
        self._channels: Dict[str, List[Channel]] = {}
        self._publish_loop_task: Optional[asyncio.Task] = None

    def join(self, key: str) -> Channel:
        """
        Join a session topic. Joining the same key again subscribes to the
        same topic, the underlying subscription is shared.
        """
        channel = Channel(self, key)
        first_subscriber = key not in self._channels
        self._channels.setdefault(key, []).append(channel)
        if first_subscriber:
            self._subscribe(key)
        logger.debug(f"Joined channel: {key}")
        return channel

    def leave(self, channel: Channel) -> None:
        channel.joined = False
        subscribers = self._channels.get(channel.key, [])
        if channel in subscribers:
            subscribers.remove(channel)
        if channel.key in self._channels and not subscribers:
            del self._channels[channel.key]
            self._unsubscribe(channel.key)
        logger.debug(f"Left channel: {channel.key}")

    def subscriber_count(self, key: str) -> int:
        return len(self._channels.get(key, []))

    def add_payload_to_publish_queue(
        self, key: str, event_name: str, payload: dict
    ) -> None:
        try:
            message = {"channel": key, "event": event_name, "payload": payload}
            self.publish_queue.put_nowait(message)
        except Exception as e:
            logger.error(f"Error in add_payload_to_publish_queue: {e}")

    def deliver(self, key: str, event_name: str, payload: dict) -> None:
        """Hands a received message to every local subscriber of the topic."""
        for channel in list(self._channels.get(key, [])):
            channel.dispatch(event_name, payload)

    async def _publish_loop(self) -> None:
        while True:
            message = await self.publish_queue.get()
            try:
                await self._publish(message)
            except Exception as e:
                logger.error(f"Error in _publish_loop: {e}")
            finally:
                self.publish_queue.task_done()

    async def flush(self) -> None:
        """Wait until everything queued so far has been published."""
        await self.publish_queue.join()

    async def start(self) -> "ChannelHub":
        self._publish_loop_task = asyncio.create_task(
            self._publish_loop(), name=f"Publish loop for {type(self).__name__}"
        )
        logger.info(f"{type(self).__name__} started")
        return self

    async def stop_publish_loop(self) -> None:
        if self._publish_loop_task is None:
            return
        self._publish_loop_task.cancel()
        try:
            await self._publish_loop_task
        except asyncio.CancelledError:
            pass
        self._publish_loop_task = None

    async def close(self) -> None:
        await self.stop_publish_loop()
        for channel in [c for subscribers in self._channels.values() for c in subscribers]:
            self.leave(channel)
        logger.info(f"{type(self).__name__} closed")

    async def _publish(self, message: dict) -> None:
        raise NotImplementedError

    def _subscribe(self, key: str) -> None:
        raise NotImplementedError

    def _unsubscribe(self, key: str) -> None:
        raise NotImplementedError


class LocalChannelHub(ChannelHub):
    """In-process hub: every client of a session lives in this process."""

    async def _publish(self, message: dict) -> None:
        self.deliver(message["channel"], message["event"], message["payload"])

    def _subscribe(self, key: str) -> None:
        pass

    def _unsubscribe(self, key: str) -> None:
        pass


class RedisChannelHub(ChannelHub):
    """Hub relaying session topics through Redis pub/sub."""

    def __init__(self, client: Optional[redis.Redis] = None):
        super().__init__()
        self.client = client or redis.Redis(
            host=REDIS_HOST,
            port=REDIS_PORT,
            password=REDIS_PASSWORD,
        )
        self._listener_tasks: Dict[str, asyncio.Task] = {}

    def verify_connection(self) -> None:
        try:
            self.client.ping()
            logger.info("Connected to Redis successfully.")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def start(self) -> "RedisChannelHub":
        self.verify_connection()
        return await super().start()

    async def _publish(self, message: dict) -> None:
        data = json.dumps({"event": message["event"], "payload": message["payload"]})
        subscribers = self.client.publish(message["channel"], data)
        logger.debug(f"Broadcasted {message['event']} to {subscribers} subscribers")

    def _subscribe(self, key: str) -> None:
        self._listener_tasks[key] = asyncio.create_task(
            self.listen_to_channel(key), name=f"Pubsub Task for {key}"
        )

    def _unsubscribe(self, key: str) -> None:
        task = self._listener_tasks.pop(key, None)
        if task is not None:
            task.cancel()

    async def listen_to_channel(self, key: str) -> None:
        """
        Listen to one topic and deliver its messages to the local subscribers.
        A dropped connection is retried, subscribers keep their last state meanwhile.
        """
        while True:
            pubsub = self.client.pubsub()
            try:
                pubsub.subscribe(key)
                logger.debug(f"Starting listener for channel: {key}")
                while True:
                    message = pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=0.0
                    )
                    if message:
                        self._handle_redis_message(key, message)
                        # yield between messages, only sleep once drained
                        await asyncio.sleep(0)
                        continue
                    await asyncio.sleep(POLL_INTERVAL)
            except asyncio.CancelledError:
                raise
            except redis.RedisError as e:
                logger.error(
                    f"Channel listener for {key} lost its connection: {e}, "
                    f"retrying in {REDIS_RECONNECT_DELAY}s"
                )
                await asyncio.sleep(REDIS_RECONNECT_DELAY)
            finally:
                pubsub.close()

    def _handle_redis_message(self, key: str, message: dict) -> None:
        try:
            data = json.loads(message["data"])
            event_name = data["event"]
            payload = data["payload"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Failed to decode message on {key}: {e}")
            return
        self.deliver(key, event_name, payload)

    async def close(self) -> None:
        await super().close()
        for task in self._listener_tasks.values():
            task.cancel()
        self._listener_tasks.clear()
        self.client.close()


def create_channel_hub(backend: str) -> ChannelHub:
    if backend == "local":
        return LocalChannelHub()
    return RedisChannelHub()
