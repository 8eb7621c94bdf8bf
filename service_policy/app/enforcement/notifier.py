"""
Redis pub/sub broadcast of policy changes between service instances.

Disabled unless ``POLICY_RELOAD_CHANNEL`` is set. Without it, instances
only converge when they call ``reload_policy()`` themselves.
"""

import json
import uuid
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from shared.logging import get_logger


class PolicyChangeNotifier:
    """Publishes local policy mutations and listens for remote ones."""

    def __init__(self, redis_url: str, channel: str, instance_id: Optional[str] = None):
        self.redis_url = redis_url
        self.channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self.logger = get_logger("policy.notifier")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        if self.redis is not None:
            return
        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            health_check_interval=30
        )
        await self.redis.ping()
        self.logger.info("Policy change notifier started", channel=self.channel, instance_id=self.instance_id)

    async def stop(self):
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Policy change notifier stopped")

    async def publish(self, operation: str, domain: str) -> None:
        await self.start()
        message = json.dumps({
            "origin": self.instance_id,
            "operation": operation,
            "domain": domain
        })
        await self.redis.publish(self.channel, message)

    def is_remote(self, payload: str) -> bool:
        """Whether a channel message came from another instance."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            data = None
        if not isinstance(data, dict):
            self.logger.warning("Ignoring malformed policy change message")
            return False
        return data.get("origin") != self.instance_id

    async def listen(self, on_change: Callable[[], Awaitable[None]]) -> None:
        """Invoke on_change for every change published by another instance."""
        await self.start()
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message" or not self.is_remote(message.get("data")):
                    continue
                try:
                    await on_change()
                except Exception as e:
                    self.logger.error("Policy reload after remote change failed", error=str(e))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
