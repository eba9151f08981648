"""
Kafka consumer for realtime changes of the posts and likes tables
"""
from aiokafka import AIOKafkaConsumer
from typing import Awaitable, Callable, Dict, Optional, Tuple
import json
import asyncio
import itertools
import logging

from pydantic import ValidationError

from .config import settings
from .schemas import ChangePayload

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangePayload], Awaitable[None]]


class Subscription:
    """Handle returned by RealtimeConsumer.subscribe"""

    def __init__(self, consumer: "RealtimeConsumer", token: int):
        self._consumer = consumer
        self._token = token

    @property
    def active(self) -> bool:
        return self._token in self._consumer.handlers

    def unsubscribe(self):
        """Stop delivering changes to the handler"""
        self._consumer.handlers.pop(self._token, None)


class RealtimeConsumer:
    """Consume change events and dispatch them to subscribed handlers"""

    def __init__(self):
        self.consumer: Optional[AIOKafkaConsumer] = None
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.handlers: Dict[int, Tuple[Optional[str], ChangeHandler]] = {}
        self._tokens = itertools.count(1)
        self.topic_tables = {
            settings.KAFKA_TOPIC_POSTS_CHANGES: "posts",
            settings.KAFKA_TOPIC_LIKES_CHANGES: "likes",
        }

    @property
    def connected(self) -> bool:
        return self.consumer is not None and self.running

    def subscribe(self, filter_user_id: Optional[str], handler: ChangeHandler) -> Subscription:
        """
        Deliver changes to handler

        Args:
            filter_user_id: Only likes made by this user are delivered
            handler: Coroutine called with each ChangePayload

        Returns:
            Subscription to cancel delivery
        """
        token = next(self._tokens)
        self.handlers[token] = (filter_user_id, handler)
        logger.info(f"Realtime subscription {token} added for user {filter_user_id}")
        return Subscription(self, token)

    async def start(self):
        """Connect to the change topics and start dispatching in the background"""
        if not settings.KAFKA_ENABLED:
            logger.warning("Kafka is disabled, realtime updates are off")
            return

        try:
            self.consumer = AIOKafkaConsumer(
                *self.topic_tables.keys(),
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                group_id=settings.KAFKA_CONSUMER_GROUP,
                value_deserializer=lambda m: json.loads(m.decode('utf-8')),
                auto_offset_reset='latest',  # Only changes made while the feed is open
                enable_auto_commit=True,
            )
            await self.consumer.start()
            logger.info(f"Realtime consumer subscribed to {list(self.topic_tables)}")

            # Dispatch changes in background
            self.running = True
            self.task = asyncio.create_task(self._consume_messages())

        except Exception as e:
            logger.error(f"Failed to start realtime consumer: {e}")
            self.consumer = None

    async def stop(self):
        """Stop dispatching and close the consumer"""
        self.running = False

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        if self.consumer:
            await self.consumer.stop()
            self.consumer = None
            logger.info("Realtime consumer stopped")

    async def _consume_messages(self):
        """Dispatch each change message until stopped"""
        logger.info("Started consuming realtime changes")

        try:
            async for message in self.consumer:
                if not self.running:
                    break

                try:
                    await self._process_message(message)
                except Exception as e:
                    logger.error(f"Error processing change from topic {message.topic}: {e}")

        except asyncio.CancelledError:
            logger.info("Realtime consumer task cancelled")
        except Exception as e:
            logger.error(f"Realtime consumer loop failed: {e}")

    async def _process_message(self, message):
        """Decode a change message and dispatch it"""
        value = dict(message.value)
        value.setdefault("table", self.topic_tables.get(message.topic))

        try:
            payload = ChangePayload.model_validate(value)
        except ValidationError as e:
            logger.error(f"Invalid change event from topic '{message.topic}': {e}")
            return

        logger.info(f"Processing {payload.kind.value} on '{payload.table}'")
        await self.dispatch(payload)

    async def dispatch(self, payload: ChangePayload):
        """Call every matching handler; one failing handler does not stop the rest"""
        for token, (filter_user_id, handler) in list(self.handlers.items()):
            if not self._matches(payload, filter_user_id):
                continue
            try:
                await handler(payload)
            except Exception as e:
                logger.error(f"Realtime handler {token} failed on '{payload.table}': {e}")

    @staticmethod
    def _matches(payload: ChangePayload, filter_user_id: Optional[str]) -> bool:
        if filter_user_id is None or payload.table != "likes":
            return True
        return str(payload.row.get("user_id")) == filter_user_id


# Global realtime consumer instance
realtime_consumer = RealtimeConsumer()
