"""
Runtime wiring for Feed Service
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
import logging

from .cache import ExpiringCache, RedisCacheStore, create_store
from .config import settings
from .realtime import RealtimeConsumer, Subscription, realtime_consumer
from .schemas import FeedItem, WardrobeItem
from .service import FeedComposer
from .service_client import SupabaseClient, supabase_client
from .wardrobe import WardrobeService

logger = logging.getLogger(__name__)


def configure_logging():
    """Configure root logging"""
    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class FeedRuntime:
    """Components of a running feed session"""
    composer: FeedComposer
    wardrobe: WardrobeService
    client: SupabaseClient
    consumer: RealtimeConsumer
    subscription: Optional[Subscription] = None


@asynccontextmanager
async def feed_runtime(
    user_id: Optional[str],
    access_token: Optional[str] = None,
    client: Optional[SupabaseClient] = None,
    consumer: Optional[RealtimeConsumer] = None
) -> AsyncIterator[FeedRuntime]:
    """Start the feed session components and tear them down on exit"""
    client = client or supabase_client
    consumer = consumer or realtime_consumer
    store = create_store()

    # Startup
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} for user {user_id}...")

    await client.start()
    client.set_access_token(access_token)

    if isinstance(store, RedisCacheStore):
        await store.connect()

    composer = FeedComposer(
        client,
        current_user_id=user_id,
        cache=ExpiringCache(store=store, namespace="feed", item_model=FeedItem),
    )
    wardrobe = WardrobeService(
        client,
        cache=ExpiringCache(store=store, namespace="wardrobe", item_model=WardrobeItem),
    )
    runtime = FeedRuntime(composer=composer, wardrobe=wardrobe, client=client, consumer=consumer)

    await consumer.start()
    if user_id is not None:
        runtime.subscription = consumer.subscribe(user_id, composer.handle_change)

    logger.info(f"{settings.APP_NAME} started")

    try:
        yield runtime
    finally:
        # Shutdown
        logger.info(f"Shutting down {settings.APP_NAME}...")

        if runtime.subscription:
            runtime.subscription.unsubscribe()

        await consumer.stop()

        if isinstance(store, RedisCacheStore):
            await store.disconnect()

        await client.stop()
