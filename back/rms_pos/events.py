import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)

redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if not settings.redis_url:
        return None
    if redis_client is None:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {settings.redis_url}: {e}")
            return None
    return redis_client


def _publish(channels: list[str], payload: dict) -> None:
    r = get_redis()
    if r is None:
        return
    message = json.dumps(payload, default=str)
    try:
        for channel in channels:
            r.publish(channel, message)
    except redis.RedisError as e:
        # Live displays are best effort; the write has already committed
        logger.warning(f"Failed to publish {payload.get('type')} update: {e}")


def publish_order_update(tenant_id: str, order_data: dict, table_id: int | None = None) -> None:
    """Publish an order update for live dashboards.

    Publishes to orders:tenant:{tenant_id} and, when the order sits at a
    table, to orders:table:{table_id}.
    """
    channels = [f"orders:tenant:{tenant_id}"]
    if table_id is not None:
        channels.append(f"orders:table:{table_id}")
    _publish(channels, order_data)


def publish_kitchen_update(tenant_id: str, outlet_id: str, kot_data: dict) -> None:
    """Publish a KOT change to the kitchen display channels."""
    _publish(
        [f"kitchen:tenant:{tenant_id}", f"kitchen:outlet:{tenant_id}:{outlet_id}"],
        kot_data,
    )
