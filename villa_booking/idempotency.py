from .redis_client import redis_client

PROCESSED_TTL_SECONDS = 7 * 86400


def _key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def is_processed(event_id: str) -> bool:
    return bool(await redis_client.exists(_key(event_id)))


async def mark_processed(event_id: str):
    await redis_client.set(_key(event_id), "1", ex=PROCESSED_TTL_SECONDS)
