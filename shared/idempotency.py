IDEMPOTENCY_TTL_SECONDS = 60 * 60  # 1 hour


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def claim_event(event_id: str, client, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS) -> bool:
    """
    Atomically mark an event as processed.
    Returns True for the first caller, False if the event was already claimed.
    """
    claimed = await client.set(processed_key(event_id), "1", ex=ttl_seconds, nx=True)
    return bool(claimed)


async def is_processed(event_id: str, client) -> bool:
    return bool(await client.exists(processed_key(event_id)))


async def release_event(event_id: str, client):
    """Forget a claim so a redelivery of the same event is processed again."""
    await client.delete(processed_key(event_id))
