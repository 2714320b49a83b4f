import redis.asyncio as redis


def create_client(redis_url: str):
    # from_url is lazy: no connection is opened until the first command
    return redis.from_url(redis_url, decode_responses=True)
