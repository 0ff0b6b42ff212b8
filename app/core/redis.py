import redis.asyncio as redis
from app.core.config import settings

class RedisClient:
    """Session token store shared with the auth service that issues the tokens."""

    def __init__(self):
        self.redis = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def get_token(self, token: str) -> str | None:
        return await self.redis.get(f"token:{token}")

    async def close(self):
        await self.redis.close()

redis_client = RedisClient()
