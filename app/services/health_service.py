from __future__ import annotations

from typing import Any, Dict, Optional

from app.cache import redis_client
from app.core.config import settings
from app.database import connection
from app.queue.producer import JobQueue


class HealthService:
    def __init__(self, queue: Optional[JobQueue] = None) -> None:
        self.queue = queue

    async def check_queue(self) -> Dict[str, Any]:
        """
        Job counts per queue state. Failed jobs need manual requeueing.
        """
        if self.queue is None:
            return {"status": "unavailable", "name": settings.QUEUE_NAME}
        try:
            stats = await self.queue.stats()
        except Exception as e:
            return {"status": "unhealthy", "name": self.queue.name, "error": str(e)}
        return {"status": "healthy", "name": self.queue.name, **stats}

    async def full_health(self) -> Dict[str, Any]:
        database = await connection.check_health()
        redis = await redis_client.check_health()
        queue = await self.check_queue()

        overall_ok = database["status"] == "healthy" and redis["status"] == "healthy"

        return {
            "status": "ok" if overall_ok else "degraded",
            "app": {
                "name": settings.APP_NAME,
                "env": settings.ENV,
                "debug": settings.DEBUG,
            },
            "database": database,
            "redis": redis,
            "queue": queue,
        }
