import json
import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import StatusSnapshot, isoformat, utcnow
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "wabridge:session:status"
QR_KEY = "wabridge:session:qr"


class SessionSnapshotStore:
    """Mirrors session status snapshots into Redis for external observers.

    The access credential is never written. Redis errors are logged and
    reported as a False return value.
    """

    def __init__(self, url: str, ttl_seconds: int) -> None:
        self._url = url
        self._ttl = ttl_seconds
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def save_snapshot(self, snapshot: StatusSnapshot, qr: str | None = None) -> bool:
        """Write the snapshot (and the QR payload, if any) with the configured TTL."""
        if self._client is None:
            return False
        payload = snapshot.to_dict()
        payload["mirroredAt"] = isoformat(utcnow())
        try:
            await self._client.setex(SNAPSHOT_KEY, self._ttl, json.dumps(payload))
            if qr:
                await self._client.setex(QR_KEY, self._ttl, qr)
            else:
                await self._client.delete(QR_KEY)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis snapshot write failed: %s", e)
            return False


def get_snapshot_store(settings: Settings | None = None) -> SessionSnapshotStore | None:
    """Return a snapshot store if redis_url is configured, else None."""
    settings = settings or get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return SessionSnapshotStore(settings.redis_url.strip(), settings.snapshot_ttl_seconds)
