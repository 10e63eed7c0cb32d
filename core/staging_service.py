"""
输入图片暂存区

生图服务商只能通过公网 URL 拉取用户上传的拼图，这里负责：
- put：保存字节并设置过期时间，返回随机 artifact_id（形如 <uuid>.<ext>）
- url_for：artifact_id -> 服务商可访问的 URL（依赖外部配置的公网地址）
- get：供 /api/image/{artifact_id} 读取
- remove：幂等删除

任何未被显式 remove 的条目在 TTL 到期后都不可再读取（内存实现由 sweep 回收，Redis 由 EX 过期回收）。
"""

import threading
import time
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, Optional

import redis

from core.app_settings import get_app_settings
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
REDIS_KEY_PREFIX = "image:"

CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


class StagingError(Exception):
    """暂存区读写失败（本地 I/O 或 Redis 不可用）"""


class StagedArtifactNotFound(StagingError):
    """条目不存在或已过期"""


def content_type_for(artifact_id: str) -> str:
    """按文件名后缀推断 Content-Type，未知后缀按 png 处理。"""
    suffix = str(artifact_id or "").rsplit(".", 1)[-1].lower() if "." in str(artifact_id or "") else ""
    if suffix in ("jpg", "jpeg"):
        return "image/jpeg"
    if suffix == "webp":
        return "image/webp"
    return "image/png"


def new_artifact_id(content_kind: str) -> str:
    ext = str(content_kind or "png").strip().lower().lstrip(".") or "png"
    if ext not in CONTENT_TYPES:
        ext = "png"
    return f"{uuid.uuid4()}.{ext}"


class StagingCache:
    """暂存区公共逻辑，子类实现具体存储。"""

    def __init__(self, base_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.base_url = str(base_url or "").rstrip("/")
        self.ttl_seconds = int(ttl_seconds)

    def put(self, data: bytes, content_kind: str = "png", ttl_seconds: Optional[int] = None) -> str:
        if not data:
            raise StagingError("暂存内容为空")
        artifact_id = new_artifact_id(content_kind)
        ttl = int(ttl_seconds or self.ttl_seconds)
        self._store(artifact_id, bytes(data), ttl)
        log_event(logger, E.STAGING_PUT, artifact_id=artifact_id, size=len(data), ttl=ttl)
        return artifact_id

    def url_for(self, artifact_id: str) -> str:
        return f"{self.base_url}/api/image/{artifact_id}"

    def get(self, artifact_id: str) -> bytes:
        data = self._load(artifact_id)
        if data is None:
            log_event(logger, E.STAGING_MISS, level="debug", artifact_id=artifact_id)
            raise StagedArtifactNotFound(artifact_id)
        return data

    def remove(self, artifact_id: str) -> None:
        if not artifact_id:
            return
        self._delete(artifact_id)
        log_event(logger, E.STAGING_REMOVE, artifact_id=artifact_id)

    def sweep(self) -> int:
        """主动回收已过期条目，返回回收数量；依赖外部过期机制的实现返回 0。"""
        return 0

    def _store(self, artifact_id: str, data: bytes, ttl_seconds: int) -> None:
        raise NotImplementedError

    def _load(self, artifact_id: str) -> Optional[bytes]:
        raise NotImplementedError

    def _delete(self, artifact_id: str) -> None:
        raise NotImplementedError


@dataclass
class _Entry:
    data: bytes
    expires_at: float


class MemoryStagingCache(StagingCache):
    """单进程内存实现，适合开发与测试；多进程部署请使用 Redis。"""

    def __init__(
        self,
        base_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(base_url, ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _store(self, artifact_id: str, data: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[artifact_id] = _Entry(data=data, expires_at=self._clock() + ttl_seconds)

    def _load(self, artifact_id: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(artifact_id)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._entries.pop(artifact_id, None)
                return None
            return entry.data

    def _delete(self, artifact_id: str) -> None:
        with self._lock:
            self._entries.pop(artifact_id, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
        if expired:
            log_event(logger, E.STAGING_SWEEP, removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisStagingCache(StagingCache):
    """Redis 实现，过期由 SET EX 保证。"""

    def __init__(self, base_url: str, client: "redis.Redis", ttl_seconds: int = DEFAULT_TTL_SECONDS):
        super().__init__(base_url, ttl_seconds)
        self.client = client

    @classmethod
    def from_url(cls, base_url: str, redis_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "RedisStagingCache":
        return cls(base_url, redis.Redis.from_url(redis_url), ttl_seconds)

    @staticmethod
    def _key(artifact_id: str) -> str:
        return f"{REDIS_KEY_PREFIX}{artifact_id}"

    def _store(self, artifact_id: str, data: bytes, ttl_seconds: int) -> None:
        try:
            self.client.set(self._key(artifact_id), data, ex=ttl_seconds)
        except redis.RedisError as e:
            raise StagingError(f"保存图片到 Redis 失败: {e}") from e

    def _load(self, artifact_id: str) -> Optional[bytes]:
        try:
            return self.client.get(self._key(artifact_id))
        except redis.RedisError as e:
            raise StagingError(f"读取 Redis 缓存失败: {e}") from e

    def _delete(self, artifact_id: str) -> None:
        try:
            self.client.delete(self._key(artifact_id))
        except redis.RedisError as e:
            # 删除失败时依赖 TTL 兜底回收
            logger.warning("删除 Redis 暂存图片失败 artifact_id=%s: %s", artifact_id, e)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


def build_staging_cache(storage_settings, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> StagingCache:
    backend = str(getattr(storage_settings, "staging_backend", "memory") or "memory").lower()
    base_url = storage_settings.base_url
    if backend == "redis":
        cache = RedisStagingCache.from_url(base_url, storage_settings.redis_url, ttl_seconds)
        if cache.ping():
            logger.info("暂存区使用 Redis: %s", storage_settings.redis_url)
        else:
            logger.warning("Redis 暂不可达，暂存图片会失败直到连接恢复: %s", storage_settings.redis_url)
        return cache
    logger.info("暂存区使用进程内存")
    return MemoryStagingCache(base_url, ttl_seconds)


@lru_cache()
def get_staging_cache() -> StagingCache:
    """进程级暂存区单例"""
    settings = get_app_settings()
    return build_staging_cache(settings.storage, settings.generation.staged_ttl_seconds)
