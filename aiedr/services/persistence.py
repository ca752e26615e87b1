"""
Persistence for the alert list, audit log and counters.

Backends:
- memory: keeps the last saved state in-process (tests, ephemeral runs)
- redis:  JSON blobs under aiedr:* keys via redis.asyncio
- file:   one JSON document written atomically

Persistence is best effort. A failed save is logged and reported as False;
a failed or empty load returns None so the engine starts fresh.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from aiedr.services.base import ConfigurationError, EngineSettings
from aiedr.services.threat_types import AuditEntry, SecurityAlert

logger = logging.getLogger(__name__)


@dataclass
class PersistedState:
    alerts: List[SecurityAlert] = field(default_factory=list)
    audit_log: List[AuditEntry] = field(default_factory=list)
    total_threats_detected: int = 0
    total_threats_blocked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alerts": [a.to_dict() for a in self.alerts],
            "audit_log": [e.to_dict() for e in self.audit_log],
            "counters": {
                "total_threats_detected": self.total_threats_detected,
                "total_threats_blocked": self.total_threats_blocked,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedState":
        counters = data.get("counters") or {}
        return cls(
            alerts=[SecurityAlert.from_dict(a) for a in data.get("alerts") or []],
            audit_log=[AuditEntry.from_dict(e) for e in data.get("audit_log") or []],
            total_threats_detected=int(counters.get("total_threats_detected", 0)),
            total_threats_blocked=int(counters.get("total_threats_blocked", 0)),
        )


class EnginePersistence(Protocol):
    async def load(self) -> Optional[PersistedState]:
        ...

    async def save(self, state: PersistedState) -> bool:
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# MEMORY
# =============================================================================


class InMemoryPersistence:
    """Holds a serialized copy so later mutations don't leak into saved state."""

    def __init__(self):
        self._data: Optional[Dict[str, Any]] = None
        self.save_count = 0

    async def load(self) -> Optional[PersistedState]:
        if self._data is None:
            return None
        return PersistedState.from_dict(json.loads(json.dumps(self._data)))

    async def save(self, state: PersistedState) -> bool:
        self._data = json.loads(json.dumps(state.to_dict()))
        self.save_count += 1
        return True

    async def close(self) -> None:
        return None


# =============================================================================
# REDIS
# =============================================================================


class RedisPersistence:
    """
    Redis-backed state.

    Keys:
        {prefix}:alerts     JSON list of alerts
        {prefix}:audit_log  JSON list of audit entries
        {prefix}:counters   JSON object of counters
    """

    def __init__(self, redis_url: str, prefix: str = "aiedr", client: Optional[Any] = None, timeout: float = 5.0):
        self.redis_url = redis_url
        self.prefix = prefix
        self.timeout = timeout
        self._redis: Optional[Any] = client

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def _get_redis(self):
        """Get Redis connection with lazy initialization."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self.redis_url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                decode_responses=True,
            )
            await self._redis.ping()
            logger.info("✅ Redis persistence connected")
        return self._redis

    async def load(self) -> Optional[PersistedState]:
        try:
            redis = await self._get_redis()
            alerts, audit_log, counters = await redis.mget(
                self._key("alerts"), self._key("audit_log"), self._key("counters")
            )
        except Exception as e:
            logger.warning(f"⚠️ Redis load failed, starting with empty state: {e}")
            self._redis = None
            return None

        if alerts is None and audit_log is None and counters is None:
            return None

        try:
            return PersistedState.from_dict({
                "alerts": json.loads(alerts) if alerts else [],
                "audit_log": json.loads(audit_log) if audit_log else [],
                "counters": json.loads(counters) if counters else {},
            })
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt engine state in Redis, ignoring: {e}")
            return None

    async def save(self, state: PersistedState) -> bool:
        data = state.to_dict()
        try:
            redis = await self._get_redis()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.set(self._key("alerts"), json.dumps(data["alerts"]))
                pipe.set(self._key("audit_log"), json.dumps(data["audit_log"]))
                pipe.set(self._key("counters"), json.dumps(data["counters"]))
                await pipe.execute()
            return True
        except Exception as e:
            logger.warning(f"⚠️ Redis save failed: {e}")
            self._redis = None
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis connection: {e}")
            self._redis = None


# =============================================================================
# FILE
# =============================================================================


class JsonFilePersistence:
    """Single JSON document, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    def _read(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    async def load(self) -> Optional[PersistedState]:
        async with self._lock:
            try:
                data = await asyncio.to_thread(self._read)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to read engine state from {self.path}: {e}")
                return None
        if not data:
            return None
        try:
            return PersistedState.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt engine state in {self.path}, ignoring: {e}")
            return None

    async def save(self, state: PersistedState) -> bool:
        data = state.to_dict()
        async with self._lock:
            try:
                await asyncio.to_thread(self._write, data)
                return True
            except OSError as e:
                logger.warning(f"⚠️ Failed to write engine state to {self.path}: {e}")
                return False

    async def close(self) -> None:
        return None


def build_persistence(settings: EngineSettings) -> EnginePersistence:
    backend = settings.persistence_backend
    if backend == "memory":
        return InMemoryPersistence()
    if backend == "redis":
        return RedisPersistence(settings.redis_url)
    if backend == "file":
        return JsonFilePersistence(settings.audit_log_path)
    raise ConfigurationError(f"Unknown persistence backend: {backend}", ["AIEDR_PERSISTENCE_BACKEND"])
