"""
Durable persistence backends for configuration namespaces.

The configuration store only depends on the read/write contract defined
by ``DurablePersistence``. Each written blob carries a ``last_modified``
timestamp that is stripped again on read.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import RedisError

from ..utils.functional import format_timestamp
from .errors import ConfigurationPersistenceError

logger = logging.getLogger(__name__)

METADATA_KEY = "last_modified"


def _stamp(data: Dict[str, Any]) -> Dict[str, Any]:
    stamped = copy.deepcopy(data)
    stamped[METADATA_KEY] = format_timestamp()
    return stamped


def _strip(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != METADATA_KEY}


class DurablePersistence(ABC):
    """Read/write contract for namespace blobs."""

    @abstractmethod
    async def read(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the stored value of a namespace, or None if absent."""

    @abstractmethod
    async def write(self, name: str, data: Dict[str, Any]) -> None:
        """Store a namespace value, replacing any previous one."""

    @abstractmethod
    async def list_names(self) -> List[str]:
        """Names of all stored namespaces."""


class InMemoryPersistence(DurablePersistence):
    """Process-local persistence, mostly for tests and embedded use."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._blobs: Dict[str, Dict[str, Any]] = {
            name: _stamp(value) for name, value in (initial or {}).items()
        }

    async def read(self, name: str) -> Optional[Dict[str, Any]]:
        blob = self._blobs.get(name)
        return _strip(copy.deepcopy(blob)) if blob is not None else None

    async def write(self, name: str, data: Dict[str, Any]) -> None:
        self._blobs[name] = _stamp(data)

    async def list_names(self) -> List[str]:
        return list(self._blobs)

    def last_modified(self, name: str) -> Optional[str]:
        blob = self._blobs.get(name)
        return blob.get(METADATA_KEY) if blob else None


class JsonFilePersistence(DurablePersistence):
    """
    One ``<name>.json`` file per namespace inside a directory.

    File I/O runs in a worker thread so the event loop is not blocked.
    """

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def _path(self, name: str) -> Path:
        return self.config_dir / f"{name}.json"

    def _read_sync(self, name: str) -> Optional[Dict[str, Any]]:
        path = self._path(name)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigurationPersistenceError(f"{path} does not contain a JSON object")
        return _strip(data)

    def _write_sync(self, name: str, data: Dict[str, Any]) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(_stamp(data), f, indent=2)
        tmp_path.replace(path)

    async def read(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._read_sync, name)
        except (OSError, ValueError) as e:
            raise ConfigurationPersistenceError(f"Failed to read configuration '{name}': {e}") from e

    async def write(self, name: str, data: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write_sync, name, data)
        except (OSError, TypeError, ValueError) as e:
            raise ConfigurationPersistenceError(f"Failed to write configuration '{name}': {e}") from e
        logger.debug(f"Configuration '{name}' written to {self._path(name)}")

    async def list_names(self) -> List[str]:
        if not self.config_dir.exists():
            return []
        return sorted(p.stem for p in self.config_dir.glob("*.json"))


class RedisPersistence(DurablePersistence):
    """
    Namespace blobs stored as JSON strings in Redis.

    Keys are ``config:<name>``; the set ``config:namespaces`` indexes them.
    """

    KEY_PREFIX = "config:"
    INDEX_KEY = "config:namespaces"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        client: Optional[Any] = None
    ):
        """
        Initialize Redis persistence.

        Args:
            redis_url: Redis connection URL, ignored when ``client`` is given
            client: Pre-built redis client (tests pass a mock)
        """
        self.redis_client = client or redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    def _key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}{name}"

    def _write_sync(self, name: str, data: Dict[str, Any]) -> None:
        pipe = self.redis_client.pipeline()
        pipe.set(self._key(name), json.dumps(_stamp(data)))
        pipe.sadd(self.INDEX_KEY, name)
        pipe.execute()

    async def read(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await asyncio.to_thread(self.redis_client.get, self._key(name))
        except RedisError as e:
            logger.error(f"Redis read of configuration '{name}' failed: {e}")
            raise ConfigurationPersistenceError(str(e)) from e
        if raw is None:
            return None
        try:
            return _strip(json.loads(raw))
        except (TypeError, ValueError) as e:
            raise ConfigurationPersistenceError(f"Corrupt configuration blob '{name}': {e}") from e

    async def write(self, name: str, data: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write_sync, name, data)
        except RedisError as e:
            logger.error(f"Redis write of configuration '{name}' failed: {e}")
            raise ConfigurationPersistenceError(str(e)) from e

    async def list_names(self) -> List[str]:
        try:
            names = await asyncio.to_thread(self.redis_client.smembers, self.INDEX_KEY)
        except RedisError as e:
            raise ConfigurationPersistenceError(str(e)) from e
        return sorted(names or [])

    def health_check(self) -> bool:
        """Check if Redis answers a ping."""
        try:
            return bool(self.redis_client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False
