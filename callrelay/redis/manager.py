import asyncio
import os
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import SpanKind
from redis.cluster import RedisCluster
from redis.exceptions import (
    AuthenticationError,
    MovedError,
    RedisClusterException,
    RedisError,
    TimeoutError,
)
from redis.exceptions import ConnectionError as RedisConnectionError
from utils.azure_auth import get_credential
from utils.ml_logging import get_logger

import redis
from callrelay.enums.monitoring import PeerService, SpanAttr

T = TypeVar("T")


class RedisManager:
    """
    RedisManager wraps a Redis (or Azure Managed Redis) client with retry,
    tracing and the handful of primitives the conversation state store needs:
    hash merges, atomic counters, sequence-scored sorted sets and plain keys.

    All public sync methods run through ``_execute_with_retry``. The ``*_async``
    variants push the blocking call onto the default executor and propagate
    failures to the caller.
    """

    def __init__(
        self,
        host: str | None = None,
        access_key: str | None = None,
        port: int | None = None,
        db: int = 0,
        ssl: bool | None = None,
        credential: object | None = None,
        user_name: str | None = None,
        scope: str | None = None,
        use_cluster: bool | None = None,
        client_name: str = "callrelay-api",
    ):
        self.logger = get_logger(__name__)
        self.host = host or os.getenv("REDIS_HOST")
        self.access_key = access_key or os.getenv("REDIS_ACCESS_KEY")

        if port is not None:
            self.port = int(port)
        else:
            port_env = os.getenv("REDIS_PORT")
            if port_env:
                self.port = int(port_env)
            else:
                # Default to 10000 for Azure Redis Enterprise
                self.port = 10000
                self.logger.warning("REDIS_PORT not set, defaulting to 10000")

        self.db = db
        if ssl is None:
            ssl = os.getenv("REDIS_SSL", "true").lower() in {"1", "true", "yes", "on"}
        self.ssl = ssl
        self.client_name = client_name
        self.tracer = trace.get_tracer(__name__)
        use_cluster_env = os.getenv("REDIS_USE_CLUSTER") or os.getenv("REDIS_CLUSTER_MODE")
        if use_cluster is not None:
            self.use_cluster = use_cluster
        elif use_cluster_env is not None:
            self.use_cluster = str(use_cluster_env).lower() in {"1", "true", "yes", "on"}
        else:
            self.use_cluster = False
        if not self.host:
            raise ValueError(
                "Redis host must be provided either as argument or environment variable."
            )
        if ":" in self.host:
            host_parts = self.host.rsplit(":", 1)
            if host_parts[1].isdigit():
                self.host = host_parts[0]
                self.port = int(host_parts[1])

        # AAD credential details, only resolved when no access key is configured
        self.credential = credential
        if not self.access_key and self.credential is None:
            self.credential = get_credential()
        self.scope = scope or os.getenv("REDIS_SCOPE") or "https://redis.azure.com/.default"
        self.user_name = user_name or os.getenv("REDIS_USER_NAME") or "user"
        self.token_expiry = 0

        self.logger.debug("Redis cluster mode enabled: %s", self.use_cluster)
        self._create_client()
        if not self.access_key:
            t = threading.Thread(target=self._refresh_loop, daemon=True)
            t.start()

    async def initialize(self) -> None:
        """
        Async initialization for FastAPI lifespan compatibility.

        Validates Redis connectivity; safe to call more than once.
        """
        self.logger.debug("Validating Redis connection to %s:%s", self.host, self.port)
        try:
            loop = asyncio.get_running_loop()
            healthy = await loop.run_in_executor(None, self._health_check)
        except Exception as e:
            self.logger.error("Redis initialization failed: %s", e)
            raise ConnectionError(f"Failed to initialize Redis: {e}") from e
        if not healthy:
            raise ConnectionError("Redis health check failed")
        self.logger.debug("Redis connection validated successfully")

    def _health_check(self) -> bool:
        if not self._execute_with_retry("PING", lambda: self.redis_client.ping()):
            return False

        test_key = "callrelay:health_check"
        self._execute_with_retry("SET", lambda: self.redis_client.set(test_key, "ok", ex=5))
        result = self._execute_with_retry("GET", lambda: self.redis_client.get(test_key))
        self._execute_with_retry("DEL", lambda: self.redis_client.delete(test_key))
        return result == "ok"

    def _redis_span(self, name: str, op: str | None = None):
        host = (self.host or "").split(":")[0]
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.CLIENT,
            attributes={
                SpanAttr.PEER_SERVICE.value: PeerService.AZURE_MANAGED_REDIS,
                SpanAttr.SERVER_ADDRESS.value: host,
                SpanAttr.SERVER_PORT.value: self.port or 6380,
                SpanAttr.DB_SYSTEM.value: "redis",
                **({SpanAttr.DB_OPERATION.value: op} if op else {}),
            },
        )

    def _execute_with_retry(
        self, command_name: str, operation: Callable[[], T], retries: int = 2
    ) -> T:
        """Execute a Redis operation with retry and client reconfiguration."""
        last_exc: Exception | None = None
        for attempt in range(retries + 1):
            try:
                return operation()
            except AuthenticationError as auth_err:
                last_exc = auth_err
                self.logger.info(
                    "Redis authentication error on %s, refreshing credentials",
                    command_name,
                )
                self._create_client()
            except MovedError as moved_err:
                last_exc = moved_err
                self.logger.warning(
                    "Redis MOVED error on %s: %s. Enabling cluster mode and reconnecting.",
                    command_name,
                    moved_err,
                )
                self.use_cluster = True
                self._create_client()
            except (RedisConnectionError, TimeoutError) as redis_err:
                last_exc = redis_err
                self.logger.warning(
                    "Redis error on %s (attempt %d/%d): %s",
                    command_name,
                    attempt + 1,
                    retries + 1,
                    redis_err,
                )
                if attempt >= retries:
                    break
                self._create_client()
            except RedisClusterException as cluster_err:
                last_exc = cluster_err
                self.logger.warning(
                    "Redis cluster error on %s (attempt %d/%d): %s",
                    command_name,
                    attempt + 1,
                    retries + 1,
                    cluster_err,
                )
                if attempt >= retries:
                    break
                self._create_client()
            except RedisError as redis_err:
                # Command-level errors (WRONGTYPE, script errors) are not retryable
                self.logger.error("Redis command %s failed: %s", command_name, redis_err)
                raise
            except OSError as os_err:
                # Handle "I/O operation on closed file" and similar socket errors
                last_exc = os_err
                self.logger.warning(
                    "Redis I/O error on %s (attempt %d/%d): %s",
                    command_name,
                    attempt + 1,
                    retries + 1,
                    os_err,
                )
                if attempt >= retries:
                    break
                self._create_client()

        if last_exc:
            raise last_exc
        raise RedisError(f"Redis command {command_name} failed without exception")

    def _create_client(self):
        """(Re)create Redis client and record expiry for AAD if needed."""
        common_kwargs = {
            "host": self.host,
            "port": self.port,
            "ssl": self.ssl,
            "decode_responses": True,
            "socket_keepalive": True,
            "health_check_interval": 30,
            "socket_connect_timeout": 0.5,
            "socket_timeout": 1.0,
            "max_connections": 200,
            "client_name": self.client_name,
        }

        if self.access_key:
            auth_kwargs = {"password": self.access_key}
        else:
            token = self.credential.get_token(self.scope)
            self.token_expiry = token.expires_on
            auth_kwargs = {"username": self.user_name, "password": token.token}

        try:
            if self.use_cluster:
                cluster_kwargs = {
                    **common_kwargs,
                    **auth_kwargs,
                    "require_full_coverage": False,
                    "reinitialize_steps": 1,
                }
                self.redis_client = RedisCluster(**cluster_kwargs)
                self.logger.debug("Redis connection initialized in cluster mode.")
            else:
                standalone_kwargs = {**common_kwargs, "db": self.db, **auth_kwargs}
                self.redis_client = redis.Redis(**standalone_kwargs)
                self.logger.debug("Redis connection initialized in standalone mode.")
        except RedisClusterException as exc:
            self.logger.warning("Redis cluster initialization failed (will try standalone): %s", exc)
            standalone_kwargs = {**common_kwargs, "db": self.db, **auth_kwargs}
            self.redis_client = redis.Redis(**standalone_kwargs)
            self.use_cluster = False

    def _refresh_loop(self):
        """Background thread: sleep until just before expiry, then refresh token."""
        while True:
            now = int(time.time())
            wait = max(self.token_expiry - now - 60, 1)
            time.sleep(wait)
            try:
                self.logger.debug("Refreshing Redis AAD token in background...")
                self._create_client()
            except Exception as e:
                self.logger.error("Failed to refresh Redis token: %s", e)
                time.sleep(5)

    def ping(self) -> bool:
        def _ping():
            with self._redis_span("Redis.PING"):
                return bool(self.redis_client.ping())

        return self._execute_with_retry("PING", _ping)

    # ------------------------------------------------------------------ #
    # Plain keys
    # ------------------------------------------------------------------ #
    def set_value(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Set a string value (optionally with TTL)."""

        def _set_operation():
            with self._redis_span("Redis.SET", "SET"):
                if ttl_seconds is not None:
                    return bool(self.redis_client.setex(key, ttl_seconds, str(value)))
                return bool(self.redis_client.set(key, str(value)))

        return self._execute_with_retry("SET", _set_operation)

    def get_value(self, key: str) -> str | None:
        def _get_operation():
            with self._redis_span("Redis.GET", "GET"):
                value = self.redis_client.get(key)
                return value.decode() if isinstance(value, bytes) else value

        return self._execute_with_retry("GET", _get_operation)

    def delete_keys(self, *keys: str) -> int:
        def _delete_operation():
            with self._redis_span("Redis.DEL", "DEL"):
                return int(self.redis_client.delete(*keys))

        return self._execute_with_retry("DEL", _delete_operation)

    def expire_keys(self, keys: list[str], ttl_seconds: int) -> None:
        """Refresh TTL on several keys in one round trip; missing keys are ignored."""

        def _expire_operation():
            with self._redis_span("Redis.EXPIRE", "EXPIRE"):
                pipe = self.redis_client.pipeline(transaction=False)
                for key in keys:
                    pipe.expire(key, ttl_seconds)
                pipe.execute()

        self._execute_with_retry("EXPIRE", _expire_operation)

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        """Atomically increment a counter and refresh its TTL."""

        def _incr_operation():
            with self._redis_span("Redis.INCR", "INCR"):
                pipe = self.redis_client.pipeline(transaction=True)
                pipe.incr(key)
                if ttl_seconds is not None:
                    pipe.expire(key, ttl_seconds)
                return int(pipe.execute()[0])

        return self._execute_with_retry("INCR", _incr_operation)

    # ------------------------------------------------------------------ #
    # Hashes
    # ------------------------------------------------------------------ #
    def merge_hash(self, key: str, mapping: dict[str, str], ttl_seconds: int | None = None) -> int:
        """Field-level merge into a hash, refreshing TTL in the same transaction."""

        def _hset_operation():
            with self._redis_span("Redis.HSET", "HSET"):
                pipe = self.redis_client.pipeline(transaction=True)
                if mapping:
                    pipe.hset(key, mapping=mapping)
                if ttl_seconds is not None:
                    pipe.expire(key, ttl_seconds)
                results = pipe.execute()
                return int(results[0]) if mapping else 0

        return self._execute_with_retry("HSET", _hset_operation)

    def get_hash(self, key: str) -> dict[str, str]:
        def _hgetall_operation():
            with self._redis_span("Redis.HGETALL", "HGETALL"):
                return dict(self.redis_client.hgetall(key))

        return self._execute_with_retry("HGETALL", _hgetall_operation)

    # ------------------------------------------------------------------ #
    # Sorted sets
    # ------------------------------------------------------------------ #
    def zadd_bounded(
        self,
        key: str,
        member: str,
        score: float,
        ttl_seconds: int | None = None,
        max_len: int | None = None,
    ) -> None:
        """Add a scored member, keep the ``max_len`` highest scores, refresh TTL."""

        def _zadd_operation():
            with self._redis_span("Redis.ZADD", "ZADD"):
                pipe = self.redis_client.pipeline(transaction=True)
                pipe.zadd(key, {member: score})
                if max_len is not None:
                    pipe.zremrangebyrank(key, 0, -(max_len + 1))
                if ttl_seconds is not None:
                    pipe.expire(key, ttl_seconds)
                pipe.execute()

        self._execute_with_retry("ZADD", _zadd_operation)

    def zrange(self, key: str, limit: int | None = None, desc: bool = False) -> list[str]:
        end = -1 if limit is None else limit - 1

        def _zrange_operation():
            with self._redis_span("Redis.ZRANGE", "ZRANGE"):
                return list(self.redis_client.zrange(key, 0, end, desc=desc))

        return self._execute_with_retry("ZRANGE", _zrange_operation)

    def zrem(self, key: str, member: str) -> int:
        def _zrem_operation():
            with self._redis_span("Redis.ZREM", "ZREM"):
                return int(self.redis_client.zrem(key, member))

        return self._execute_with_retry("ZREM", _zrem_operation)

    # ------------------------------------------------------------------ #
    # Async wrappers
    # ------------------------------------------------------------------ #
    async def _run(self, label: str, func: Callable[..., T], *args: Any) -> T:
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, func, *args)
        except asyncio.CancelledError:
            # Cancellation is normal during shutdown
            self.logger.debug("%s cancelled", label)
            raise

    async def ping_async(self) -> bool:
        return await self._run("ping_async", self.ping)

    async def set_value_async(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        return await self._run("set_value_async", self.set_value, key, value, ttl_seconds)

    async def get_value_async(self, key: str) -> str | None:
        return await self._run("get_value_async", self.get_value, key)

    async def delete_keys_async(self, *keys: str) -> int:
        return await self._run("delete_keys_async", self.delete_keys, *keys)

    async def expire_keys_async(self, keys: list[str], ttl_seconds: int) -> None:
        await self._run("expire_keys_async", self.expire_keys, keys, ttl_seconds)

    async def incr_async(self, key: str, ttl_seconds: int | None = None) -> int:
        return await self._run("incr_async", self.incr, key, ttl_seconds)

    async def merge_hash_async(
        self, key: str, mapping: dict[str, str], ttl_seconds: int | None = None
    ) -> int:
        return await self._run("merge_hash_async", self.merge_hash, key, mapping, ttl_seconds)

    async def get_hash_async(self, key: str) -> dict[str, str]:
        return await self._run("get_hash_async", self.get_hash, key)

    async def zadd_bounded_async(
        self,
        key: str,
        member: str,
        score: float,
        ttl_seconds: int | None = None,
        max_len: int | None = None,
    ) -> None:
        await self._run(
            "zadd_bounded_async", self.zadd_bounded, key, member, score, ttl_seconds, max_len
        )

    async def zrange_async(self, key: str, limit: int | None = None, desc: bool = False) -> list[str]:
        return await self._run("zrange_async", self.zrange, key, limit, desc)

    async def zrem_async(self, key: str, member: str) -> int:
        return await self._run("zrem_async", self.zrem, key, member)
