import pytest
from redis.exceptions import MovedError, RedisClusterException, ResponseError

from callrelay.redis import manager as redis_manager
from callrelay.redis.manager import RedisManager


class _FakeRedis:
    def __init__(self) -> None:
        self.hgetall_calls = 0

    def hgetall(self, key: str) -> dict[str, str]:
        self.hgetall_calls += 1
        raise MovedError("1234 127.0.0.1:7001")


class _FakeClusterRedis:
    def __init__(self) -> None:
        self.hgetall_calls = 0

    def hgetall(self, key: str) -> dict[str, str]:
        self.hgetall_calls += 1
        return {"foo": "bar"}


class _FakePipeline:
    def __init__(self, owner: "_RecordingRedis") -> None:
        self.owner = owner
        self.commands: list[tuple] = []

    def __getattr__(self, name):
        def _record(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return _record

    def execute(self) -> list:
        self.owner.executed.append(self.commands)
        return [self.owner.pipeline_result for _ in self.commands]


class _RecordingRedis:
    def __init__(self) -> None:
        self.executed: list[list[tuple]] = []
        self.pipeline_result = 1

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    def zrange(self, key, start, end, desc=False):
        self.zrange_args = (key, start, end, desc)
        return ["b", "a"] if desc else ["a", "b"]

    def ping(self) -> bool:
        return True


def _manager(monkeypatch, client, **kwargs) -> RedisManager:
    monkeypatch.setattr(redis_manager.redis, "Redis", lambda *args, **kw: client)
    return RedisManager(
        host="example.redis.local",
        port=6380,
        access_key="dummy",
        ssl=False,
        credential=object(),
        **kwargs,
    )


def test_get_hash_switches_to_cluster(monkeypatch):
    single_node_client = _FakeRedis()
    cluster_client = _FakeClusterRedis()

    monkeypatch.setattr(redis_manager, "RedisCluster", lambda *args, **kwargs: cluster_client)
    mgr = _manager(monkeypatch, single_node_client)

    data = mgr.get_hash("callrelay:session:session-123")

    assert data == {"foo": "bar"}
    assert single_node_client.hgetall_calls == 1
    assert cluster_client.hgetall_calls == 1
    assert mgr.use_cluster is True


def test_get_hash_raises_without_cluster_support(monkeypatch):
    single_node_client = _FakeRedis()
    monkeypatch.setattr(
        redis_manager,
        "RedisCluster",
        lambda *args, **kwargs: (_ for _ in ()).throw(RedisClusterException("cluster unavailable")),
    )
    mgr = _manager(monkeypatch, single_node_client)

    with pytest.raises(MovedError):
        mgr.get_hash("callrelay:session:session-123")


def test_cluster_initialization_falls_back_to_standalone(monkeypatch):
    standalone_client = _FakeClusterRedis()
    monkeypatch.setattr(
        redis_manager,
        "RedisCluster",
        lambda *args, **kwargs: (_ for _ in ()).throw(RedisClusterException("cluster unavailable")),
    )
    mgr = _manager(monkeypatch, standalone_client, use_cluster=True)

    assert mgr.redis_client is standalone_client
    assert mgr.use_cluster is False


def test_missing_host_is_rejected(monkeypatch):
    monkeypatch.delenv("REDIS_HOST", raising=False)
    with pytest.raises(ValueError):
        RedisManager(access_key="dummy", port=6380, credential=object())


def test_host_with_port_suffix_is_split(monkeypatch):
    monkeypatch.setattr(redis_manager.redis, "Redis", lambda *args, **kw: _RecordingRedis())
    mgr = RedisManager(host="cache.local:6379", access_key="dummy", ssl=False)
    assert mgr.host == "cache.local"
    assert mgr.port == 6379


def test_merge_hash_sets_fields_and_ttl_in_one_transaction(monkeypatch):
    client = _RecordingRedis()
    mgr = _manager(monkeypatch, client)

    mgr.merge_hash("callrelay:session:s1", {"status": '"active"'}, ttl_seconds=60)

    [commands] = client.executed
    assert [name for name, _, _ in commands] == ["hset", "expire"]
    assert commands[0][2] == {"mapping": {"status": '"active"'}}
    assert commands[1][1] == ("callrelay:session:s1", 60)


def test_zadd_bounded_trims_to_max_len(monkeypatch):
    client = _RecordingRedis()
    mgr = _manager(monkeypatch, client)

    mgr.zadd_bounded("callrelay:org:o1:sessions", "s1", 10.0, ttl_seconds=30, max_len=100)

    [commands] = client.executed
    assert [name for name, _, _ in commands] == ["zadd", "zremrangebyrank", "expire"]
    assert commands[1][1] == ("callrelay:org:o1:sessions", 0, -101)


def test_zrange_limit_maps_to_inclusive_end(monkeypatch):
    client = _RecordingRedis()
    mgr = _manager(monkeypatch, client)

    assert mgr.zrange("k", limit=5, desc=True) == ["b", "a"]
    assert client.zrange_args == ("k", 0, 4, True)


def test_command_errors_are_not_retried(monkeypatch):
    calls = {"count": 0}

    class _WrongType(_RecordingRedis):
        def hgetall(self, key):
            calls["count"] += 1
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

    mgr = _manager(monkeypatch, _WrongType())
    with pytest.raises(ResponseError):
        mgr.get_hash("k")
    assert calls["count"] == 1


async def test_async_wrappers_run_in_executor(monkeypatch):
    client = _RecordingRedis()
    mgr = _manager(monkeypatch, client)

    assert await mgr.ping_async() is True
    assert await mgr.incr_async("callrelay:session:s1:seq", 60) == 1
