import logging
import time
import redis
from data.database import ABTest, Assignment
from config import config

logger = logging.getLogger(__name__)

# Test definitions change only through lifecycle writes, which evict them
TEST_CACHE_TTL = 60
# Assignments are immutable, the TTL only bounds memory
ASSIGNMENT_CACHE_TTL = 60


def ab_test_key(test_id: str) -> str:
    return f"abt:{test_id}"


def assignment_key(test_id: str, session_id: str) -> str:
    return f"asn:{test_id}:{session_id}"


class _MockValkeyBackend:
    """In-process stand-in for Valkey. Honours expiry, is not shared across workers."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: str, ex: int):
        self._entries[key] = (value, self._clock() + ex)

    def delete(self, key: str):
        self._entries.pop(key, None)


class RealValkeyBackend:
    """redis-py client pointed at Valkey. Errors are logged and read as misses."""

    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        self.client = redis.Redis(host=host, port=port, db=db, password=password,
                                  decode_responses=True, socket_timeout=2.0)
        # fail at startup, not on the first request
        self.client.ping()

    def get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.error("Valkey GET %s failed: %s", key, e)
            return None

    def set(self, key: str, value: str, ex: int):
        try:
            self.client.set(key, value, ex=ex)
        except redis.RedisError as e:
            logger.error("Valkey SET %s failed: %s", key, e)

    def delete(self, key: str):
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            # a failed eviction leaves the stale entry until its TTL runs out
            logger.error("Valkey DEL %s failed: %s", key, e)


class CacheClient:
    """Read-through cache of test definitions and session assignments."""

    def __init__(self, backend):
        self.backend = backend

    def _load(self, model, key: str):
        json_str = self.backend.get(key)
        if not json_str:
            return None
        logger.debug("cache hit %s", key)
        return model.from_json(json_str)

    def _store(self, key: str, obj, ttl: int):
        self.backend.set(key, obj.to_json(), ex=ttl)
        logger.debug("cached %s for %ds", key, ttl)

    def get_test(self, test_id: str) -> ABTest | None:
        return self._load(ABTest, ab_test_key(test_id))

    def set_test(self, test: ABTest):
        self._store(ab_test_key(test.id), test, TEST_CACHE_TTL)

    def invalidate_test(self, test_id: str):
        self.backend.delete(ab_test_key(test_id))
        logger.debug("evicted %s", ab_test_key(test_id))

    def get_assignment(self, test_id: str, session_id: str) -> Assignment | None:
        return self._load(Assignment, assignment_key(test_id, session_id))

    def set_assignment(self, assignment: Assignment):
        self._store(assignment_key(assignment.test_id, assignment.session_id), assignment, ASSIGNMENT_CACHE_TTL)


def _build_backend():
    if not config.valkey_host:
        logger.info("VALKEY_HOST not set, caching in process memory.")
        return _MockValkeyBackend()

    try:
        backend = RealValkeyBackend(host=config.valkey_host, port=config.valkey_port)
        logger.info("Caching in Valkey at %s:%d.", config.valkey_host, config.valkey_port)
        return backend
    except redis.RedisError as e:
        logger.warning("Valkey at %s:%d unreachable (%s), caching in process memory.",
                       config.valkey_host, config.valkey_port, e)
        return _MockValkeyBackend()


_DEFAULT_CACHE_CLIENT = CacheClient(backend=_build_backend())


def get_cache_client():
    return _DEFAULT_CACHE_CLIENT


def get_mock_cache_client():
    return CacheClient(backend=_MockValkeyBackend())
