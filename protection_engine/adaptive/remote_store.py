# =============================================================================
# remote_store.py — KVStore backed by a hosted Redis REST endpoint
#                   (Upstash-compatible wire protocol)
#
# Wire format:
#   POST {url}              body ["SET", "k", "v"]          -> {"result": ...}
#   POST {url}/pipeline     body [["ZADD", ...], [...]]     -> [{"result": ...}, ...]
#   POST {url}/multi-exec   same, applied as one transaction
#
# Any non-2xx response fails the whole call. Transport errors and timeouts
# surface as StoreUnavailable.
# =============================================================================

import logging
import math
from typing import Any, Callable

import httpx

from protection_engine import config
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import StoreError, StoreUnavailable

logger = logging.getLogger(__name__)


def _num(value: float) -> str:
    """Render a score the way Redis expects it."""
    if math.isinf(value):
        return "+inf" if value > 0 else "-inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _as_dict(result: Any) -> dict[str, str]:
    """HGETALL comes back as a flat [field, value, ...] list."""
    if not result:
        return {}
    if isinstance(result, dict):
        return {str(k): str(v) for k, v in result.items()}
    return {str(result[i]): str(result[i + 1]) for i in range(0, len(result), 2)}


# ── Command encoders / result decoders ─────────────────────────────────────────

_COMMANDS: dict[str, Callable[..., list[str]]] = {
    "get":       lambda key: ["GET", key],
    "set":       lambda key, value, ttl=None: (
        ["SET", key, str(value)] + (["EX", str(int(ttl))] if ttl is not None else [])
    ),
    "delete":    lambda key: ["DEL", key],
    "increment": lambda key: ["INCR", key],
    "expire":    lambda key, ttl_seconds: ["EXPIRE", key, str(int(ttl_seconds))],
    "ttl":       lambda key: ["TTL", key],
    "sorted_set_add":             lambda key, score, member: ["ZADD", key, _num(score), member],
    "sorted_set_range":           lambda key, start, stop: ["ZRANGE", key, str(start), str(stop)],
    "sorted_set_range_by_score":  lambda key, lo, hi: ["ZRANGEBYSCORE", key, _num(lo), _num(hi)],
    "sorted_set_trim_by_rank":    lambda key, start, stop: ["ZREMRANGEBYRANK", key, str(start), str(stop)],
    "sorted_set_remove_by_score": lambda key, lo, hi: ["ZREMRANGEBYSCORE", key, _num(lo), _num(hi)],
    "hash_increment": lambda key, field, amount=1: ["HINCRBY", key, field, str(amount)],
    "hash_get_all":   lambda key: ["HGETALL", key],
    "keys":           lambda pattern: ["KEYS", pattern],
}

_DECODERS: dict[str, Callable[[Any], Any]] = {
    "get":       lambda r: r,
    "set":       lambda r: r == "OK",
    "delete":    int,
    "increment": int,
    "expire":    lambda r: bool(int(r)),
    "ttl":       int,
    "sorted_set_add":             int,
    "sorted_set_range":           lambda r: list(r or []),
    "sorted_set_range_by_score":  lambda r: list(r or []),
    "sorted_set_trim_by_rank":    int,
    "sorted_set_remove_by_score": int,
    "hash_increment": int,
    "hash_get_all":   _as_dict,
    "keys":           lambda r: list(r or []),
}


class RemoteStore(KVStore):
    """Thin wrapper around the hosted store's REST API."""

    name = "remote"
    supports_sorted_sets = True

    def __init__(
        self,
        url: str = config.REMOTE_STORE_URL,
        token: str = config.REMOTE_STORE_TOKEN,
        timeout: float = config.REMOTE_STORE_TIMEOUT_SECS,
        client: httpx.Client | None = None,
    ):
        if not url:
            raise ValueError("RemoteStore requires a REST endpoint URL")
        self.url      = url.rstrip("/")
        self.timeout  = timeout
        self._headers = {"Authorization": f"Bearer {token}"}
        self._owns_client = client is None
        self.client   = client or httpx.Client(timeout=timeout)
        logger.info(f"Remote KV store configured at {self.url}")

    # ── HTTP ──────────────────────────────────────────────────────────────────

    def _post(self, path: str, body: list) -> Any:
        try:
            resp = self.client.post(
                self.url + path, json=body, headers=self._headers, timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise StoreUnavailable(self.name, "request timed out", e) from e
        except httpx.TransportError as e:
            raise StoreUnavailable(self.name, "connection failed", e) from e

        if resp.is_error:
            raise StoreError(self.name, f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise StoreError(self.name, "response was not valid JSON", e) from e

    def _unwrap(self, reply: Any) -> Any:
        if not isinstance(reply, dict):
            raise StoreError(self.name, f"unexpected reply: {reply!r}")
        if "error" in reply:
            raise StoreError(self.name, str(reply["error"]))
        return reply.get("result")

    def _call(self, op: str, *args) -> Any:
        reply = self._post("", _COMMANDS[op](*args))
        return _DECODERS[op](self._unwrap(reply))

    def execute_pipeline(self, commands, transaction=True):
        """Send the whole batch in one request; /multi-exec when transactional."""
        body    = [_COMMANDS[op](*args) for op, args in commands]
        replies = self._post("/multi-exec" if transaction else "/pipeline", body)
        if not isinstance(replies, list) or len(replies) != len(commands):
            raise StoreError(self.name, f"pipeline reply does not match {len(commands)} commands")
        return [_DECODERS[op](self._unwrap(r)) for (op, _), r in zip(commands, replies)]

    # ── Strings / counters ────────────────────────────────────────────────────

    def get(self, key):
        return self._call("get", key)

    def set(self, key, value, ttl=None):
        return self._call("set", key, value, ttl)

    def delete(self, key):
        return self._call("delete", key)

    def increment(self, key):
        return self._call("increment", key)

    def expire(self, key, ttl_seconds):
        return self._call("expire", key, ttl_seconds)

    def ttl(self, key):
        return self._call("ttl", key)

    # ── Sorted sets ───────────────────────────────────────────────────────────

    def sorted_set_add(self, key, score, member):
        return self._call("sorted_set_add", key, score, member)

    def sorted_set_range(self, key, start, stop):
        return self._call("sorted_set_range", key, start, stop)

    def sorted_set_range_by_score(self, key, min_score, max_score):
        return self._call("sorted_set_range_by_score", key, min_score, max_score)

    def sorted_set_trim_by_rank(self, key, start, stop):
        return self._call("sorted_set_trim_by_rank", key, start, stop)

    def sorted_set_remove_by_score(self, key, min_score, max_score):
        return self._call("sorted_set_remove_by_score", key, min_score, max_score)

    # ── Hashes / keys ─────────────────────────────────────────────────────────

    def hash_increment(self, key, field, amount=1):
        return self._call("hash_increment", key, field, amount)

    def hash_get_all(self, key):
        return self._call("hash_get_all", key)

    def keys(self, pattern):
        return self._call("keys", pattern)

    # ── Connection ────────────────────────────────────────────────────────────

    def ping(self) -> bool:
        """Returns True if the store is reachable."""
        try:
            return self._unwrap(self._post("", ["PING"])) == "PONG"
        except StoreError:
            return False

    def health(self) -> dict:
        if not self.ping():
            return {"status": "unreachable", "backend": self.name}
        return {"status": "ok", "backend": self.name, "url": self.url}

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
