"""
Shared fixtures for the protection engine test suite.

FakeUpstash is an in-process stand-in for the hosted REST store: it speaks
the same JSON wire protocol and is mounted behind httpx.MockTransport, so
RemoteStore runs its real request/response code against it.
"""

import fnmatch
import json
import math

import httpx
import pytest

from protection_engine.adaptive.memory_store import InMemoryStore
from protection_engine.adaptive.remote_store import RemoteStore

START_TIME   = 1_773_144_000.0        # 2026-03-10 12:00:00 UTC
REMOTE_URL   = "https://fake-store.test"
REMOTE_TOKEN = "test-token"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class _CommandError(Exception):
    pass


class FakeUpstash:
    """
    Minimal Redis-over-REST server: strings, sorted sets, hashes and key
    expiry, driven by the same clock as the code under test.

    Set `fail` to "timeout", "down" or "http500" to simulate an outage.
    """

    def __init__(self, clock: FakeClock, token: str = REMOTE_TOKEN):
        self.clock    = clock
        self.token    = token
        self.data: dict[str, object] = {}      # str | dict (hash) | ZSet
        self.expiry: dict[str, float] = {}
        self.requests: list[httpx.Request] = []
        self.fail: str | None = None

    # ── Transport entry point ─────────────────────────────────────────────────

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail == "timeout":
            raise httpx.ReadTimeout("fake store timed out", request=request)
        if self.fail == "down":
            raise httpx.ConnectError("fake store unreachable", request=request)
        if self.fail == "http500":
            return httpx.Response(500, text="internal error")
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "Unauthorized"})

        body = json.loads(request.content)
        path = request.url.path
        if path.endswith("/pipeline") or path.endswith("/multi-exec"):
            return httpx.Response(200, json=[self._reply(cmd) for cmd in body])
        return httpx.Response(200, json=self._reply(body))

    def _reply(self, command: list) -> dict:
        try:
            return {"result": self._execute(command)}
        except _CommandError as e:
            return {"error": str(e)}

    # ── Storage helpers ───────────────────────────────────────────────────────

    def _live(self, key: str):
        exp = self.expiry.get(key)
        if exp is not None and exp <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return self.data.get(key)

    def _zset(self, key: str, create: bool = False) -> dict:
        value = self._live(key)
        if value is None:
            if not create:
                return {}
            value = self.data[key] = {"__zset__": {}}
        if not isinstance(value, dict) or "__zset__" not in value:
            raise _CommandError("WRONGTYPE")
        return value["__zset__"]

    def _ranked(self, members: dict) -> list[str]:
        return [m for m, _ in sorted(members.items(), key=lambda kv: (kv[1], kv[0]))]

    @staticmethod
    def _rank_slice(n: int, start: int, stop: int) -> tuple[int, int]:
        if start < 0:
            start += n
        if stop < 0:
            stop += n
        return max(start, 0), min(stop, n - 1)

    def _drop_if_empty(self, key: str, members: dict):
        if not members:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    # ── Commands ──────────────────────────────────────────────────────────────

    def _execute(self, command: list):
        op, args = command[0].upper(), command[1:]

        if op == "PING":
            return "PONG"
        if op == "GET":
            value = self._live(args[0])
            if value is not None and not isinstance(value, str):
                raise _CommandError("WRONGTYPE")
            return value
        if op == "SET":
            key, value = args[0], args[1]
            self.data[key] = value
            self.expiry.pop(key, None)
            if len(args) > 2 and args[2].upper() == "EX":
                seconds = int(args[3])
                if seconds <= 0:
                    raise _CommandError("ERR invalid expire time in 'set' command")
                self.expiry[key] = self.clock() + seconds
            return "OK"
        if op == "DEL":
            removed = 0
            for key in args:
                if self._live(key) is not None:
                    del self.data[key]
                    self.expiry.pop(key, None)
                    removed += 1
            return removed
        if op == "INCR":
            value = self._live(args[0])
            try:
                new = int(value or 0) + 1
            except (TypeError, ValueError):
                raise _CommandError("ERR value is not an integer or out of range")
            self.data[args[0]] = str(new)
            return new
        if op == "EXPIRE":
            if self._live(args[0]) is None:
                return 0
            self.expiry[args[0]] = self.clock() + int(args[1])
            return 1
        if op == "TTL":
            if self._live(args[0]) is None:
                return -2
            exp = self.expiry.get(args[0])
            return -1 if exp is None else math.ceil(exp - self.clock())
        if op == "ZADD":
            members = self._zset(args[0], create=True)
            is_new  = args[2] not in members
            members[args[2]] = float(args[1])
            return int(is_new)
        if op == "ZRANGE":
            ranked = self._ranked(self._zset(args[0]))
            start, stop = self._rank_slice(len(ranked), int(args[1]), int(args[2]))
            return ranked[start:stop + 1] if start <= stop else []
        if op == "ZRANGEBYSCORE":
            members = self._zset(args[0])
            lo, hi  = float(args[1]), float(args[2])
            return [m for m in self._ranked(members) if lo <= members[m] <= hi]
        if op == "ZREMRANGEBYRANK":
            members = self._zset(args[0])
            ranked  = self._ranked(members)
            start, stop = self._rank_slice(len(ranked), int(args[1]), int(args[2]))
            doomed = ranked[start:stop + 1] if start <= stop else []
            for m in doomed:
                del members[m]
            self._drop_if_empty(args[0], members)
            return len(doomed)
        if op == "ZREMRANGEBYSCORE":
            members = self._zset(args[0])
            lo, hi  = float(args[1]), float(args[2])
            doomed  = [m for m, s in members.items() if lo <= s <= hi]
            for m in doomed:
                del members[m]
            self._drop_if_empty(args[0], members)
            return len(doomed)
        if op == "HINCRBY":
            value = self._live(args[0])
            if value is None:
                value = self.data[args[0]] = {}
            elif not isinstance(value, dict) or "__zset__" in value:
                raise _CommandError("WRONGTYPE")
            value[args[1]] = int(value.get(args[1], 0)) + int(args[2])
            return value[args[1]]
        if op == "HGETALL":
            value = self._live(args[0]) or {}
            flat = []
            for field, v in value.items():
                flat += [field, str(v)]
            return flat
        if op == "KEYS":
            return [k for k in list(self.data) if fnmatch.fnmatchcase(k, args[0]) and self._live(k) is not None]
        raise _CommandError(f"ERR unknown command '{op}'")


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    store = InMemoryStore(sweep_interval=None, clock=clock)
    yield store
    store.close()


@pytest.fixture
def fake_upstash(clock):
    return FakeUpstash(clock)


@pytest.fixture
def remote_store(fake_upstash):
    client = httpx.Client(transport=httpx.MockTransport(fake_upstash))
    store  = RemoteStore(url=REMOTE_URL, token=REMOTE_TOKEN, client=client)
    yield store
    client.close()


@pytest.fixture(params=["memory", "remote"])
def any_store(request):
    """Runs a test once per backend."""
    return request.getfixturevalue(f"{request.param}_store")
