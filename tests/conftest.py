"""
Shared fixtures: an in-memory stand-in for an asyncpg pool
==========================================================

``FakeConnection`` answers queries from scripted responses matched by SQL
substring (first match wins) and records every call, so store tests can
check both the outcome and which statements ran.
"""

import pytest

from firm_store import FirmStore


def sequence(*values):
    """Answer successive matching queries with ``values`` in order; the last one repeats."""
    remaining = list(values)

    def answer(*_args):
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]
    return answer


class _AsyncContext:
    def __init__(self, value=None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:

    def __init__(self):
        self.responses = []
        self.calls = []

    def on(self, needle, result):
        self.responses.append((needle, result))
        return self

    async def _answer(self, sql, args):
        self.calls.append((sql, args))
        for needle, result in self.responses:
            if needle in sql:
                return result(*args) if callable(result) else result
        return None

    async def fetchrow(self, sql, *args):
        return await self._answer(sql, args)

    async def fetchval(self, sql, *args):
        return await self._answer(sql, args)

    async def fetch(self, sql, *args):
        return (await self._answer(sql, args)) or []

    async def execute(self, sql, *args):
        await self._answer(sql, args)
        return "OK"

    def transaction(self):
        return _AsyncContext()

    def ran(self, needle):
        return [args for sql, args in self.calls if needle in sql]

    def audit_actions(self):
        return [args[1] for args in self.ran("INSERT INTO audit_log")]


class FakePool:

    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        return _AsyncContext(self.conn)


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def store(conn):
    return FirmStore(FakePool(conn))


@pytest.fixture
def seq():
    return sequence
