"""Assumed-role session cache with single-flight assumption."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from no_wing.aws_credentials.sts_provider import TemporaryCredentials
from no_wing.domain.roles import Role
from no_wing.utils.time import ensure_utc, utc_now


@dataclass(frozen=True)
class AssumedSession:
    role: Role
    session_name: str
    credentials: TemporaryCredentials = field(repr=False)
    assumed_at: datetime = field(default_factory=utc_now)

    @property
    def role_arn(self) -> str:
        return self.role.role_arn

    @property
    def expiration(self) -> datetime:
        return ensure_utc(self.credentials.expiration)

    def is_active(self, now: datetime | None = None) -> bool:
        return ensure_utc(now or utc_now()) < self.expiration

    def remaining_seconds(self, now: datetime | None = None) -> float:
        return (self.expiration - ensure_utc(now or utc_now())).total_seconds()

    def is_expiring_soon(self, buffer_seconds: int, now: datetime | None = None) -> bool:
        return self.expiration <= ensure_utc(now or utc_now()) + timedelta(seconds=buffer_seconds)


class SessionCache:
    """Holds at most one session per role ARN.

    Expiry is lazy: an expired entry stays in the map until the next
    assumption for the same role replaces it or it is released. A session
    counts as usable while more than ``refresh_buffer_seconds`` remain; the
    same window applies to reuse, ``get_active`` and ``active``.
    """

    def __init__(self, refresh_buffer_seconds: int = 0) -> None:
        self._refresh_buffer_seconds = refresh_buffer_seconds
        self._sessions: OrderedDict[str, AssumedSession] = OrderedDict()
        self._in_flight: dict[str, asyncio.Future[AssumedSession]] = {}
        self._lock = asyncio.Lock()

    def get(self, role_arn: str) -> AssumedSession | None:
        return self._sessions.get(role_arn)

    def get_active(self, role_arn: str, now: datetime | None = None) -> AssumedSession | None:
        session = self._sessions.get(role_arn)
        return session if self._usable(session, now) else None

    def values(self) -> list[AssumedSession]:
        return list(self._sessions.values())

    def active(self, now: datetime | None = None) -> list[AssumedSession]:
        current = now or utc_now()
        return [session for session in self._sessions.values() if self._usable(session, current)]

    async def put(self, session: AssumedSession) -> None:
        async with self._lock:
            self._sessions[session.role_arn] = session
            self._sessions.move_to_end(session.role_arn)

    async def delete(self, role_arn: str) -> bool:
        async with self._lock:
            return self._sessions.pop(role_arn, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            return count

    def _usable(self, session: AssumedSession | None, now: datetime | None = None) -> bool:
        return session is not None and not session.is_expiring_soon(
            self._refresh_buffer_seconds, now
        )

    async def get_or_assume(
        self,
        role_arn: str,
        assume_fn: Callable[[], Awaitable[AssumedSession]],
    ) -> tuple[AssumedSession, bool]:
        """Return a live session for ``role_arn``, assuming it at most once.

        The second element is ``True`` when an existing session was reused,
        either from the cache or from an assumption already in flight.
        """
        async with self._lock:
            session = self._sessions.get(role_arn)
            if self._usable(session):
                self._sessions.move_to_end(role_arn)
                return session, True

            in_flight = self._in_flight.get(role_arn)
            if in_flight is None:
                in_flight = asyncio.get_running_loop().create_future()
                self._in_flight[role_arn] = in_flight
                should_assume = True
            else:
                should_assume = False

        if not should_assume:
            return await asyncio.shield(in_flight), True

        try:
            session = await assume_fn()
        except BaseException as exc:
            async with self._lock:
                future = self._in_flight.pop(role_arn, None)
                if future and not future.done():
                    future.set_exception(exc)
                    # Retrieved here so a future nobody awaits does not warn.
                    future.exception()
            raise

        async with self._lock:
            self._sessions[role_arn] = session
            self._sessions.move_to_end(role_arn)
            future = self._in_flight.pop(role_arn, None)
            if future and not future.done():
                future.set_result(session)

        return session, False
