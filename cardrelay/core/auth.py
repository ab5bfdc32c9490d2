from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol, Sequence

from cryptography.hazmat.primitives import constant_time, hashes, hmac

from .users import UserDirectory

log = logging.getLogger("cardrelay.core.auth")

DEFAULT_MAX_AGE_SECS = 86400

ClockFn = Callable[[], float]


class VerificationStrategy(Protocol):
    name: str

    async def verify(self, credential: str) -> Optional[int]: ...


# ---------------------------------------------------------------------------
# Signed token helpers
# ---------------------------------------------------------------------------

def token_signature(secret: bytes, user_id: int, timestamp: int) -> str:
    """Hex HMAC-SHA256 over ``"<user_id>:<timestamp>"``."""

    mac = hmac.HMAC(secret, hashes.SHA256())
    mac.update(f"{user_id}:{timestamp}".encode("ascii"))
    return mac.finalize().hex()


def mint_token(user_id: int, secret: str | bytes, now: Optional[int] = None) -> str:
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    timestamp = int(time.time()) if now is None else int(now)
    return f"{user_id}:{timestamp}:{token_signature(key, user_id, timestamp)}"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class UserCodeStrategy:
    """Credential is a user's stable external code."""

    name = "user_code"

    def __init__(self, users: UserDirectory) -> None:
        self.users = users

    async def verify(self, credential: str) -> Optional[int]:
        matches = await self.users.find_active_by_code(credential)
        if len(matches) != 1:
            return None
        return matches[0].user_id


class SignedTokenStrategy:
    """Credential is ``user_id:timestamp:signature`` signed with the shared secret."""

    name = "signed_token"

    def __init__(
        self,
        users: UserDirectory,
        secret: str | bytes,
        *,
        max_age_secs: int = DEFAULT_MAX_AGE_SECS,
        clock: ClockFn = time.time,
    ) -> None:
        self.users = users
        self.secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.max_age_secs = max_age_secs
        self.clock = clock

    async def verify(self, credential: str) -> Optional[int]:
        parts = credential.split(":")
        if len(parts) != 3:
            return None
        raw_user_id, raw_timestamp, signature = parts
        try:
            user_id = int(raw_user_id)
            timestamp = int(raw_timestamp)
        except ValueError:
            return None

        if self.clock() - timestamp > self.max_age_secs:
            log.debug("Signed token for user %s expired", user_id)
            return None

        expected = token_signature(self.secret, user_id, timestamp)
        if not constant_time.bytes_eq(expected.encode("ascii"), signature.encode("utf-8")):
            return None

        if await self.users.find_active_by_id(user_id) is None:
            return None
        return user_id


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class TokenVerifier:
    """Tries each strategy in order; the first one yielding a user id wins.

    Lookup failures and timeouts count as a failed strategy, never as an error.
    """

    def __init__(self, strategies: Sequence[VerificationStrategy], *, timeout: Optional[float] = None) -> None:
        self.strategies = list(strategies)
        self.timeout = timeout

    async def verify(self, credential: str) -> Optional[int]:
        if not credential:
            return None
        for strategy in self.strategies:
            try:
                user_id = await asyncio.wait_for(strategy.verify(credential), self.timeout)
            except asyncio.TimeoutError:
                log.warning("%s verification timed out after %.1fs", strategy.name, self.timeout)
                continue
            except Exception:
                log.exception("%s verification failed", strategy.name)
                continue
            if user_id is not None:
                return user_id
        return None


def build_verifier(
    users: UserDirectory,
    secret: str | bytes,
    *,
    max_age_secs: int = DEFAULT_MAX_AGE_SECS,
    timeout: Optional[float] = None,
) -> TokenVerifier:
    return TokenVerifier(
        [
            UserCodeStrategy(users),
            SignedTokenStrategy(users, secret, max_age_secs=max_age_secs),
        ],
        timeout=timeout,
    )


__all__ = [
    "TokenVerifier",
    "UserCodeStrategy",
    "SignedTokenStrategy",
    "build_verifier",
    "mint_token",
    "token_signature",
]
