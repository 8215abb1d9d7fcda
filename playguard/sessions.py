"""
PlayGuard — Session Token Manager

Issues single-use session tokens when a play session starts and consumes
them when the result comes back. Consumption is the one place in the
pipeline that needs real atomicity: the final write is a conditional
update (used=false -> true) and only the caller whose write lands wins.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from playguard.config import config
from playguard.errors import (
    ServiceUnavailable, StoreUnavailable, TokenAlreadyUsed, TokenExpired,
    TokenGameTypeMismatch, TokenInvalid, TokenWalletMismatch, UnknownGameType,
)
from playguard.limits import LimitRegistry, default_registry
from playguard.models import utcnow
from playguard.store import SessionToken, Store

logger = logging.getLogger(__name__)


def generate_session_token() -> str:
    return secrets.token_hex(32)


class SessionTokenManager:

    def __init__(
        self,
        store: Store,
        registry: LimitRegistry = default_registry,
        expiry: timedelta = None,
        retention: timedelta = None,
        enforce_allowlist: bool = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.expiry = timedelta(seconds=config.TOKEN_EXPIRY_SECONDS) if expiry is None else expiry
        self.retention = timedelta(seconds=config.TOKEN_RETENTION_SECONDS) if retention is None else retention
        self.enforce_allowlist = (
            config.ENFORCE_GAME_ALLOWLIST if enforce_allowlist is None else enforce_allowlist
        )
        self.clock = clock

    async def create(self, wallet: str, game_type: str) -> SessionToken:
        if self.enforce_allowlist and not self.registry.is_known(game_type):
            raise UnknownGameType(f"Unsupported game type: {game_type}")

        now = self.clock()
        session = SessionToken(
            token=generate_session_token(),
            wallet=wallet,
            game_type=game_type,
            start_time=now,
            expires_at=now + self.expiry,
        )
        try:
            await self.store.insert_token(session)
        except StoreUnavailable as e:
            raise ServiceUnavailable("Failed to create game session") from e

        logger.info(f"Session issued wallet={wallet} game={game_type} expires={session.expires_at.isoformat()}")
        return session

    async def validate_and_consume(self, token: str, wallet: str, game_type: str) -> SessionToken:
        """
        Check a token and burn it.

        Order: exists -> unused -> unexpired -> wallet -> game type. A token is
        still valid at exactly `expires_at`. Store failures fail closed.
        """
        try:
            session = await self.store.get_token(token) if token else None
        except StoreUnavailable as e:
            raise ServiceUnavailable("Session store unavailable") from e

        if session is None:
            raise TokenInvalid("Invalid session token")
        if session.used:
            raise TokenAlreadyUsed("Session token already used")

        now = self.clock()
        if now > session.expires_at:
            raise TokenExpired("Session token expired")
        if session.wallet != wallet:
            raise TokenWalletMismatch("Session wallet mismatch")
        if session.game_type != game_type:
            raise TokenGameTypeMismatch("Session game type mismatch")

        try:
            consumed = await self.store.consume_token(token, now)
        except StoreUnavailable as e:
            raise ServiceUnavailable("Failed to consume session") from e

        if not consumed:
            # Another request flipped it between our read and our write
            logger.warning(f"Lost consume race for session wallet={wallet}")
            raise TokenAlreadyUsed("Session token already used")

        return SessionToken(
            token=session.token,
            wallet=session.wallet,
            game_type=session.game_type,
            start_time=session.start_time,
            expires_at=session.expires_at,
            used=True,
            used_at=now,
        )

    async def cleanup_expired(self) -> int:
        """Purge tokens more than `retention` past their expiry. Advisory only."""
        cutoff = self.clock() - self.retention
        deleted = await self.store.purge_expired_tokens(cutoff)
        if deleted:
            logger.info(f"Purged {deleted} expired session tokens")
        return deleted
