from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol

from portalauth.logging import get_logger
from portalauth.service.errors import (
    AccountExistsError,
    InvalidCredentialsError,
    ServiceUnavailableError,
    SessionInvalidError,
    SessionNotAuthorizedError,
    TokenBlacklistedError,
    TokenError,
    TokenRefreshFailedError,
    UnauthorizedError,
    UserNotFoundError,
    WrongTokenTypeError,
)
from portalauth.service.passwords import PasswordHasher
from portalauth.service.tokens import ACCESS, REFRESH, IssuedToken, TokenAuthority, TokenPair
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import Account, DeviceInfo, Session
from portalauth.storage.revocation import RevocationList
from portalauth.storage.sessions import SessionStore

logger = get_logger(__name__)

REGISTRATION_DEVICE = DeviceInfo(device_info="Registration Device")


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, user_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(self, user_id: str, **fields: Any) -> Optional[Account]: ...

    def clear_current_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> bool: ...


@dataclass
class AuthContext:
    """Principal resolved from a valid access token."""

    user_id: str
    email: str
    role: str
    session_id: Optional[str] = None
    token_id: Optional[str] = None
    token_expires_at: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "role": self.role,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "session_id": self.session_id,
        }


@dataclass
class AuthResult:
    account: Account
    session: Session
    tokens: TokenPair


class AuthService:
    """Registration, login with single-session supersession, refresh and logout.

    The account store is synchronous and in-process; the session store and
    revocation list share the key-value store and are awaited. None of the
    multi-step sequences here are transactional.
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        revocations: RevocationList,
        tokens: TokenAuthority,
        *,
        hasher: Optional[PasswordHasher] = None,
        revoke_access_on_refresh: bool = True,
    ) -> None:
        self.accounts: AccountStore = accounts
        self.sessions = sessions
        self.revocations = revocations
        self.tokens = tokens
        self.hasher = hasher or PasswordHasher()
        self.revoke_access_on_refresh = revoke_access_on_refresh
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        """Surface store outages as ServiceUnavailableError, never as "not found"."""
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error(
                "auth_store_unavailable",
                operation=operation,
                store_operation=exc.operation,
            )
            raise ServiceUnavailableError(
                "session store is temporarily unavailable"
            ) from exc

    async def _open_session(self, account: Account, device: DeviceInfo) -> tuple[Session, TokenPair]:
        session = await self.sessions.create_session(account.id, device)
        pair = self.tokens.issue_pair(account.id, session.session_id, account.role)
        await self.sessions.record_tokens(
            session.session_id,
            access_token_id=pair.access.token_id,
            access_expires_at=pair.access.expires_at,
            refresh_token_id=pair.refresh.token_id,
            refresh_expires_at=pair.refresh.expires_at,
        )
        session.access_token_id = pair.access.token_id
        session.access_expires_at = pair.access.expires_at
        session.refresh_token_id = pair.refresh.token_id
        session.refresh_expires_at = pair.refresh.expires_at
        return session, pair

    async def register(
        self,
        email: str,
        password: str,
        profile: Optional[Dict[str, Optional[str]]] = None,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        """Create the account, then open its first session.

        The two steps are not transactional. If the session store is down the
        account still exists and ServiceUnavailableError is raised; the client
        should log in afterwards, since registering again yields
        AccountExistsError.
        """
        profile = profile or {}
        if self.accounts.get_account_by_email(email):
            raise AccountExistsError("An account with this email already exists")
        try:
            account = self.accounts.create_account(
                email,
                self.hasher.hash(password),
                first_name=profile.get("first_name"),
                last_name=profile.get("last_name"),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise AccountExistsError(
                "An account with this email already exists", detail=exc.detail
            ) from exc

        with self._store_call("register"):
            session, pair = await self._open_session(account, device or REGISTRATION_DEVICE)
        account = self.accounts.update_account(
            account.id, current_session_id=session.session_id
        ) or account
        self.logger.info(
            "account_registered", user_id=account.id, session_id=session.session_id
        )
        return AuthResult(account=account, session=session, tokens=pair)

    async def login(
        self, email: str, password: str, device: Optional[DeviceInfo] = None
    ) -> AuthResult:
        device = device or DeviceInfo()
        account = self.accounts.get_account_by_email(email)
        if (
            not account
            or not account.is_active
            or not self.hasher.verify(account.password_hash, password)
        ):
            self.logger.warning("login_failed", ip_address=device.ip_address)
            raise InvalidCredentialsError("Invalid email or password")

        with self._store_call("login"):
            # Best effort: a concurrent login can slip in between these steps
            prior = await self.sessions.list_active(account.id)
            if prior:
                superseded = await self.sessions.terminate_all(account.id)
                self.logger.info(
                    "prior_sessions_superseded", user_id=account.id, count=superseded
                )
            session, pair = await self._open_session(account, device)

        account = self.accounts.update_account(
            account.id,
            current_session_id=session.session_id,
            last_login_at=self._now(),
            last_login_ip=device.ip_address,
        ) or account
        self.logger.info(
            "login_succeeded",
            user_id=account.id,
            session_id=session.session_id,
            device_info=session.device_info,
        )
        return AuthResult(account=account, session=session, tokens=pair)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new access token for the session bound to ``refresh_token``.

        The refresh token itself is returned unchanged. With
        ``revoke_access_on_refresh`` the access token it replaces is revoked
        for the rest of its lifetime.
        """
        try:
            payload = self.tokens.verify(refresh_token)
        except TokenError as exc:
            self.logger.info("token_refresh_rejected", reason=exc.error_code)
            raise TokenRefreshFailedError("Refresh token is invalid or expired") from exc
        if payload.token_type != REFRESH:
            raise TokenRefreshFailedError("Token is not a refresh token")

        with self._store_call("refresh"):
            if await self.revocations.is_revoked(payload.token_id):
                raise TokenRefreshFailedError("Refresh token has been revoked")
            account = self.accounts.get_account(payload.subject_id)
            if not account or not account.is_active:
                raise UserNotFoundError("User not found")

            session: Optional[Session] = None
            if payload.session_id:
                session = await self.sessions.get_session(payload.session_id)
                if not session or not session.is_active or session.user_id != account.id:
                    raise SessionInvalidError("Session expired or invalid")

            access = self.tokens.issue(
                account.id,
                payload.session_id,
                account.role,
                self.tokens.access_ttl_seconds,
                token_type=ACCESS,
            )
            if session:
                if self.revoke_access_on_refresh and session.access_token_id:
                    await self.revocations.revoke(
                        session.access_token_id,
                        self.tokens.remaining_ttl(session.access_expires_at),
                    )
                await self.sessions.record_tokens(
                    session.session_id,
                    access_token_id=access.token_id,
                    access_expires_at=access.expires_at,
                )

        self.logger.info(
            "token_refreshed", user_id=account.id, session_id=payload.session_id
        )
        return TokenPair(
            access=access,
            refresh=IssuedToken(token=refresh_token, payload=payload),
        )

    async def validate(self, access_token: str) -> Optional[AuthContext]:
        """Resolve the principal behind ``access_token``.

        Token failures raise their typed errors. A token whose account no
        longer exists yields None so the caller decides how to respond.
        """
        payload = self.tokens.verify(access_token)
        if payload.token_type != ACCESS:
            raise WrongTokenTypeError("Refresh tokens cannot authorize requests")

        with self._store_call("validate"):
            if await self.revocations.is_revoked(payload.token_id):
                raise TokenBlacklistedError("Token has been revoked")
            account = self.accounts.get_account(payload.subject_id)
            if not account or not account.is_active:
                return None
            if payload.session_id:
                session = await self.sessions.get_session(payload.session_id)
                if not session or not session.is_active or session.user_id != account.id:
                    raise SessionInvalidError("Session expired or invalid")
                await self.sessions.touch_activity(payload.session_id)

        return AuthContext(
            user_id=account.id,
            email=account.email,
            role=account.role,
            session_id=payload.session_id,
            token_id=payload.token_id,
            token_expires_at=payload.expires_at,
            first_name=account.first_name,
            last_name=account.last_name,
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, credential = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not credential.strip():
            return None
        return credential.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Missing bearer token")
        ctx = await self.validate(token)
        if ctx is None:
            raise UserNotFoundError("User not found")
        return ctx

    async def logout(
        self,
        user_id: str,
        session_id: Optional[str],
        token_id: Optional[str] = None,
        *,
        token_expires_at: Optional[int] = None,
    ) -> bool:
        """Terminate the caller's session and revoke its tokens.

        Safe to repeat: an already terminated session is left as is and the
        revocations are simply rewritten.
        """
        terminated = False
        with self._store_call("logout"):
            if token_id:
                await self.revocations.revoke(
                    token_id, self.tokens.remaining_ttl(token_expires_at)
                )
            session = await self.sessions.get_session(session_id) if session_id else None
            if session and session.user_id == user_id:
                if session.refresh_token_id:
                    await self.revocations.revoke(
                        session.refresh_token_id,
                        self.tokens.remaining_ttl(session.refresh_expires_at),
                    )
                if session.access_token_id and session.access_token_id != token_id:
                    await self.revocations.revoke(
                        session.access_token_id,
                        self.tokens.remaining_ttl(session.access_expires_at),
                    )
                terminated = await self.sessions.terminate(session.session_id)
            elif session:
                self.logger.warning(
                    "logout_session_owner_mismatch", user_id=user_id, session_id=session_id
                )
        if session_id:
            self.accounts.clear_current_session(user_id, session_id)
        self.logger.info(
            "logout", user_id=user_id, session_id=session_id, terminated=terminated
        )
        return terminated

    async def logout_all(self, user_id: str) -> int:
        with self._store_call("logout_all"):
            count = await self.sessions.terminate_all(user_id)
        self.accounts.clear_current_session(user_id)
        self.logger.info("logout_all", user_id=user_id, count=count)
        return count

    async def list_sessions(self, user_id: str) -> List[Session]:
        with self._store_call("list_sessions"):
            return await self.sessions.list_active(user_id)

    async def terminate_owned(self, user_id: str, target_session_id: str) -> bool:
        with self._store_call("terminate_owned"):
            owned = {s.session_id for s in await self.sessions.list_active(user_id)}
            if target_session_id not in owned:
                self.logger.warning(
                    "session_termination_denied",
                    user_id=user_id,
                    session_id=target_session_id,
                )
                raise SessionNotAuthorizedError(
                    "Session not found or does not belong to this user"
                )
            terminated = await self.sessions.terminate(target_session_id)
        self.accounts.clear_current_session(user_id, target_session_id)
        return terminated


__all__ = [
    "AccountStore",
    "AuthContext",
    "AuthResult",
    "AuthService",
    "REGISTRATION_DEVICE",
]
