from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from huddle.config import Settings
from huddle.logging import get_logger
from huddle.service.email import EmailService
from huddle.service.errors import AuthenticationError, ConflictError, ValidationError
from huddle.service.memo import Memoizer
from huddle.service.passwords import PasswordHasher
from huddle.service.sessions import SessionManager
from huddle.service.tokens import TokenService
from huddle.service.two_factor import TwoFactorManager, TwoFactorSetup
from huddle.service.verification import VerificationTokenManager
from huddle.storage.common import CredentialStore, normalize_email
from huddle.storage.errors import ConstraintViolation
from huddle.storage.models import User, utcnow

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"

_INVALID_CREDENTIALS = "invalid credentials"
_INVALID_REFRESH = "invalid refresh token"


def generate_discriminator() -> str:
    """Four digit tag shown after the username; collisions are tolerated."""
    return str(1000 + secrets.randbelow(9000))


def profile_cache_key(user_id: str) -> str:
    return f"cache:user:{user_id}"


@dataclass
class AuthContext:
    user_id: str
    email: str
    username: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    verification_email_sent: bool


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Account flows built on the token, session, verification and 2FA managers."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenService,
        sessions: SessionManager,
        verification: VerificationTokenManager,
        two_factor: TwoFactorManager,
        email: EmailService,
        memo: Memoizer,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.sessions = sessions
        self.verification = verification
        self.two_factor = two_factor
        self.email = email
        self.memo = memo
        self.logger = logger

    # registration and login
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        date_of_birth: Optional[str] = None,
    ) -> RegistrationResult:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already in use", field="email")
        if self.store.get_user_by_username(username):
            raise ConflictError("username already taken", field="username")

        password_hash = self.hasher.hash(password)
        token, expires_at = self.verification.new_email_verification()
        try:
            user = self.store.create_user(
                email,
                username,
                generate_discriminator(),
                password_hash,
                date_of_birth=date_of_birth,
                email_verification_token=token,
                email_verification_expires_at=expires_at,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same field
            raise ConflictError(exc.message, field=exc.field) from exc

        sent = await asyncio.to_thread(self.email.send_email_verification, user.email, token)
        self.logger.info("user_registered", user_id=user.id, verification_email_sent=sent)
        return RegistrationResult(user=user, verification_email_sent=sent)

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self.hasher.burn(password)
            self.logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)

        pair, token_id = self._mint_pair(user)
        self.sessions.create_session(user.id, token_id, device_info, ip_address)
        now = utcnow()
        self.store.record_login(user.id, now)
        user.last_login_at = now
        self.logger.info("user_logged_in", user_id=user.id)
        return LoginResult(user=user, tokens=pair)

    def _mint_pair(self, user: User) -> tuple[TokenPair, str]:
        access = self.tokens.issue_access_token(user.id, user.email, user.username)
        refresh, token_id = self.tokens.issue_refresh_token(user.id)
        return TokenPair(access_token=access, refresh_token=refresh), token_id

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.tokens.verify_refresh_token(refresh_token)
        if not payload:
            raise AuthenticationError(_INVALID_REFRESH)
        session = self.sessions.find_session_by_token_id(payload.user_id, payload.token_id)
        if not session:
            self.logger.info("refresh_rejected", reason="no_live_session", user_id=payload.user_id)
            raise AuthenticationError(_INVALID_REFRESH)
        user = self.store.get_user(payload.user_id)
        if not user:
            raise AuthenticationError(_INVALID_REFRESH)

        pair, token_id = self._mint_pair(user)
        rotated = self.sessions.rotate_session(
            session.id, token_id, expected_token_id=payload.token_id
        )
        if not rotated:
            raise AuthenticationError(_INVALID_REFRESH)
        self.logger.info("token_refreshed", user_id=user.id, session_id=session.id)
        return pair

    async def logout(self, user_id: str) -> int:
        return self.sessions.revoke_all_sessions(user_id)

    # email verification and password reset
    async def resend_email_verification(self, ctx: AuthContext) -> bool:
        user = self._require_user(ctx)
        if user.email_verified:
            raise ValidationError("email is already verified")
        token = self.verification.issue_email_verification_token(user.id)
        return await asyncio.to_thread(self.email.send_email_verification, user.email, token)

    async def verify_email(self, token: str) -> str:
        user_id = self.verification.consume_email_verification_token(token)
        if not user_id:
            raise ValidationError("invalid or expired verification token")
        await self.memo.invalidate(profile_cache_key(user_id))
        return user_id

    async def forgot_password(self, email: str) -> str:
        user = self.store.get_user_by_email(email)
        if user:
            token = self.verification.issue_password_reset_token(user.id)
            await asyncio.to_thread(self.email.send_password_reset, user.email, token)
        else:
            self.logger.info("password_reset_unknown_account")
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        if not self.verification.consume_password_reset_token(token, new_password):
            raise ValidationError("invalid or expired reset token")

    # two-factor
    async def begin_two_factor(self, ctx: AuthContext) -> TwoFactorSetup:
        user = self._require_user(ctx)
        setup = self.two_factor.begin_setup(user.id, f"{self.settings.totp_issuer} ({user.username})")
        await self.memo.invalidate(profile_cache_key(user.id))
        return setup

    async def confirm_two_factor(self, ctx: AuthContext, code: str) -> None:
        user = self._require_user(ctx)
        if not self.two_factor.confirm_setup(user.id, code):
            raise ValidationError("invalid code")
        await self.memo.invalidate(profile_cache_key(user.id))
        await asyncio.to_thread(self.email.send_two_factor_enabled, user.email)

    # access tokens
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self.tokens.verify_access_token(token)
        if not payload:
            return None
        return AuthContext(
            user_id=payload.user_id,
            email=payload.email,
            username=payload.username,
        )

    def _require_user(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise AuthenticationError("invalid access token")
        return user

    async def get_profile(self, ctx: AuthContext) -> dict[str, Any]:
        def _load() -> Optional[dict[str, Any]]:
            user = self.store.get_user(ctx.user_id)
            return user.to_public() if user else None

        profile = await self.memo.get_or_load(
            profile_cache_key(ctx.user_id), self.settings.profile_cache_ttl_seconds, _load
        )
        if profile is None:
            raise AuthenticationError("invalid access token")
        return profile
