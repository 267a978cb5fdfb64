from typing import Optional
from datetime import datetime, timedelta
from .utils import now_utc, ensure_aware
from sqlmodel import SQLModel, Field


class Session(SQLModel, table=True):
    """Server-side session store for browser clients.

    session_token is a secure random string stored in an HttpOnly cookie.
    A session exists from the first /auth/login call: the pending OAuth
    state and PKCE verifier live here until the callback, after which the
    provider tokens replace them.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    session_token: str = Field(sa_column_kwargs={"unique": True, "index": True})
    created_at: datetime | None = Field(default_factory=now_utc)
    expires_at: Optional[datetime] = None
    # pending authorization request
    oauth_state: Optional[str] = None
    code_verifier: Optional[str] = None
    # provider tokens
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    email: Optional[str] = Field(default=None, index=True)

    @property
    def is_authed(self) -> bool:
        if not self.access_token:
            return False
        exp = ensure_aware(self.token_expires_at)
        return exp is None or exp > now_utc()

    def set_tokens(self, tokens: dict) -> None:
        self.access_token = tokens.get('access_token')
        # Google only returns a refresh token on consent; keep the old one otherwise.
        if tokens.get('refresh_token'):
            self.refresh_token = tokens['refresh_token']
        self.token_type = tokens.get('token_type')
        self.scope = tokens.get('scope')
        expires_in = tokens.get('expires_in')
        try:
            self.token_expires_at = now_utc() + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            self.token_expires_at = None


class UserPrefs(SQLModel, table=True):
    """Remembered board preferences.

    user_key is the lower-cased account email, or '' when the identity is
    unknown so an anonymous browser still gets one shared slot.
    """
    user_key: str = Field(primary_key=True)
    selected_list_id: Optional[str] = None
    theme: str = Field(default='dark')
    updated_at: datetime | None = Field(default_factory=now_utc)
