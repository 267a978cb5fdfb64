"""Runtime configuration for the Taskabana server.

Values are read from environment variables so the same build can run in
development, tests and production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


# OAuth client registered with Google. The secret is optional: public PKCE
# clients exchange the code with the verifier alone.
GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID', '')
GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET', '')
REDIRECT_URI = os.getenv('REDIRECT_URI', 'http://localhost:4000/auth/callback')

# Where the browser is sent after the OAuth callback completes (or fails).
FRONTEND_URL = os.getenv('FRONTEND_URL', '/')

GOOGLE_AUTH_URL = os.getenv('GOOGLE_AUTH_URL', 'https://accounts.google.com/o/oauth2/v2/auth')
GOOGLE_TOKEN_URL = os.getenv('GOOGLE_TOKEN_URL', 'https://oauth2.googleapis.com/token')
OIDC_USERINFO_URL = os.getenv('OIDC_USERINFO_URL', 'https://openidconnect.googleapis.com/v1/userinfo')
TASKS_API_BASE = os.getenv('TASKS_API_BASE', 'https://tasks.googleapis.com/tasks/v1')

SCOPES = ' '.join([
    'openid',
    'email',
    'profile',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/tasks',
])

# Page size requested from the tasks API; pages are followed until exhausted.
TASKS_MAX_RESULTS = _int_env('TASKS_MAX_RESULTS', 100)

# Timeout applied to every upstream HTTP call.
try:
    UPSTREAM_TIMEOUT_SECONDS = float(os.getenv('UPSTREAM_TIMEOUT_SECONDS', '15'))
except Exception:
    UPSTREAM_TIMEOUT_SECONDS = 15.0

# Browser origins allowed to call the API with credentials (comma separated).
CORS_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',') if o.strip()]

# Board snapshots kept in memory, one per (session, tasklist); least recently
# used entries are dropped first.
BOARD_CACHE_MAX_ENTRIES = _int_env('BOARD_CACHE_MAX_ENTRIES', 256)

# Cookie secure flag: default to False for local HTTP. Set COOKIE_SECURE=1
# in production so cookies are marked Secure.
COOKIE_SECURE = _trueish(os.getenv('COOKIE_SECURE', '0'))

# Server-side session lifetime.
SESSION_TTL_DAYS = _int_env('SESSION_TTL_DAYS', 7)

CSRF_TOKEN_EXPIRE_MINUTES = _int_env('CSRF_TOKEN_EXPIRE_MINUTES', 60)

# Themes the client may store as a preference; the first is the default.
THEMES = ('dark', 'light', 'hc')

# When true, the lifespan check for an insecure SECRET_KEY is skipped.
# Local development only; never enable it on a public deployment.
ALLOW_INSECURE_SECRET = _trueish(os.getenv('ALLOW_INSECURE_SECRET', '0'))

# Optional local overrides: define variables in taskabana/local_config.py to
# extend or override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
