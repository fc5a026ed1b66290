"""
auth/guard.py -- Route guard decision procedure for page requests.

Every inbound request (outside the bypass list) is placed in one of three
states from its access_token cookie alone, then matched against its route
class:

  | Route class | Anonymous       | Unverified      | Verified           |
  |-------------|-----------------|-----------------|--------------------|
  | Protected   | -> /login?redirect=<path> | -> /login?redirect=<path> | allow |
  | AuthOnly    | allow           | allow           | -> /dashboard      |
  | Public      | allow           | allow           | allow              |

Unverified users may still open /login: logging in again is how they obtain
a token with verified=true once they have confirmed their email.

Nothing persists between requests. The guard verifies with the restricted
HmacTokenCodec and never reaches the stores, so it can run ahead of routing.

Layer rule: no imports from api/, web/, or qa/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from auth.models import TokenPayload

PROTECTED_PREFIXES = ("/dashboard",)
AUTH_ONLY_PREFIXES = ("/login", "/register")
# The auth API must stay reachable to issue and refresh tokens; static files
# serve the app shell.
BYPASS_PREFIXES = ("/static/", "/api/auth")

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"


class RouteClass(str, Enum):
    protected = "protected"
    auth_only = "auth_only"
    public = "public"


class GuardState(str, Enum):
    anonymous = "anonymous"
    unverified = "unverified"
    verified = "verified"


@dataclass(frozen=True)
class GuardDecision:
    """allow=True passes the request through; otherwise redirect to location."""

    allow: bool
    location: str | None = None


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def is_bypassed(path: str) -> bool:
    """True for static assets and the auth API namespace."""
    if any(path.startswith(prefix) for prefix in BYPASS_PREFIXES):
        return True
    # Any file-like last segment (favicon.ico, app.css, ...) is an asset.
    return "." in path.rsplit("/", 1)[-1]


def classify(path: str) -> RouteClass:
    if any(_matches(path, prefix) for prefix in PROTECTED_PREFIXES):
        return RouteClass.protected
    if any(_matches(path, prefix) for prefix in AUTH_ONLY_PREFIXES):
        return RouteClass.auth_only
    return RouteClass.public


def state_for(payload: TokenPayload | None) -> GuardState:
    if payload is None:
        return GuardState.anonymous
    if payload.claims.verified:
        return GuardState.verified
    return GuardState.unverified


def login_redirect(path: str) -> str:
    """Build /login?redirect=<path>, keeping slashes readable."""
    return f"{LOGIN_PATH}?{urlencode({'redirect': path}, safe='/')}"


def decide(path: str, state: GuardState) -> GuardDecision:
    route_class = classify(path)
    if route_class is RouteClass.protected and state is not GuardState.verified:
        return GuardDecision(allow=False, location=login_redirect(path))
    if route_class is RouteClass.auth_only and state is GuardState.verified:
        return GuardDecision(allow=False, location=DASHBOARD_PATH)
    return GuardDecision(allow=True)


def safe_redirect_target(target: str | None) -> str:
    """Validate a post-login redirect target. Only accept server-relative paths. [C2]

    Rejects absolute URLs and protocol-relative "//host" values so a crafted
    /login?redirect=... link cannot bounce the user off-site.
    """
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return DASHBOARD_PATH
