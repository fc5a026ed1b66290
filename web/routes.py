"""
web/routes.py -- Jinja2 template routes for the DevSolve web UI.

These routes serve server-rendered HTML shells. The forms on them submit to the
JSON API (/api/auth/...) from web/static/app.js; the pages never handle
credentials themselves.

Access control for pages is NOT done here. The route_guard middleware in
api/main.py has already redirected anonymous/unverified visitors away from
/dashboard and verified visitors away from /login and /register by the time
a handler runs.

Routes:
  GET /                 -- landing page
  GET /dashboard        -- signed-in home (guarded: verified users only)
  GET /login            -- login form; ?redirect= is sanitised [C2]
  GET /register         -- registration form
  GET /verify-email     -- confirms ?token= against the API on load
  GET /forgot-password  -- request a reset link
  GET /reset-password   -- set a new password with ?token=
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import try_get_current_claims
from auth.guard import safe_redirect_target

logger = logging.getLogger("devsolve.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# Expose try_get_current_claims as a Jinja2 global so layout.html can render
# the signed-in navigation without every handler passing it explicitly.
templates.env.globals["try_get_current_claims"] = try_get_current_claims
router = APIRouter()


@router.get("/", response_class=HTMLResponse)
async def home(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "home.html")


@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    """Signed-in home. Loads the fresh user record for the greeting."""
    claims = try_get_current_claims(request)
    user = request.app.state.user_store.find_by_id(claims.subject) if claims else None
    return templates.TemplateResponse(request, "dashboard.html", {"user": user})


@router.get("/login", response_class=HTMLResponse)
async def login_page(request: Request, redirect: Optional[str] = None) -> HTMLResponse:
    """Login form. The post-login target is only ever a server-relative path. [C2]

    The raw redirect value is never rendered -- only the sanitised result.
    """
    return templates.TemplateResponse(request, "login.html", {"redirect_to": safe_redirect_target(redirect)})


@router.get("/register", response_class=HTMLResponse)
async def register_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "register.html")


@router.get("/verify-email", response_class=HTMLResponse)
async def verify_email_page(request: Request, token: Optional[str] = None) -> HTMLResponse:
    return templates.TemplateResponse(request, "verify_email.html", {"token": token or ""})


@router.get("/forgot-password", response_class=HTMLResponse)
async def forgot_password_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "forgot_password.html")


@router.get("/reset-password", response_class=HTMLResponse)
async def reset_password_page(request: Request, token: Optional[str] = None) -> HTMLResponse:
    return templates.TemplateResponse(request, "reset_password.html", {"token": token or ""})
