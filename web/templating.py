"""
web/templating.py -- Shared Jinja2 environment and error page rendering.

Kept apart from web/routes.py so web/guards.py can render responses without
importing the router module.

login_context() builds the login page context for both the login route and
the throttle guard, so a throttled user keeps the next= target.

Jinja2 globals available in every template:
  csrf_token(request)      -- the session's CSRF token (set by middleware)
  is_authenticated(request)
"""

from pathlib import Path
from typing import Optional

from fastapi import Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import try_get_user_id
from core.config import get_settings
from core.errors import ErrorCode

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def csrf_token(request: Request) -> str:
    return getattr(request.state, "csrf_token", "")


def is_authenticated(request: Request) -> bool:
    return try_get_user_id(request) is not None


templates.env.globals["csrf_token"] = csrf_token
templates.env.globals["is_authenticated"] = is_authenticated

# Whitelist mapping for ?error= codes and error pages.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
ERROR_MESSAGES: dict[str, str] = {
    ErrorCode.rate_limited.value: "Too many login attempts. Wait a minute and try again.",
    ErrorCode.invalid_credentials.value: "Invalid username or password.",
    ErrorCode.csrf_invalid.value: "Your form expired or was not submitted from this site. Reload the page and try again.",
    ErrorCode.unauthenticated.value: "Please log in to continue.",
    ErrorCode.validation_failed.value: "Some fields are invalid.",
    ErrorCode.not_found.value: "The requested record does not exist.",
    ErrorCode.store_unavailable.value: "The service is temporarily unavailable. Please try again later.",
}

SUCCESS_MESSAGES: dict[str, str] = {
    "registered": "Account created. You can log in now.",
    "logged_out": "You have been logged out.",
    "account_deleted": "Your account has been deleted.",
}


def render_error(
    request: Request, status_code: int, code: ErrorCode, message: Optional[str] = None
) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "error.html",
        {"code": code.value, "error_msg": message or ERROR_MESSAGES[code.value]},
        status_code=status_code,
    )


def safe_next(next_url: Optional[str], default: str = "/users") -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones (//evil.example), both of
    which would redirect off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return default


def registration_enabled() -> bool:
    return get_settings().self_registration_enabled


def login_context(
    next_url: Optional[str] = None,
    error_code: Optional[str] = None,
    success_code: Optional[str] = None,
) -> dict:
    """Template context for login.html, shared by the login form and the throttle guard.

    Codes are mapped through the message whitelists; unknown codes show nothing.
    """
    known_error = error_code if error_code in ERROR_MESSAGES else None
    return {
        "error_code": known_error,
        "error_msg": ERROR_MESSAGES.get(known_error) if known_error else None,
        "success_msg": SUCCESS_MESSAGES.get(success_code or ""),
        "next_url": safe_next(next_url, default=""),
        "registration_enabled": registration_enabled(),
    }
