"""
web/guards.py -- Named request guards and their per-route composition.

A guard returns None to let the request through, or the Response that ends
it. Routes list the guards they need in order and call run_guards() first:

    if denied := run_guards(request, PROTECTED_MUTATION, csrf_token=_csrf):
        return denied

Guards:
  "csrf"     -- CSRF Guard: the supplied token must match the session's secret.
               403 csrf_invalid. Token comes from the _csrf form field or the
               X-CSRF-Token header.
  "auth"     -- Auth Gate: the session must have a bound identity. 302 to
               /login?next=<path>. Reads session state only, never the store.
  "throttle" -- Login Throttle: counts the attempt, 429 rate_limited once the
               client is over the limit.

POST /login runs without "csrf": the token would have to come from a
session that is not yet trusted. This leaves login CSRF possible and is
kept as a known gap.
"""

import logging
from collections.abc import Callable, Sequence
from typing import Optional
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse, Response

from auth.csrf import HEADER_NAME
from auth.dependencies import client_key, try_get_session, try_get_user_id
from core.errors import ErrorCode
from web.templating import login_context, render_error, templates

logger = logging.getLogger("useradmin.web")

Guard = Callable[..., Optional[Response]]


def auth_gate(request: Request, **_) -> Optional[Response]:
    if try_get_user_id(request) is not None:
        return None
    return RedirectResponse(f"/login?next={quote(request.url.path)}", status_code=302)


def csrf_guard(request: Request, csrf_token: Optional[str] = None, **_) -> Optional[Response]:
    supplied = csrf_token or request.headers.get(HEADER_NAME)
    if request.app.state.csrf.verify(try_get_session(request), supplied):
        return None
    logger.warning("CSRF check failed: %s %s", request.method, request.url.path)
    return render_error(request, 403, ErrorCode.csrf_invalid)


def login_throttle(request: Request, next_url: Optional[str] = None, **_) -> Optional[Response]:
    decision = request.app.state.login_throttle.check_and_record(client_key(request))
    if decision.allowed:
        return None
    response = templates.TemplateResponse(
        request,
        "login.html",
        login_context(next_url, error_code=ErrorCode.rate_limited.value),
        status_code=429,
    )
    response.headers["Retry-After"] = str(decision.retry_after)
    return response


GUARDS: dict[str, Guard] = {
    "csrf": csrf_guard,
    "auth": auth_gate,
    "throttle": login_throttle,
}

# Guard lists per route group, evaluated left to right.
PROTECTED = ("auth",)
PROTECTED_MUTATION = ("csrf", "auth")
PUBLIC_MUTATION = ("csrf",)
LOGIN_SUBMISSION = ("throttle",)


def run_guards(request: Request, names: Sequence[str], **inputs) -> Optional[Response]:
    """Evaluate the named guards in order and return the first denial, if any."""
    for name in names:
        denied = GUARDS[name](request, **inputs)
        if denied is not None:
            return denied
    return None
