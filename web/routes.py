"""
web/routes.py -- Jinja2 template routes for the user admin UI.

Every route states its guards explicitly (see web/guards.py). Handlers are
plain `def` so FastAPI runs them in the threadpool; store and session calls
block only the worker thread serving that request.

Route registration order matters: GET /users/new must be registered before
any /users/{...} route that could capture "new".

Routes:
  GET  /login                 -- login form
  POST /login                 -- throttled credential check, binds identity
  POST /logout                -- destroy session (csrf)
  GET  /register              -- registration form
  POST /register              -- create account (csrf)
  GET  /                      -- redirect to /users (auth)
  GET  /users                 -- user list (auth)
  GET  /users/new             -- creation form (auth)
  POST /users                 -- create user (csrf, auth)
  POST /users/delete/{id}     -- delete user (csrf, auth)
  GET  /users/edit/{id}       -- edit form (auth)
  POST /users/update/{id}     -- update user (csrf, auth)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from auth.dependencies import client_key, try_get_session, try_get_user_id
from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password
from core.errors import ErrorCode, StoreUnavailableError
from web.forms import RegisterForm, UserUpdateForm, form_errors
from web.guards import LOGIN_SUBMISSION, PROTECTED, PROTECTED_MUTATION, PUBLIC_MUTATION, run_guards
from web.templating import login_context, registration_enabled, render_error, safe_next, templates

logger = logging.getLogger("useradmin.web")

router = APIRouter()

_USERNAME_TAKEN = "username: That username is already taken."

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_user_id(raw: str) -> Optional[int]:
    """Return the numeric id from a /users/.../{user_id} path segment, or None.

    Path ids are taken as str and parsed only after the guards ran, so a
    malformed id from an anonymous client still meets the auth gate.
    """
    return int(raw) if raw.isascii() and raw.isdigit() else None


def _render_user_form(
    request: Request,
    template: str,
    values: dict,
    errors: Optional[list[str]] = None,
    status_code: int = 200,
    **context,
) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        template,
        {"values": values, "errors": errors or [], **context},
        status_code=status_code,
    )


def _validation_failed(request: Request, template: str, values: dict, errors: list[str], **context) -> HTMLResponse:
    return _render_user_form(request, template, values, errors, status_code=422, **context)


def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> HTMLResponse:
    """Exception handler: store failures become a 503 page, never a stack trace."""
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return render_error(request, 503, ErrorCode.store_unavailable)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> Response:
    """Render the login page. Already-authenticated users go straight to /users."""
    if try_get_user_id(request) is not None:
        return RedirectResponse("/users", status_code=302)

    params = request.query_params
    return templates.TemplateResponse(
        request,
        "login.html",
        login_context(params.get("next"), error_code=params.get("error"), success_code=params.get("success")),
    )


@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    next_url: str = Form("", alias="next"),
) -> Response:
    """Handle the login form.

    The throttle runs first and counts this attempt whatever the outcome.
    Wrong username and wrong password produce the same response.
    """
    if denied := run_guards(request, LOGIN_SUBMISSION, next_url=next_url):
        return denied

    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, username, password)
    if user is None:
        logger.info("Failed login for %r from %s", username, client_key(request))
        return RedirectResponse(f"/login?error={ErrorCode.invalid_credentials.value}", status_code=303)

    sessions: SessionManager = request.app.state.sessions
    if not sessions.bind_identity(request.state.session, user.id):
        # Session was ended by a concurrent request (logout, purge)
        return RedirectResponse("/login", status_code=303)
    logger.info("User %r logged in from %s", user.username, client_key(request))

    resp = RedirectResponse(safe_next(next_url), status_code=303)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout")
def logout(request: Request, csrf: str = Form("", alias="_csrf")) -> Response:
    if denied := run_guards(request, PUBLIC_MUTATION, csrf_token=csrf):
        return denied
    sessions: SessionManager = request.app.state.sessions
    sessions.destroy(request.state.session)
    return RedirectResponse("/login?success=logged_out", status_code=303)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    if not registration_enabled():
        return render_error(request, 404, ErrorCode.not_found, "Registration is disabled.")
    return _render_user_form(request, "register.html", {})


@router.post("/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    username: str = Form(""),
    email: str = Form(""),
    full_name: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    csrf: str = Form("", alias="_csrf"),
) -> Response:
    """Create an account from the public registration form.

    Nothing is written unless the CSRF token checks out and the form validates.
    """
    if not registration_enabled():
        return render_error(request, 404, ErrorCode.not_found, "Registration is disabled.")
    if denied := run_guards(request, PUBLIC_MUTATION, csrf_token=csrf):
        return denied

    values = {"username": username, "email": email, "full_name": full_name}
    try:
        form = RegisterForm(
            username=username,
            email=email,
            full_name=full_name,
            password=password,
            confirm_password=confirm_password,
        )
    except ValidationError as exc:
        return _validation_failed(request, "register.html", values, form_errors(exc))

    user_store: UserStore = request.app.state.user_store
    try:
        user_store.create(
            User(
                username=form.username,
                hashed_password=hash_password(form.password),
                email=form.email,
                full_name=form.full_name,
            )
        )
    except IntegrityError:
        return _validation_failed(request, "register.html", values, [_USERNAME_TAKEN])

    logger.info("Registered new user %r", form.username)
    return RedirectResponse("/login?success=registered", status_code=303)


# ---------------------------------------------------------------------------
# Users (protected)
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> Response:
    if denied := run_guards(request, PROTECTED):
        return denied
    return RedirectResponse("/users", status_code=302)


@router.get("/users", response_class=HTMLResponse)
def users_list(request: Request) -> Response:
    if denied := run_guards(request, PROTECTED):
        return denied
    user_store: UserStore = request.app.state.user_store
    return templates.TemplateResponse(
        request,
        "users.html",
        {"users": user_store.list_all(), "current_user_id": try_get_user_id(request)},
    )


@router.get("/users/new", response_class=HTMLResponse)
def users_new_form(request: Request) -> Response:
    if denied := run_guards(request, PROTECTED):
        return denied
    return _render_user_form(request, "user_form.html", {}, mode="create", action="/users")


@router.post("/users", response_class=HTMLResponse)
def users_create(
    request: Request,
    username: str = Form(""),
    email: str = Form(""),
    full_name: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    csrf: str = Form("", alias="_csrf"),
) -> Response:
    if denied := run_guards(request, PROTECTED_MUTATION, csrf_token=csrf):
        return denied

    values = {"username": username, "email": email, "full_name": full_name}
    context = {"mode": "create", "action": "/users"}
    try:
        form = RegisterForm(
            username=username,
            email=email,
            full_name=full_name,
            password=password,
            confirm_password=confirm_password,
        )
    except ValidationError as exc:
        return _validation_failed(request, "user_form.html", values, form_errors(exc), **context)

    user_store: UserStore = request.app.state.user_store
    try:
        user_id = user_store.create(
            User(
                username=form.username,
                hashed_password=hash_password(form.password),
                email=form.email,
                full_name=form.full_name,
            )
        )
    except IntegrityError:
        return _validation_failed(request, "user_form.html", values, [_USERNAME_TAKEN], **context)

    logger.info("User %s created user %r (id=%s)", try_get_user_id(request), form.username, user_id)
    return RedirectResponse("/users", status_code=303)


@router.post("/users/delete/{user_id}", response_class=HTMLResponse)
def users_delete(request: Request, user_id: str, csrf: str = Form("", alias="_csrf")) -> Response:
    """Delete a user. A missing id is not_found and changes nothing.

    Deleting your own account also ends your session.
    """
    if denied := run_guards(request, PROTECTED_MUTATION, csrf_token=csrf):
        return denied

    target_id = _parse_user_id(user_id)
    user_store: UserStore = request.app.state.user_store
    if target_id is None or not user_store.delete(target_id):
        return render_error(request, 404, ErrorCode.not_found)

    acting_user_id = try_get_user_id(request)
    logger.info("User %s deleted user id=%s", acting_user_id, target_id)
    if acting_user_id == target_id:
        sessions: SessionManager = request.app.state.sessions
        sessions.destroy(try_get_session(request))
        return RedirectResponse("/login?success=account_deleted", status_code=303)
    return RedirectResponse("/users", status_code=303)


@router.get("/users/edit/{user_id}", response_class=HTMLResponse)
def users_edit_form(request: Request, user_id: str) -> Response:
    if denied := run_guards(request, PROTECTED):
        return denied

    target_id = _parse_user_id(user_id)
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(target_id) if target_id is not None else None
    if user is None:
        return render_error(request, 404, ErrorCode.not_found)
    values = {"username": user.username, "email": user.email or "", "full_name": user.full_name or ""}
    return _render_user_form(
        request, "user_form.html", values, mode="edit", action=f"/users/update/{target_id}", user=user
    )


@router.post("/users/update/{user_id}", response_class=HTMLResponse)
def users_update(
    request: Request,
    user_id: str,
    username: str = Form(""),
    email: str = Form(""),
    full_name: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    csrf: str = Form("", alias="_csrf"),
) -> Response:
    if denied := run_guards(request, PROTECTED_MUTATION, csrf_token=csrf):
        return denied

    target_id = _parse_user_id(user_id)
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(target_id) if target_id is not None else None
    if user is None:
        return render_error(request, 404, ErrorCode.not_found)

    values = {"username": username, "email": email, "full_name": full_name}
    context = {"mode": "edit", "action": f"/users/update/{target_id}", "user": user}
    try:
        form = UserUpdateForm(
            username=username,
            email=email,
            full_name=full_name,
            password=password,
            confirm_password=confirm_password,
        )
    except ValidationError as exc:
        return _validation_failed(request, "user_form.html", values, form_errors(exc), **context)

    fields = {"username": form.username, "email": form.email, "full_name": form.full_name}
    if form.password is not None:
        fields["hashed_password"] = hash_password(form.password)
    try:
        updated = user_store.update(target_id, **fields)
    except IntegrityError:
        return _validation_failed(request, "user_form.html", values, [_USERNAME_TAKEN], **context)
    if not updated:
        # Deleted between the lookup and the update
        return render_error(request, 404, ErrorCode.not_found)

    logger.info("User %s updated user id=%s", try_get_user_id(request), target_id)
    return RedirectResponse("/users", status_code=303)
