"""
Authentication console API.

Serves the login surface for a single-user, local deployment: there is one session
per instance, held by the coordinator, so no session cookie is issued. The browser
is the WebAuthn platform and drives the two-step passkey endpoints.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Mapping, Optional

from fastapi import Body, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from authcore.auth.coordinator import AuthCoordinator, build_coordinator
from authcore.auth.errors import AuthError, MethodUnavailableError, ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

# HTTP status per error kind; anything unlisted is a 400.
_STATUS_BY_KIND = {
    "config_error": 500,
    "rate_limited": 429,
    "invalid_credentials": 401,
    "verification_failed": 401,
    "method_unavailable": 404,
    "ceremony_in_progress": 409,
    "no_credentials": 409,
    "ceremony_expired": 410,
    "token_exchange_failed": 502,
}


def error_response(e: AuthError) -> JSONResponse:
    content: Dict[str, Any] = {"ok": False, "error": e.kind}
    headers: Dict[str, str] = {}
    if isinstance(e, RateLimitedError) and e.retry_after is not None:
        headers["Retry-After"] = str(e.retry_after)
    if isinstance(e, ProviderError):
        content["providerError"] = e.code
    if isinstance(e, MethodUnavailableError) and e.fallback:
        content["fallback"] = e.fallback
    return JSONResponse(status_code=_STATUS_BY_KIND.get(e.kind, 400), content=content, headers=headers)


def create_app(coordinator: Optional[AuthCoordinator] = None) -> FastAPI:
    """
    Build the API app.

    Without an explicit coordinator one is built from `load_auth_config()` on the
    first request, so importing this module never reads configuration.

    Handlers hold the coordinator's lock, since every operation is a read-modify-write
    on the store. The OAuth2 callback is the exception: the coordinator takes the
    lock itself and releases it around the provider HTTP calls.
    """
    app = FastAPI(title="authcore console")
    build_lock = threading.Lock()
    holder: Dict[str, AuthCoordinator] = {}
    if coordinator is not None:
        holder["c"] = coordinator

    def _coordinator() -> AuthCoordinator:
        with build_lock:
            if "c" not in holder:
                from authcore.auth.config import load_auth_config

                holder["c"] = build_coordinator(load_auth_config(), remote_platform=True)
            return holder["c"]

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, e: AuthError) -> JSONResponse:
        level = logging.WARNING if e.security_relevant else logging.INFO
        logger.log(level, "%s %s -> %s", request.method, request.url.path, e.kind)
        return error_response(e)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log requests and mark every response uncacheable."""
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        response.headers["Cache-Control"] = "no-store"
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    def _unauthenticated() -> JSONResponse:
        return JSONResponse(status_code=401, content={"ok": False, "error": "unauthenticated"})

    def _username(c: AuthCoordinator) -> Optional[str]:
        session = c.current_session()
        return session.user.username if session is not None else None

    def _complete_oauth2(params: Mapping[str, Any]) -> None:
        _coordinator().complete_oauth2(params)

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/auth/methods")
    def auth_methods() -> Dict[str, Any]:
        """Configured, usable methods. Public; returns no secrets."""
        c = _coordinator()
        with c.lock:
            methods = [m.to_dict() for m in c.available_methods()]
        return {"ok": True, "methods": methods, "defaultMethod": c.default_method}

    @app.post("/api/auth/login/{method}")
    def auth_login(method: str, credentials: Optional[Dict[str, Any]] = Body(None)) -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            result = c.authenticate(method, credentials)
        return {"ok": True, **result.to_dict()}

    @app.get("/api/auth/login/{provider}")
    def auth_login_redirect(provider: str) -> RedirectResponse:
        """Start an OAuth2 authorization and send the browser to the provider."""
        c = _coordinator()
        with c.lock:
            if c.method_kind(provider) != "oauth2":
                raise MethodUnavailableError(f"{provider!r} is not an oauth2 provider")
            result = c.authenticate(provider)
        if result.redirect is None:
            raise MethodUnavailableError(f"{provider!r} did not produce a redirect")
        return RedirectResponse(url=result.redirect.url, status_code=302)

    @app.get("/auth/callback")
    def auth_callback(request: Request) -> RedirectResponse:
        _complete_oauth2(dict(request.query_params))
        return RedirectResponse(url="/", status_code=302)

    @app.post("/auth/callback")
    async def auth_callback_form(request: Request) -> RedirectResponse:
        """Callback for providers using `response_mode=form_post` (e.g. Apple)."""
        form = await request.form()
        params = {k: v for k, v in form.items() if isinstance(v, str)}
        await run_in_threadpool(_complete_oauth2, params)
        # 303 so the browser follows with a GET.
        return RedirectResponse(url="/", status_code=303)

    @app.post("/api/auth/webauthn/login/begin")
    def webauthn_login_begin() -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            pending = c.begin_passkey_login()
        return {"ok": True, **pending.as_dict()}

    @app.post("/api/auth/webauthn/login/finish")
    def webauthn_login_finish(result: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            outcome = c.complete_passkey_login(result)
        return {"ok": True, **outcome.to_dict()}

    @app.post("/api/auth/webauthn/register/begin")
    def webauthn_register_begin() -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            pending = c.begin_passkey_registration()
        return {"ok": True, **pending.as_dict()}

    @app.post("/api/auth/webauthn/register/finish")
    def webauthn_register_finish(result: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            credential = c.complete_passkey_registration(result)
        return {
            "ok": True,
            "credential": {
                "id": credential.id,
                "ownerUsername": credential.owner_username,
                "createdAt": credential.created_at.isoformat(),
            },
        }

    @app.post("/api/auth/webauthn/cancel")
    def webauthn_cancel() -> None:
        """The browser reports a dismissed prompt; always answered with `user_cancelled`."""
        c = _coordinator()
        with c.lock:
            c.cancel_passkey()

    @app.get("/api/auth/webauthn/credentials")
    def webauthn_credentials() -> JSONResponse:
        c = _coordinator()
        with c.lock:
            username = _username(c)
            if username is None:
                return _unauthenticated()
            creds = c.list_credentials(username)
        return JSONResponse(
            content={
                "ok": True,
                "credentials": [
                    {"id": x.id, "createdAt": x.created_at.isoformat(), "transports": list(x.transports)}
                    for x in creds
                ],
            }
        )

    @app.delete("/api/auth/webauthn/credentials/{credential_id}")
    def webauthn_revoke(credential_id: str) -> JSONResponse:
        c = _coordinator()
        with c.lock:
            username = _username(c)
            if username is None:
                return _unauthenticated()
            if credential_id not in {x.id for x in c.list_credentials(username)}:
                raise MethodUnavailableError("no such credential")
            c.revoke_credential(credential_id)
        return JSONResponse(content={"ok": True})

    @app.post("/api/auth/logout")
    def auth_logout() -> Dict[str, Any]:
        c = _coordinator()
        with c.lock:
            c.logout()
        return {"ok": True}

    @app.get("/api/auth/me")
    def auth_me() -> JSONResponse:
        c = _coordinator()
        with c.lock:
            session = c.current_session()
        if session is None:
            return _unauthenticated()
        return JSONResponse(
            content={
                "ok": True,
                "user": session.user.to_dict(),
                "method": session.method,
                "expiresAt": session.expires_at.isoformat(),
            }
        )

    return app


def run(host: str = "127.0.0.1", port: int = 8080) -> None:
    import uvicorn

    uvicorn.run(create_app(), host=host, port=port, log_level=(os.getenv("LOG_LEVEL", "info") or "info").lower())
