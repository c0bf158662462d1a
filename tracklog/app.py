from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, time, timedelta
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from tracklog.audit import BackgroundAuditSink, DatabaseAuditSink
from tracklog.auth import (
    CSRF_HEADER,
    SESSION_TIMER_KEY,
    ensure_csrf_token,
    get_user_id,
    login_session,
    logout_session,
    validate_csrf,
    verify_password,
)
from tracklog.config import load_settings
from tracklog.db import ROLE_ADMIN, EntryRow, TracklogDB, UserRow
from tracklog.entries import EntryMaterializer, draft_from_form, merge_draft, normalize_notes
from tracklog.errors import (
    EntryNotFound,
    MarkerInconsistency,
    MissingTarget,
    PermissionDenied,
    TimerStateError,
    TracklogError,
    ValidationError,
    WriteError,
)
from tracklog.markers import MarkerStore, TimerTarget
from tracklog.timer import TimerSession, TimerSnapshot
from tracklog.utils import format_duration_human, parse_client_datetime, to_datetime_local, to_iso, utc_now


log = logging.getLogger("tracklog")

_ERROR_STATUS: dict[type[TracklogError], int] = {
    ValidationError: 400,
    PermissionDenied: 403,
    EntryNotFound: 404,
    TimerStateError: 409,
    MarkerInconsistency: 409,
    WriteError: 503,
}

PUBLIC_PATHS = {"/health", "/api/v1/auth/login"}
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def _api_error(message: str, code: int = 400, *, error_code: str = "error") -> JSONResponse:
    return JSONResponse(status_code=code, content={"ok": False, "error": message, "code": error_code})


def _status_for(exc: TracklogError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


def _is_admin(user: UserRow) -> bool:
    return user.role == ROLE_ADMIN


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _day_bounds(raw: str | None, *, end: bool) -> str | None:
    if not raw:
        return None
    try:
        day = date.fromisoformat(str(raw))
    except ValueError as e:
        raise ValidationError(f"Invalid date: {raw}") from e
    moment = datetime.combine(day, time.max if end else time.min, tzinfo=SETTINGS.tz)
    return to_iso(moment)


def _opt_int(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid id: {raw!r}") from e


def _entry_dict(entry: EntryRow) -> dict[str, Any]:
    return {
        **entry.__dict__,
        "duration_human": format_duration_human(entry.duration_seconds),
        "start_local": to_datetime_local(entry.start, tz=SETTINGS.tz),
        "end_local": to_datetime_local(entry.end, tz=SETTINGS.tz),
    }


def _user_dict(user: UserRow) -> dict[str, Any]:
    return {"id": user.id, "username": user.username, "role": user.role}


SETTINGS = load_settings()
DB = TracklogDB(SETTINGS.db_path)
DB.ensure_bootstrap_admin(SETTINGS.admin_user, SETTINGS.admin_password)
DB.ensure_seed_data()
MARKERS = MarkerStore(DB)
AUDIT = DatabaseAuditSink(DB, webhook_url=SETTINGS.webhook_url)
STALE_AFTER = timedelta(hours=SETTINGS.stale_marker_hours) if SETTINGS.stale_marker_hours > 0 else None

app = FastAPI(title="tracklog")

_session_secret = SETTINGS.secret_key or secrets.token_urlsafe(48)


def _security_headers(response) -> None:
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    response.headers["Cache-Control"] = "no-store"
    if SETTINGS.https_only:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"


# Registered before SessionMiddleware so that it runs inside it and can read request.session.
@app.middleware("http")
async def _auth_middleware(request: Request, call_next):  # type: ignore
    path = request.url.path
    if path in PUBLIC_PATHS or not path.startswith("/api/"):
        resp = await call_next(request)
        _security_headers(resp)
        return resp

    uid = get_user_id(request.session)
    user = DB.get_user(uid) if uid is not None else None
    if user is None or not user.active:
        if uid is not None:
            logout_session(request.session)
        resp = _api_error("authentication required", 401, error_code="unauthenticated")
        _security_headers(resp)
        return resp

    if request.method not in SAFE_METHODS and not validate_csrf(request.session, request.headers.get(CSRF_HEADER)):
        resp = _api_error("missing or invalid CSRF token", 403, error_code="csrf")
        _security_headers(resp)
        return resp

    resp = await call_next(request)
    _security_headers(resp)
    return resp


app.add_middleware(
    SessionMiddleware,
    secret_key=_session_secret,
    session_cookie="tracklog_session",
    https_only=SETTINGS.https_only,
    same_site="lax",
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(SETTINGS.allowed_hosts))
app.add_middleware(
    ProxyHeadersMiddleware,
    trusted_hosts=SETTINGS.trusted_proxies if isinstance(SETTINGS.trusted_proxies, str) else list(SETTINGS.trusted_proxies),
)


@app.exception_handler(TracklogError)
async def _tracklog_error_handler(request: Request, exc: TracklogError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        log.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return _api_error(str(exc), status, error_code=exc.code)


@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    if not SETTINGS.secret_key:
        log.warning("TRACKLOG_SECRET_KEY is not set. Session secret will rotate on restart.")
    if not SETTINGS.https_only:
        log.warning("TRACKLOG_HTTPS_ONLY is off. Enable it in production.")
    if SETTINGS.admin_password == "admin1234":
        log.warning("Bootstrap admin uses the default password. Set TRACKLOG_ADMIN_PASSWORD.")


@app.on_event("shutdown")
def _shutdown() -> None:
    DB.close()


def _require_user(request: Request) -> UserRow:
    uid = get_user_id(request.session)
    if uid is None:
        raise HTTPException(status_code=401)
    user = DB.get_user(uid)
    if user is None:
        raise HTTPException(status_code=401)
    return user


def _materializer(background: BackgroundTasks) -> EntryMaterializer:
    return EntryMaterializer(DB, audit=BackgroundAuditSink(AUDIT, background))


def _timer_session(request: Request, user: UserRow, background: BackgroundTasks) -> TimerSession:
    return TimerSession(
        user.id,
        markers=MARKERS,
        materializer=_materializer(background),
        clock=utc_now,
        snapshot=TimerSnapshot.from_dict(request.session.get(SESSION_TIMER_KEY)),
        stale_after=STALE_AFTER,
    )


def _save_timer(request: Request, session: TimerSession) -> dict[str, Any]:
    data = session.to_dict()
    request.session[SESSION_TIMER_KEY] = data
    return data


def _check_target_exists(project_id: Any, category_id: Any) -> None:
    pid = _opt_int(project_id)
    cid = _opt_int(category_id)
    if pid is not None:
        project = DB.get_project(pid)
        if project is None or not project.active:
            raise MissingTarget(f"Unknown project: {pid}")
    if cid is not None:
        category = DB.get_category(cid)
        if category is None or not category.active:
            raise MissingTarget(f"Unknown category: {cid}")


def _resolve_target(payload: dict[str, Any]) -> TimerTarget:
    target = TimerTarget.from_ids(payload.get("project_id"), payload.get("category_id"))
    _check_target_exists(target.project_id, target.category_id)
    return target


def _load_entry_for(user: UserRow, materializer: EntryMaterializer, entry_id: int) -> EntryRow:
    entry = materializer.get_entry(entry_id)
    if entry.user_id != user.id and not _is_admin(user):
        raise PermissionDenied("You can only change your own time entries.")
    return entry


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


@app.get("/health", response_class=PlainTextResponse)
def health() -> str:
    return "ok"


@app.post("/api/v1/auth/login")
async def login(request: Request):
    payload = await _json_body(request)
    username = str(payload.get("username", "")).strip()
    password = str(payload.get("password", ""))

    row = DB.get_user_auth(username)
    if row is None or not row.active or not verify_password(password, row.password_hash):
        return _api_error("Invalid username or password.", 401, error_code="unauthenticated")

    csrf_token = login_session(request.session, user_id=row.id, username=row.username)
    log.info("User %s logged in", row.username)
    return {"ok": True, "user": {"id": row.id, "username": row.username, "role": row.role}, "csrf_token": csrf_token}


@app.post("/api/v1/auth/logout")
def logout(request: Request):
    logout_session(request.session)
    return {"ok": True}


@app.get("/api/v1/auth/me")
def me(request: Request):
    user = _require_user(request)
    return {"ok": True, "user": _user_dict(user), "csrf_token": ensure_csrf_token(request.session)}


@app.get("/api/v1/projects")
def api_projects(request: Request):
    _require_user(request)
    return {"ok": True, "projects": [p.__dict__ for p in DB.list_projects(active_only=True)]}


@app.get("/api/v1/categories")
def api_categories(request: Request):
    _require_user(request)
    return {"ok": True, "categories": [c.__dict__ for c in DB.list_categories(active_only=True)]}


@app.get("/api/v1/timer")
def api_timer(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    session = _timer_session(request, user, background)
    session.resume()
    return {"ok": True, "timer": _save_timer(request, session)}


@app.post("/api/v1/timer/start")
async def api_timer_start(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    payload = await _json_body(request)
    target = _resolve_target(payload)

    session = _timer_session(request, user, background)
    session.resume()
    session.start(target)
    return {"ok": True, "timer": _save_timer(request, session)}


@app.post("/api/v1/timer/stop")
def api_timer_stop(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    session = _timer_session(request, user, background)
    session.resume()
    snapshot = session.stop()
    timer = _save_timer(request, session)
    return {
        "ok": True,
        "timer": timer,
        "review": {
            "start_time": to_datetime_local(snapshot.started_at, tz=SETTINGS.tz),
            "end_time": to_datetime_local(snapshot.stopped_at, tz=SETTINGS.tz),
            "started_at": to_iso(snapshot.started_at),  # type: ignore[arg-type]
            "stopped_at": to_iso(snapshot.stopped_at),  # type: ignore[arg-type]
            "project_id": snapshot.target.project_id if snapshot.target else None,
            "category_id": snapshot.target.category_id if snapshot.target else None,
            "duration_seconds": snapshot.elapsed_seconds,
            "duration_human": format_duration_human(snapshot.elapsed_seconds),
        },
    }


@app.post("/api/v1/timer/commit")
async def api_timer_commit(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    payload = await _json_body(request)

    try:
        start_time = parse_client_datetime(payload.get("start_time"), tz=SETTINGS.tz)
        end_time = parse_client_datetime(payload.get("end_time"), tz=SETTINGS.tz)
    except ValueError as e:
        raise ValidationError("Invalid start or end time.") from e
    target = None
    if payload.get("project_id") or payload.get("category_id"):
        target = _resolve_target(payload)

    session = _timer_session(request, user, background)
    try:
        result = session.commit(
            normalize_notes(payload.get("notes")),
            start_time=start_time,
            end_time=end_time,
            target=target,
            actor_id=user.id,
            ip_address=_client_ip(request),
        )
    except TimerStateError:
        _save_timer(request, session)
        raise
    return {
        "ok": True,
        "entry": _entry_dict(result.entry),
        "marker_cleared": result.marker_cleared,
        "timer": _save_timer(request, session),
    }


@app.post("/api/v1/timer/discard")
def api_timer_discard(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    session = _timer_session(request, user, background)
    try:
        cleared = session.discard()
    except TimerStateError:
        _save_timer(request, session)
        raise
    return {"ok": True, "marker_cleared": cleared, "timer": _save_timer(request, session)}


@app.get("/api/v1/entries")
def api_entries(
    request: Request,
    from_date: str | None = None,
    to_date: str | None = None,
    project_id: int | None = None,
    category_id: int | None = None,
    user_id: int | None = None,
    limit: int | None = None,
):
    user = _require_user(request)

    target_user_id: int | None = user.id
    if _is_admin(user):
        target_user_id = int(user_id) if user_id else None

    rows = DB.list_entries(
        user_id=target_user_id,
        from_time=_day_bounds(from_date, end=False),
        to_time=_day_bounds(to_date, end=True),
        project_id=project_id,
        category_id=category_id,
        limit=limit if limit and limit > 0 else None,
    )
    total = sum(r.duration_seconds for r in rows)
    return {
        "ok": True,
        "entries": [_entry_dict(r) for r in rows],
        "total_seconds": total,
        "total_human": format_duration_human(total),
    }


@app.post("/api/v1/entries")
async def api_create_entry(request: Request, background: BackgroundTasks):
    user = _require_user(request)
    payload = await _json_body(request)

    target_user_id = user.id
    if payload.get("user_id") and _is_admin(user):
        target_user_id = int(payload["user_id"])
        if DB.get_user(target_user_id) is None:
            raise ValidationError(f"Unknown user: {target_user_id}")

    draft = draft_from_form(payload, tz=SETTINGS.tz)
    _check_target_exists(draft.project_id, draft.category_id)
    entry = _materializer(background).materialize(
        target_user_id,
        draft,
        actor_id=user.id,
        ip_address=_client_ip(request),
    )
    return JSONResponse(status_code=201, content={"ok": True, "entry": _entry_dict(entry)})


@app.get("/api/v1/entries/{entry_id}")
def api_get_entry(request: Request, entry_id: int, background: BackgroundTasks):
    user = _require_user(request)
    entry = _load_entry_for(user, _materializer(background), entry_id)
    return {"ok": True, "entry": _entry_dict(entry)}


@app.patch("/api/v1/entries/{entry_id}")
async def api_update_entry(request: Request, entry_id: int, background: BackgroundTasks):
    user = _require_user(request)
    payload = await _json_body(request)
    materializer = _materializer(background)

    entry = _load_entry_for(user, materializer, entry_id)
    draft = merge_draft(entry, payload, tz=SETTINGS.tz)
    _check_target_exists(draft.project_id, draft.category_id)
    updated = materializer.update_entry(entry.id, draft, actor_id=user.id, ip_address=_client_ip(request))
    return {"ok": True, "entry": _entry_dict(updated)}


@app.delete("/api/v1/entries/{entry_id}")
def api_delete_entry(request: Request, entry_id: int, background: BackgroundTasks):
    user = _require_user(request)
    materializer = _materializer(background)

    entry = _load_entry_for(user, materializer, entry_id)
    materializer.delete_entry(entry.id, actor_id=user.id, ip_address=_client_ip(request))
    return {"ok": True, "deleted": entry.id}
