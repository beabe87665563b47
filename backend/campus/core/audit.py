"""Audit trail for state-changing API calls.

The middleware snapshots the request before the handler runs, captures the
final status afterwards and hands the row to ``AuditRecorder`` as a background
task of the response, so the client never waits on the audit write and a
failing write never changes what the client received.
"""
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask
from starlette.formparsers import MultiPartException
from starlette.responses import Response

from campus.core.client_ip import resolve_client_ip
from campus.core.metrics import increment_counter
from campus.db.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

AUDITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
SKIPPED_PATH_PREFIXES = ("/health", "/metrics", "/uploads")
FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")
SENSITIVE_FIELDS = ("password", "currentPassword", "newPassword", "token", "otp")
REDACTED = "[REDACTED]"


@dataclass
class AuditEntry:
    action: str
    method: str
    endpoint: str
    user_id: int | None = None
    resource: str | None = None
    resource_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_body: dict | None = None
    response_status: int | None = None
    error_message: str | None = None
    metadata: dict | None = field(default=None)


def redact_body(body) -> dict | None:
    if not isinstance(body, dict) or not body:
        return None
    redacted = dict(body)
    for key in SENSITIVE_FIELDS:
        if key in redacted:
            redacted[key] = REDACTED
    return redacted


def parse_json_body(raw: bytes):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def error_message_from_response(raw: bytes) -> str | None:
    payload = parse_json_body(raw)
    if isinstance(payload, dict) and payload.get("success") is False:
        message = payload.get("message")
        return str(message) if message is not None else None
    return None


def resource_from_template(template: str) -> str | None:
    segments = [s for s in template.strip("/").split("/") if s]
    if not segments:
        return None
    for index, segment in enumerate(segments):
        if (segment.startswith("{") or segment.isdigit()) and index > 0:
            return segments[index - 1]
    return segments[0]


def resource_id_from_params(path_params: Mapping[str, str] | None) -> int | None:
    for name, value in (path_params or {}).items():
        if name == "id" or name.endswith("_id"):
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return None


class AuditRecorder:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(self, entry: AuditEntry) -> None:
        try:
            with self._session_factory() as db:
                db.add(
                    AuditLog(
                        user_id=entry.user_id,
                        action=entry.action,
                        resource=entry.resource,
                        resource_id=entry.resource_id,
                        method=entry.method,
                        endpoint=entry.endpoint,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        request_body=entry.request_body,
                        response_status=entry.response_status,
                        error_message=entry.error_message,
                        meta_json=entry.metadata,
                    )
                )
                db.commit()
        except Exception:
            increment_counter("audit_write_total", result="failed")
            logger.exception("audit_write_failed action=%s endpoint=%s", entry.action, entry.endpoint)
            return
        increment_counter("audit_write_total", result="ok")


def _should_audit(request: Request) -> bool:
    if request.method.upper() not in AUDITED_METHODS:
        return False
    return not request.url.path.startswith(SKIPPED_PATH_PREFIXES)


async def capture_request_body(request: Request) -> dict | None:
    """Redacted JSON object or plain form fields of the request; uploaded files are left out."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        return redact_body(parse_json_body(await request.body()))
    if not content_type.startswith(FORM_CONTENT_TYPES):
        return None
    await request.body()
    try:
        form = await request.form()
    except MultiPartException:
        logger.warning("audit_form_unparsed path=%s", request.url.path)
        return None
    try:
        fields = {key: value for key, value in form.multi_items() if isinstance(value, str)}
    finally:
        await form.close()
    return redact_body(fields)


def pending_audit_task(request: Request) -> BackgroundTask | None:
    """Audit write for a request that ended in an unhandled exception, to attach to the 500 response."""
    pending = getattr(request.state, "pending_audit", None)
    if pending is None:
        return None
    request.state.pending_audit = None
    recorder, entry = pending
    return BackgroundTask(recorder.record, entry)


async def audit_requests(request: Request, call_next):
    if not _should_audit(request):
        return await call_next(request)

    request_body = await capture_request_body(request)
    peer = request.client.host if request.client else None
    ip_address = resolve_client_ip(request.headers, resolved_host=peer, peer_host=peer)
    user_agent = request.headers.get("user-agent") or None

    recorder: AuditRecorder | None = getattr(request.app.state, "audit_recorder", None)

    def build_entry(status_code: int, error_message: str | None) -> AuditEntry:
        route = request.scope.get("route")
        template = getattr(route, "path", None) or request.url.path
        return AuditEntry(
            action=f"{request.method.upper()} {template}",
            method=request.method.upper(),
            endpoint=request.url.path,
            user_id=getattr(request.state, "user_id", None),
            resource=resource_from_template(template),
            resource_id=resource_id_from_params(request.scope.get("path_params")),
            ip_address=ip_address,
            user_agent=user_agent,
            request_body=request_body,
            response_status=status_code,
            error_message=error_message,
        )

    try:
        response = await call_next(request)
    except Exception:
        # Written by the 500 handler's response, after the client has its answer.
        if recorder is not None:
            request.state.pending_audit = (recorder, build_entry(500, "Internal server error"))
        raise

    raw = b"".join([chunk async for chunk in response.body_iterator])
    entry = build_entry(response.status_code, error_message_from_response(raw))
    background = BackgroundTask(recorder.record, entry) if recorder is not None else None
    return Response(
        content=raw,
        status_code=response.status_code,
        headers=response.headers,
        background=background,
    )
