from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import distinct, func
from sqlalchemy.orm import Query as OrmQuery
from sqlalchemy.orm import Session

from campus.core.api_response import success_response_payload
from campus.core.errors import NotFoundError
from campus.core.paging import paginate_query, serialize_items
from campus.core.security import require_permission
from campus.db.models.audit_log import AuditLog
from campus.db.models.user import User
from campus.db.session import get_db

router = APIRouter(prefix="/admin/audit-logs", tags=["audit"])


def serialize_audit_log(item: AuditLog) -> dict:
    user = None
    if item.user is not None:
        user = {
            "id": item.user.id,
            "name": item.user.name,
            "username": item.user.username,
            "email": item.user.email,
            "role": item.user.role,
        }
    return {
        "id": item.id,
        "userId": item.user_id,
        "user": user,
        "action": item.action,
        "resource": item.resource,
        "resourceId": item.resource_id,
        "method": item.method,
        "endpoint": item.endpoint,
        "ipAddress": item.ip_address,
        "userAgent": item.user_agent,
        "requestBody": item.request_body,
        "responseStatus": item.response_status,
        "errorMessage": item.error_message,
        "metadata": item.meta_json,
        "createdAt": item.created_at.isoformat() if item.created_at else None,
    }


def _date_range(q: OrmQuery, start_date: datetime | None, end_date: datetime | None) -> OrmQuery:
    if start_date is not None:
        q = q.filter(AuditLog.created_at >= start_date)
    if end_date is not None:
        q = q.filter(AuditLog.created_at <= end_date)
    return q


def _ordered(q: OrmQuery) -> OrmQuery:
    return q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())


@router.get("")
def list_audit_logs(
    request: Request,
    page: int = 1,
    limit: int = 50,
    user_id: int | None = Query(default=None, alias="userId"),
    action: str | None = None,
    resource: str | None = None,
    method: str | None = None,
    status_code: int | None = Query(default=None, alias="statusCode"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("audit.view")),
):
    q = db.query(AuditLog)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)
    if action:
        q = q.filter(AuditLog.action.ilike(f"%{action}%"))
    if resource:
        q = q.filter(AuditLog.resource == resource)
    if method:
        q = q.filter(AuditLog.method == method.upper())
    if status_code is not None:
        q = q.filter(AuditLog.response_status == status_code)
    q = _date_range(q, start_date, end_date)
    items, pagination = paginate_query(_ordered(q), page=page, limit=limit, max_limit=500)
    return success_response_payload(
        request,
        data=serialize_items(items, serialize_audit_log),
        pagination=pagination,
    )


@router.get("/stats")
def audit_stats(
    request: Request,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("audit.view")),
):
    def grouped(column, *, top: int | None = None) -> list[tuple]:
        total = func.count(AuditLog.id)
        q = _date_range(db.query(column, total), start_date, end_date).group_by(column).order_by(total.desc())
        if top:
            q = q.limit(top)
        return q.all()

    total_logs = _date_range(db.query(func.count(AuditLog.id)), start_date, end_date).scalar() or 0
    error_count = (
        _date_range(db.query(func.count(AuditLog.id)), start_date, end_date)
        .filter(AuditLog.error_message.is_not(None))
        .scalar()
        or 0
    )
    unique_users = (
        _date_range(db.query(func.count(distinct(AuditLog.user_id))), start_date, end_date)
        .filter(AuditLog.user_id.is_not(None))
        .scalar()
        or 0
    )
    data = {
        "totalLogs": int(total_logs),
        "errorCount": int(error_count),
        "uniqueUsers": int(unique_users),
        "logsByAction": [{"action": k, "count": int(c)} for k, c in grouped(AuditLog.action, top=10)],
        "logsByResource": [{"resource": k, "count": int(c)} for k, c in grouped(AuditLog.resource, top=10)],
        "logsByMethod": [{"method": k, "count": int(c)} for k, c in grouped(AuditLog.method)],
    }
    return success_response_payload(request, data=data)


@router.get("/user/{user_id}")
def user_audit_logs(
    user_id: int,
    request: Request,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("audit.view")),
):
    q = _ordered(db.query(AuditLog).filter(AuditLog.user_id == user_id))
    items, pagination = paginate_query(q, page=page, limit=limit, max_limit=500)
    return success_response_payload(
        request,
        data=serialize_items(items, serialize_audit_log),
        pagination=pagination,
    )


@router.get("/{id}")
def get_audit_log(
    id: int,
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("audit.view")),
):
    item = db.get(AuditLog, id)
    if not item:
        raise NotFoundError("Audit log not found")
    return success_response_payload(request, data=serialize_audit_log(item))
