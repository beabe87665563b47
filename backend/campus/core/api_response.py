from fastapi import Request


def get_request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "-"


def error_response_payload(
    request: Request,
    *,
    code: str,
    message: str,
    errors=None,
) -> dict:
    payload = {
        "success": False,
        "code": code,
        "message": message,
    }
    if errors is not None:
        payload["errors"] = errors
    payload["request_id"] = get_request_id(request)
    return payload


def success_response_payload(
    request: Request,
    *,
    data=None,
    message: str | None = None,
    pagination: dict | None = None,
    **extra,
) -> dict:
    payload: dict = {"success": True}
    if message:
        payload["message"] = message
    if pagination is not None:
        payload["pagination"] = pagination
    payload.update(extra)
    if data is not None:
        payload["data"] = data
    payload["request_id"] = get_request_id(request)
    return payload
