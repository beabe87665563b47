import logging

from fastapi import Request

from campus.core.api_response import get_request_id


def log_business_event(
    logger: logging.Logger,
    request: Request | None,
    *,
    event: str,
    **fields,
) -> None:
    chunks = [f"event={event}"]
    if request is not None:
        chunks.append(f"request_id={get_request_id(request)}")
        actor_id = getattr(request.state, "user_id", None)
        if actor_id is not None:
            chunks.append(f"actor_id={actor_id}")
    for key, value in fields.items():
        chunks.append(f"{key}={value}")
    logger.info("business_event %s", " ".join(chunks))
