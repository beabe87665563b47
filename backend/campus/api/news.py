import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from campus.api.deps import get_notifier
from campus.core.api_response import success_response_payload
from campus.core.errors import NotFoundError
from campus.core.observability import log_business_event
from campus.core.paging import paginate_query
from campus.core.security import require_permission, require_verified_user
from campus.db.models.news import News, NewsComment, NewsReaction
from campus.db.models.notification import NotificationType, RelatedRef
from campus.db.models.user import User
from campus.db.session import get_db
from campus.schemas.community import CommentIn, NewsIn, ReactionIn
from campus.services.notifications import Notifier

router = APIRouter(prefix="/news", tags=["news"])
logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100
REPLY_PREVIEW_LENGTH = 50


def _preview(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def _reaction_counts(db: Session, news_ids: list[int]) -> dict[int, dict[str, int]]:
    counts = {news_id: {"likes": 0, "dislikes": 0} for news_id in news_ids}
    if not news_ids:
        return counts
    rows = (
        db.query(NewsReaction.news_id, NewsReaction.reaction_type, func.count(NewsReaction.id))
        .filter(NewsReaction.news_id.in_(news_ids))
        .group_by(NewsReaction.news_id, NewsReaction.reaction_type)
        .all()
    )
    for news_id, reaction_type, total in rows:
        counts[news_id]["likes" if reaction_type == "like" else "dislikes"] = int(total)
    return counts


def serialize_comment(comment: NewsComment) -> dict:
    return {
        "id": comment.id,
        "newsId": comment.news_id,
        "parentId": comment.parent_id,
        "comment": comment.comment,
        "user": {"id": comment.user.id, "name": comment.user.name, "username": comment.user.username},
        "createdAt": comment.created_at.isoformat() if comment.created_at else None,
    }


def serialize_news(news: News, counts: dict[str, int] | None = None) -> dict:
    data = {
        "id": news.id,
        "title": news.title,
        "content": news.content,
        "publisherName": news.publisher_name or (news.author.name if news.author else None),
        "isUrgent": bool(news.is_urgent),
        "status": news.status,
        "createdBy": news.created_by,
        "createdAt": news.created_at.isoformat() if news.created_at else None,
    }
    if counts is not None:
        data.update(counts)
    return data


def _published(db: Session, news_id: int) -> News:
    news = db.get(News, news_id)
    if not news or news.status != "published":
        raise NotFoundError("News not found")
    return news


@router.get("")
def list_news(
    request: Request,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    q = db.query(News).filter(News.status == "published").order_by(
        News.is_urgent.desc(), News.created_at.desc(), News.id.desc()
    )
    items, pagination = paginate_query(q, page=page, limit=limit)
    counts = _reaction_counts(db, [n.id for n in items])
    return success_response_payload(
        request,
        data=[serialize_news(n, counts[n.id]) for n in items],
        pagination=pagination,
    )


@router.get("/{id}")
def get_news(id: int, request: Request, db: Session = Depends(get_db)):
    news = _published(db, id)
    comments = (
        db.query(NewsComment)
        .filter(NewsComment.news_id == news.id)
        .order_by(NewsComment.created_at.asc(), NewsComment.id.asc())
        .all()
    )
    data = serialize_news(news, _reaction_counts(db, [news.id])[news.id])
    data["comments"] = [serialize_comment(c) for c in comments]
    return success_response_payload(request, data=data)


@router.post("", status_code=201)
def create_news(
    payload: NewsIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("news.publish")),
    notifier: Notifier = Depends(get_notifier),
):
    news = News(
        created_by=current_user.id,
        publisher_name=payload.publisher_name or None,
        title=payload.title,
        content=payload.content,
        is_urgent=payload.is_urgent,
        status=payload.status,
    )
    db.add(news)
    db.commit()
    db.refresh(news)

    broadcast = bool(news.is_urgent and news.status == "published")
    if broadcast:
        notifier.broadcast(
            NotificationType.NEWS_URGENT,
            f"Urgent: {news.title}",
            _preview(news.content, PREVIEW_LENGTH),
            related=RelatedRef.news(news.id),
            metadata={"isUrgent": True},
            exclude_user_id=current_user.id,
        )
    log_business_event(logger, request, event="news.create", news_id=news.id, broadcast=broadcast)
    return success_response_payload(request, message="News created successfully", data=serialize_news(news))


@router.post("/{id}/reaction")
def react(
    id: int,
    payload: ReactionIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_verified_user),
):
    news = _published(db, id)
    existing = (
        db.query(NewsReaction)
        .filter(NewsReaction.news_id == news.id, NewsReaction.user_id == current_user.id)
        .first()
    )
    if existing and existing.reaction_type == payload.reaction_type:
        db.delete(existing)
        db.commit()
        return success_response_payload(request, message="Reaction removed", data={"reactionType": None})
    if existing:
        existing.reaction_type = payload.reaction_type
        db.commit()
        return success_response_payload(request, message="Reaction updated", data={"reactionType": payload.reaction_type})

    db.add(NewsReaction(news_id=news.id, user_id=current_user.id, reaction_type=payload.reaction_type))
    db.commit()
    return JSONResponse(
        status_code=201,
        content=success_response_payload(request, message="Reaction added", data={"reactionType": payload.reaction_type}),
    )


@router.post("/{id}/comment", status_code=201)
def comment(
    id: int,
    payload: CommentIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_verified_user),
    notifier: Notifier = Depends(get_notifier),
):
    news = _published(db, id)
    parent = None
    if payload.parent_id is not None:
        parent = db.get(NewsComment, payload.parent_id)
        if not parent or parent.news_id != news.id:
            raise NotFoundError("Parent comment not found")

    item = NewsComment(news_id=news.id, user_id=current_user.id, comment=payload.comment, parent_id=payload.parent_id)
    db.add(item)
    db.commit()
    db.refresh(item)

    if parent is not None and parent.user_id != current_user.id:
        notifier.send(
            parent.user_id,
            NotificationType.COMMENT_REPLY,
            "New Reply to Your Comment",
            f'{current_user.name} replied to your comment: "{_preview(payload.comment, REPLY_PREVIEW_LENGTH)}"',
            related=RelatedRef.news(news.id),
            metadata={"commentId": item.id, "parentCommentId": parent.id},
        )
    log_business_event(logger, request, event="news.comment", news_id=news.id, comment_id=item.id)
    return success_response_payload(request, message="Comment added successfully", data=serialize_comment(item))
