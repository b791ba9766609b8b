"""Read-side views: channel profiles and watch history."""

import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased

from .database import SessionLocal, Subscription, Video, WatchHistoryEntry
from .errors import BadRequestError, NotFoundError, handle_service_error
from .models.user import User
from .schemas import ChannelProfile, OwnerSnapshot, WatchHistoryItem

logger = logging.getLogger(__name__)


def _count_edges(session: Session, column, user_id: int) -> int:
    return session.query(func.count(Subscription.id)).filter(column == user_id).scalar() or 0


def get_channel_profile(username: Optional[str], viewer_id: Optional[int] = None) -> ChannelProfile:
    """Build the public profile of the channel named ``username``.

    ``is_subscribed`` is only true when ``viewer_id`` has a subscription
    edge pointing at the channel; anonymous viewers always see false.
    """
    if username is None or not username.strip():
        raise BadRequestError("Username is missing")

    session: Session = SessionLocal()
    try:
        channel = (
            session.query(User)
            .filter(User.username == username.strip().lower())
            .first()
        )
        if channel is None:
            raise NotFoundError("Channel does not exist")

        subscribers_count = _count_edges(session, Subscription.channel_id, channel.id)
        subscribed_to_count = _count_edges(session, Subscription.subscriber_id, channel.id)
        is_subscribed = False
        if viewer_id is not None:
            is_subscribed = session.query(
                session.query(Subscription)
                .filter(
                    Subscription.channel_id == channel.id,
                    Subscription.subscriber_id == viewer_id,
                )
                .exists()
            ).scalar()

        return ChannelProfile(
            full_name=channel.full_name,
            username=channel.username,
            subscribers_count=subscribers_count,
            channels_subscribed_to_count=subscribed_to_count,
            is_subscribed=bool(is_subscribed),
            avatar=channel.avatar,
            cover_image=channel.cover_image or "",
            email=channel.email,
        )
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def get_watch_history(user_id: int) -> List[WatchHistoryItem]:
    """Return the user's watched videos in stored order, owners inlined.

    Entries whose video no longer exists are skipped; a video without a
    resolvable owner is returned with ``owner`` set to ``None``.
    """
    owner = aliased(User)
    session: Session = SessionLocal()
    try:
        # Query() would collapse repeated videos; select() keeps one row per entry.
        stmt = (
            select(Video, owner.full_name, owner.username, owner.avatar)
            .select_from(WatchHistoryEntry)
            .join(Video, Video.id == WatchHistoryEntry.video_id)
            .outerjoin(owner, owner.id == Video.owner_id)
            .where(WatchHistoryEntry.user_id == user_id)
            .order_by(WatchHistoryEntry.position, WatchHistoryEntry.id)
        )
        rows = session.execute(stmt).all()

        history = []
        for video, full_name, owner_username, avatar in rows:
            item = WatchHistoryItem.model_validate(video)
            if owner_username is not None:
                item.owner = OwnerSnapshot(
                    full_name=full_name, username=owner_username, avatar=avatar
                )
            history.append(item)
        logger.info("watch history user=%s entries=%s", user_id, len(history))
        return history
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()
