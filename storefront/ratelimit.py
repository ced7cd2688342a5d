"""Per-user request limits kept in the database.

Hits are rows with an expiry, so limits survive restarts and are shared by
every instance pointing at the same database.
"""
from datetime import timedelta

from sqlalchemy import func, select

from storefront.config import get_settings
from storefront.errors import RateLimitError
from storefront.models import RateLimitHit, utcnow


def hit(db, key: str, limit: int, window_seconds: int):
    now = utcnow()
    db.query(RateLimitHit).filter(RateLimitHit.expires_at <= now).delete(synchronize_session=False)

    used = db.scalar(
        select(func.count()).select_from(RateLimitHit)
        .where(RateLimitHit.key == key, RateLimitHit.expires_at > now)
    )
    if used >= limit:
        db.commit()
        raise RateLimitError("Too many payment requests. Please try again later.")

    db.add(RateLimitHit(key=key, created_at=now, expires_at=now + timedelta(seconds=window_seconds)))
    db.commit()


def limit_payment_requests(db, user):
    settings = get_settings()
    hit(db, f"payments:{user.id}", settings.payment_rate_limit, settings.payment_rate_window)
