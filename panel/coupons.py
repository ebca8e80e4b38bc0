"""Coupon expiry processing and redemption."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from .database import Database
from .exceptions import DisplayException
from .models import User

logger = logging.getLogger("panel.coupons")


def expire_coupons(database: Database, *, now: Optional[datetime] = None) -> List[int]:
    """Flag every coupon whose expiry time has been reached.

    Coupons without an expiry never expire. Returns the ids newly marked.
    """

    logger.info("Beginning check for expired coupons.")
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)

    expired: List[int] = []
    for coupon in database.list_coupons():
        if coupon.expired or coupon.expires is None:
            continue
        if current >= coupon.expires:
            database.mark_coupon_expired(coupon.id)
            expired.append(coupon.id)
            logger.info("Coupon #%s has been set as expired.", coupon.id)

    logger.info("Completed check for expired coupons.")
    return expired


def redeem_coupon(database: Database, user: User, code: str, *, now: Optional[datetime] = None) -> int:
    """Credit a coupon's value to the user's store balance and return it."""

    coupon = database.get_coupon_by_code(code)
    if coupon is None:
        raise DisplayException("This coupon does not exist.")

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    if coupon.expired or (coupon.expires is not None and current >= coupon.expires):
        raise DisplayException("This coupon has expired.")
    if coupon.uses < 1:
        raise DisplayException("This coupon has no uses remaining.")

    try:
        amount = database.redeem_coupon(coupon.id, user.id)
    except ValueError as exc:
        raise DisplayException(f"Unable to redeem this coupon: {exc}.") from exc

    logger.info("User %s redeemed coupon #%s for %s credits", user.id, coupon.id, amount)
    return amount


__all__ = ["expire_coupons", "redeem_coupon"]
