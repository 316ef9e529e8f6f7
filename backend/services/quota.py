"""Quota gate: decides whether a user may spend more tokens.

Pure functions over a ``User`` row. Nothing here mutates state or caches a
decision; the gate is re-evaluated on every send attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from models.user import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIAL, User

SUBSCRIPTION_EXPIRED = "subscription_expired"
QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    tier: str
    used: int
    limit: int
    remaining: int
    reason: str = ""
    code: str = ""


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _default_limits() -> dict[str, int]:
    from config import settings

    return settings.token_limits


def token_limit_for(tier: str, limits: dict[str, int] | None = None) -> int:
    """Token quota for *tier*; unknown tiers get the TRIAL quota."""
    table = limits if limits is not None else _default_limits()
    if tier in table:
        return table[tier]
    return table[SUBSCRIPTION_TRIAL]


def has_valid_subscription(user: User, now: datetime | None = None) -> bool:
    """ACTIVE is always valid; TRIAL only until it expires; anything else is not."""
    status = user.subscription_status
    if status == SUBSCRIPTION_ACTIVE:
        return True
    if status == SUBSCRIPTION_TRIAL:
        expires = user.subscription_expires_at
        if expires is None:
            return False
        current = _as_naive_utc(now) if now is not None else utcnow()
        return current < _as_naive_utc(expires)
    return False


def check_admission(user: User, now: datetime | None = None, limits: dict[str, int] | None = None) -> Admission:
    tier = user.subscription_status
    used = user.total_tokens_used or 0
    limit = token_limit_for(tier, limits)
    remaining = max(limit - used, 0)

    if not has_valid_subscription(user, now):
        return Admission(
            allowed=False,
            tier=tier,
            used=used,
            limit=limit,
            remaining=remaining,
            reason="Your subscription has expired. Please renew it to keep chatting.",
            code=SUBSCRIPTION_EXPIRED,
        )

    if used >= limit:
        return Admission(
            allowed=False,
            tier=tier,
            used=used,
            limit=limit,
            remaining=0,
            reason=f"You have reached your token limit ({limit:,} tokens) for this subscription.",
            code=QUOTA_EXCEEDED,
        )

    return Admission(allowed=True, tier=tier, used=used, limit=limit, remaining=remaining)


def describe_limits(user: User, limits: dict[str, int] | None = None) -> dict:
    """Usage summary for the limits endpoint."""
    used = user.total_tokens_used or 0
    limit = token_limit_for(user.subscription_status, limits)
    percentage = round(used / limit * 100) if limit > 0 else 100
    return {
        "subscription": user.subscription_status,
        "tokens_used": used,
        "token_limit": limit,
        "tokens_remaining": max(limit - used, 0),
        "percentage_used": percentage,
        "subscription_expires_at": user.subscription_expires_at,
    }
