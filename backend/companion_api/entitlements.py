"""Plan tiers and the companion-creation entitlement checks.

All plan-derived caps live in `PLAN_TIERS`; every other module asks
`resolve_tier` instead of inspecting plans or feature flags itself.
`None` means unlimited.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .auth import CurrentUser

ENTITLEMENTS_VERSION = "2025-06"


@dataclass(frozen=True)
class Tier:
    name: str
    companion_limit: Optional[int]
    monthly_limit: Optional[int]
    max_duration: int
    transcripts: bool

    def as_dict(self) -> dict:
        return {
            'plan': self.name,
            'companionLimit': self.companion_limit,
            'monthlyLimit': self.monthly_limit,
            'maxDuration': self.max_duration,
            'transcripts': self.transcripts,
            'version': ENTITLEMENTS_VERSION,
        }


PLAN_TIERS = {
    'pro': Tier('pro', companion_limit=None, monthly_limit=None, max_duration=60, transcripts=True),
    'core': Tier('core', companion_limit=10, monthly_limit=None, max_duration=30, transcripts=True),
    'basic': Tier('basic', companion_limit=3, monthly_limit=10, max_duration=15, transcripts=True),
}
PLAN_ALIASES = {'core_learner': 'core'}
NO_PLAN = Tier('none', companion_limit=0, monthly_limit=0, max_duration=0, transcripts=False)

# feature flags that replace the lifetime companion cap
FEATURE_LIMITS = {'3_companion_limit': 3, '10_companion_limit': 10}


def resolve_tier(user: CurrentUser) -> Tier:
    """Return the effective limits for `user`.

    A feature-flag cap replaces the plan's lifetime cap; with several
    flags present the lowest one applies. Users without a plan get nothing.
    """
    plan = PLAN_ALIASES.get(user.plan, user.plan) if user.plan else None
    tier = PLAN_TIERS.get(plan, NO_PLAN)
    flagged = [limit for feature, limit in FEATURE_LIMITS.items() if user.has_feature(feature)]
    if flagged and tier is not NO_PLAN:
        tier = Tier(tier.name, min(flagged), tier.monthly_limit, tier.max_duration, tier.transcripts)
    return tier


def start_of_month(now: datetime) -> datetime:
    """First instant of `now`'s calendar month, in UTC."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def can_create_companion(companion_repo, user: CurrentUser) -> bool:
    """True when the author is below the lifetime companion cap."""
    limit = resolve_tier(user).companion_limit
    if limit is None:
        return True
    return companion_repo.count_for_author(user.id) < limit


def can_create_active_companion(companion_repo, user: CurrentUser, now: Optional[datetime] = None) -> bool:
    """True when the author is below this calendar month's companion cap."""
    limit = resolve_tier(user).monthly_limit
    if limit is None:
        return True
    since = start_of_month(now or datetime.now(timezone.utc))
    return companion_repo.count_for_author(user.id, since=since) < limit
