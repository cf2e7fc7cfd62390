"""Credit pricing for video models and the plan-to-credit grants sold through Stripe."""

import enum
from dataclasses import dataclass


class VideoModel(str, enum.Enum):
    SORA_2 = "sora-2"
    VEO_FLASH = "veo-flash"
    VEO_PRO = "veo-pro"


MODEL_CREDITS: dict[VideoModel, int] = {
    VideoModel.SORA_2: 10,
    VideoModel.VEO_FLASH: 50,
    VideoModel.VEO_PRO: 250,
}


def get_credits_for_model(model: VideoModel | str) -> int:
    """Credits charged per generated video for ``model``.

    Raises:
        ValueError: if the model is not a known video model
    """
    return MODEL_CREDITS[VideoModel(model)]


def required_credits(item_count: int, cost_per_video: int) -> int:
    return item_count * cost_per_video


class PlanId(str, enum.Enum):
    STARTER = "starter"
    CREATOR = "creator"
    STUDIO = "studio"
    PRO = "pro"


@dataclass(frozen=True)
class CreditGrant:
    permanent_credits: int
    bonus_credits: int
    bonus_days_valid: int

    @property
    def total(self) -> int:
        return self.permanent_credits + self.bonus_credits


@dataclass(frozen=True)
class StarterRules:
    allow_veo_pro: bool
    daily_sora_cap: int
    daily_veo_fast_cap: int
    max_concurrent_jobs: int
    one_per_account: bool
    one_per_device: bool
    one_per_card_fingerprint: bool


@dataclass(frozen=True)
class PlanConfig:
    plan_id: PlanId
    price_usd: float
    grant: CreditGrant
    payment_link_url: str | None = None
    payment_link_id: str | None = None
    starter_rules: StarterRules | None = None


PLANS: dict[PlanId, PlanConfig] = {
    PlanId.STARTER: PlanConfig(
        plan_id=PlanId.STARTER,
        price_usd=4.9,
        grant=CreditGrant(permanent_credits=0, bonus_credits=200, bonus_days_valid=7),
        payment_link_url="https://buy.stripe.com/28EbJ14jUg2L6550Ug0kE05",
        starter_rules=StarterRules(
            allow_veo_pro=False,
            daily_sora_cap=6,
            daily_veo_fast_cap=1,
            max_concurrent_jobs=1,
            one_per_account=True,
            one_per_device=True,
            one_per_card_fingerprint=True,
        ),
    ),
    PlanId.CREATOR: PlanConfig(
        plan_id=PlanId.CREATOR,
        price_usd=39,
        grant=CreditGrant(permanent_credits=2000, bonus_credits=600, bonus_days_valid=14),
        payment_link_url="https://buy.stripe.com/dRmcN55nY4k33WXfPa0kE03",
    ),
    PlanId.STUDIO: PlanConfig(
        plan_id=PlanId.STUDIO,
        price_usd=99,
        grant=CreditGrant(permanent_credits=6000, bonus_credits=1500, bonus_days_valid=30),
        payment_link_url="https://buy.stripe.com/6oU7sL17IdUD51132o0kE06",
    ),
    PlanId.PRO: PlanConfig(
        plan_id=PlanId.PRO,
        price_usd=299,
        grant=CreditGrant(permanent_credits=20000, bonus_credits=4000, bonus_days_valid=60),
        payment_link_url="https://buy.stripe.com/4gMcN5eYy5o70KLauQ0kE01",
    ),
}


def resolve_plan_from_payment_link(
    payment_link_id: str | None = None, payment_link_url: str | None = None
) -> PlanId | None:
    """Find the plan a Stripe payment link belongs to, by link id or by URL."""
    by_id = (payment_link_id or "").strip()
    by_url = (payment_link_url or "").strip()

    for plan in PLANS.values():
        if by_id and plan.payment_link_id and plan.payment_link_id == by_id:
            return plan.plan_id
        if by_url and plan.payment_link_url and plan.payment_link_url == by_url:
            return plan.plan_id
    return None
