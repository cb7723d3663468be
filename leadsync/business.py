import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlmodel import select

from leadsync.db import (
    BusinessFAQ,
    BusinessHours,
    BusinessPricingTier,
    BusinessProfile,
    BusinessService,
    SyncPreferences,
    get_session,
)

logger = logging.getLogger(__name__)


@dataclass
class BusinessContext:
    profile: BusinessProfile
    services: List[BusinessService] = field(default_factory=list)
    pricing_tiers: List[BusinessPricingTier] = field(default_factory=list)
    hours: List[BusinessHours] = field(default_factory=list)
    faqs: List[BusinessFAQ] = field(default_factory=list)

    @property
    def website_summary(self) -> Optional[str]:
        return self.profile.website_summary


async def get_business_context(tenant_id: str) -> Optional[BusinessContext]:
    """Load the tenant's business bundle, or ``None`` when no profile exists.

    Services and pricing only include active rows; the default tier sorts first.
    """
    async with get_session() as session:
        profile = (
            await session.exec(select(BusinessProfile).where(BusinessProfile.tenant_id == tenant_id))
        ).first()
        if profile is None:
            return None

        services = (
            await session.exec(
                select(BusinessService)
                .where(BusinessService.tenant_id == tenant_id, BusinessService.is_active == True)  # noqa: E712
                .order_by(BusinessService.name)
            )
        ).all()
        tiers = (
            await session.exec(
                select(BusinessPricingTier)
                .where(
                    BusinessPricingTier.tenant_id == tenant_id,
                    BusinessPricingTier.is_active == True,  # noqa: E712
                )
                .order_by(BusinessPricingTier.is_default.desc(), BusinessPricingTier.price_amount)
            )
        ).all()
        hours = (
            await session.exec(
                select(BusinessHours)
                .where(BusinessHours.tenant_id == tenant_id)
                .order_by(BusinessHours.day_of_week)
            )
        ).all()
        faqs = (
            await session.exec(
                select(BusinessFAQ).where(BusinessFAQ.tenant_id == tenant_id, BusinessFAQ.is_active == True)  # noqa: E712
            )
        ).all()

    return BusinessContext(
        profile=profile,
        services=list(services),
        pricing_tiers=list(tiers),
        hours=list(hours),
        faqs=list(faqs),
    )


def _format_price(tier: BusinessPricingTier) -> str:
    if tier.price_amount is None:
        return "price on request"
    amount = f"{tier.price_amount:,.2f}".rstrip("0").rstrip(".")
    price = f"{tier.price_currency or ''} {amount}".strip()
    if tier.billing_interval:
        price += f" / {tier.billing_interval}"
    return price


def format_business_info(context: BusinessContext) -> str:
    """Render the business bundle as a delimited prompt section."""
    parts = [f"Business: {context.profile.business_name}"]
    if context.profile.description:
        parts.append(f"Description: {context.profile.description}")
    if context.profile.brand_voice:
        parts.append(f"Brand voice: {context.profile.brand_voice}")

    if context.services:
        parts.append("\nServices:")
        for service in context.services:
            suffix = f": {service.description}" if service.description else ""
            parts.append(f"- {service.name}{suffix}")

    if context.pricing_tiers:
        parts.append("\nPricing:")
        for tier in context.pricing_tiers:
            parts.append(f"- {tier.name}: {_format_price(tier)}")

    open_days = [hours for hours in context.hours if not hours.is_closed and hours.open_time]
    if open_days:
        names = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
        parts.append("\nHours:")
        for hours in open_days:
            parts.append(f"- {names[hours.day_of_week % 7]}: {hours.open_time}-{hours.close_time} ({hours.timezone})")

    if context.faqs:
        parts.append("\nFAQs:")
        for faq in context.faqs:
            parts.append(f"Q: {faq.question}\nA: {faq.answer}")

    if context.website_summary:
        parts.append(f"\nWebsite summary: {context.website_summary}")

    body = "\n".join(parts)
    return f"--- BUSINESS INFORMATION ---\n{body}\n--- END BUSINESS INFORMATION ---"


async def get_sync_preferences(tenant_id: str) -> SyncPreferences:
    """Stored preferences for the tenant, or defaults when none were saved."""
    async with get_session() as session:
        prefs = await session.get(SyncPreferences, tenant_id)
    return prefs or SyncPreferences(tenant_id=tenant_id)
