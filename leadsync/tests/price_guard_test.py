from leadsync.agents.price_guard import extract_amounts, find_unverified_amounts
from leadsync.business import BusinessContext, format_business_info
from leadsync.db import BusinessFAQ, BusinessHours, BusinessPricingTier, BusinessProfile, BusinessService


def _business(*prices):
    return BusinessContext(
        profile=BusinessProfile(tenant_id="t", business_name="Acme Studio"),
        pricing_tiers=[
            BusinessPricingTier(tenant_id="t", name=f"Tier {price}", price_amount=price) for price in prices
        ],
    )


def test_extract_amounts_handles_symbols_codes_and_thousands():
    found = extract_amounts("Quotes: $1,200 or 3k USD or €49.50 and 15 dollars.")
    assert found == [("$1,200", 1200.0), ("3k USD", 3000.0), ("€49.50", 49.5), ("15 dollars", 15.0)]


def test_extract_amounts_ignores_plain_numbers():
    assert extract_amounts("Call me on 555 1234 in 2 weeks") == []
    assert extract_amounts(None) == []


def test_known_tier_prices_pass():
    business = _business(5000, 12000)
    assert find_unverified_amounts("Starter is $5,000 and Pro is $12k.", business) == []


def test_unknown_prices_flagged_once():
    flagged = find_unverified_amounts("It is $7,500. Yes, $7,500 total, plus $5,000 setup.", _business(5000))
    assert flagged == ["$7,500"]
    assert find_unverified_amounts("Total: $7,500, due on signing", None) == ["$7,500"]


def test_customer_amounts_are_allowed():
    assert find_unverified_amounts("Your $8k budget works.", None, [8000]) == []
    assert find_unverified_amounts("Your $8k budget works.", None) == ["$8k"]


def test_business_info_block():
    context = BusinessContext(
        profile=BusinessProfile(tenant_id="t", business_name="Acme Studio", brand_voice="Warm"),
        services=[BusinessService(tenant_id="t", name="Web design")],
        pricing_tiers=[
            BusinessPricingTier(
                tenant_id="t", name="Care plan", price_amount=99.5, price_currency="USD", billing_interval="monthly"
            ),
            BusinessPricingTier(tenant_id="t", name="Custom"),
        ],
        hours=[
            BusinessHours(tenant_id="t", day_of_week=1, open_time="09:00", close_time="17:00"),
            BusinessHours(tenant_id="t", day_of_week=0, is_closed=True),
        ],
        faqs=[BusinessFAQ(tenant_id="t", question="Do you host?", answer="Yes.")],
    )
    text = format_business_info(context)
    assert text.startswith("--- BUSINESS INFORMATION ---\nBusiness: Acme Studio")
    assert text.endswith("--- END BUSINESS INFORMATION ---")
    assert "- Care plan: USD 99.5 / monthly" in text
    assert "- Custom: price on request" in text
    assert "- Mon: 09:00-17:00 (America/New_York)" in text
    assert "Sun" not in text
    assert "Q: Do you host?\nA: Yes." in text
