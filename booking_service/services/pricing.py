"""
Member pricing and booking totals.

Pricing model:
- All amounts are integers in the currency's minor unit
- Member price precedence: the tier's per-session price, template override,
  fixed member price, percentage discount off drop-in, drop-in
- A tier disabled on a session gets no member rate there
- Only the first person on a booking gets the member rate, additional spots
  always pay drop-in
- A membership bought in the same checkout counts as membership for person 1,
  and its fee is added once
"""

from dataclasses import dataclass
from typing import Optional

PRICE_TYPE_DISCOUNT = "discount"
PRICE_TYPE_FIXED = "fixed"


@dataclass(frozen=True)
class MemberPricingConfig:
    price_type: Optional[str] = None         # 'discount' | 'fixed' | None
    discount_percent: Optional[int] = None   # 0..100
    fixed_price: Optional[int] = None        # minor units

    @property
    def is_defined(self) -> bool:
        return self.price_type is not None

    @classmethod
    def from_model(cls, source) -> "MemberPricingConfig":
        """Build from an Organization or Membership row."""
        return cls(
            price_type=source.member_price_type,
            discount_percent=source.member_discount_percent,
            fixed_price=source.member_fixed_price,
        )


@dataclass(frozen=True)
class BookingPriceBreakdown:
    person1_price: int
    additional_person_price: int
    additional_people: int
    subtotal: int
    membership_fee: int
    total: int
    discount_amount: int     # saving on person 1 against drop-in


def discounted_price(price: int, percent: int) -> int:
    """Apply a whole-number percentage discount, rounding half up."""
    if not 0 <= percent <= 100:
        raise ValueError(f"discount percent must be within 0..100, got {percent}")
    return (price * (100 - percent) + 50) // 100


def resolve_member_price(
    drop_in_price: int,
    template_override: Optional[int] = None,
    pricing_mode: Optional[str] = None,
    discount_percent: Optional[int] = None,
    fixed_price: Optional[int] = None,
    tier_session_price: Optional[int] = None,
) -> int:
    """
    Resolve the per-person member price for a session. The first rule that
    applies wins.
    """
    if drop_in_price < 0:
        raise ValueError("drop_in_price must not be negative")

    if tier_session_price is not None:
        return tier_session_price

    if template_override is not None:
        return template_override

    if pricing_mode == PRICE_TYPE_FIXED and fixed_price is not None:
        return fixed_price

    if pricing_mode == PRICE_TYPE_DISCOUNT and discount_percent is not None:
        return discounted_price(drop_in_price, discount_percent)

    return drop_in_price


def member_price_for_template(
    template, config: MemberPricingConfig, tier_price=None
) -> int:
    """
    Member price of a paid template under the given pricing config.
    `tier_price` is the member's tier row for this session, if one exists.
    """
    drop_in_price = template.drop_in_price or 0
    if tier_price is not None and not tier_price.is_enabled:
        return drop_in_price
    return resolve_member_price(
        drop_in_price=drop_in_price,
        template_override=template.member_price,
        pricing_mode=config.price_type,
        discount_percent=config.discount_percent,
        fixed_price=config.fixed_price,
        tier_session_price=tier_price.override_price if tier_price is not None else None,
    )


def member_pricing_config(
    organization_config: MemberPricingConfig, membership_tier=None
) -> MemberPricingConfig:
    """
    Pick the pricing config for a member: the tier's own config when it
    defines one, otherwise the organization defaults.
    """
    if membership_tier is not None and membership_tier.member_price_type is not None:
        return MemberPricingConfig.from_model(membership_tier)
    return organization_config


def compute_booking_total(
    spots: int,
    is_member: bool,
    is_new_membership_purchase: bool,
    drop_in_price: int,
    member_price: int,
    membership_fee: int = 0,
) -> BookingPriceBreakdown:
    if spots < 1:
        raise ValueError("a booking needs at least one spot")
    if drop_in_price < 0 or member_price < 0 or membership_fee < 0:
        raise ValueError("prices must not be negative")

    gets_member_rate = is_member or is_new_membership_purchase
    person1_price = member_price if gets_member_rate else drop_in_price
    additional_people = spots - 1
    subtotal = person1_price + additional_people * drop_in_price
    fee = membership_fee if is_new_membership_purchase else 0

    return BookingPriceBreakdown(
        person1_price=person1_price,
        additional_person_price=drop_in_price,
        additional_people=additional_people,
        subtotal=subtotal,
        membership_fee=fee,
        total=subtotal + fee,
        discount_amount=max(drop_in_price - person1_price, 0),
    )
