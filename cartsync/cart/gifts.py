"""
Gift Engine - subtotal based perk unlocks.

Pure functions, no stored state: safe to call on every cart mutation.
"""
from decimal import Decimal
from typing import Iterable

from cartsync.money import to_decimal, round_money, format_money
from .models import Gift, GiftProgress

HUNDRED = Decimal("100")

GIFT_THRESHOLDS: tuple[Gift, ...] = (
    Gift(id="free-shipping", name="Free Shipping", threshold=Decimal("40")),
    Gift(id="free-fish-cakes", name="Free Fish Cakes", threshold=Decimal("60")),
)


def _ordered(thresholds: Iterable[Gift]) -> list[Gift]:
    return sorted(thresholds, key=lambda g: to_decimal(g.threshold))


def compute_gifts(subtotal, thresholds: Iterable[Gift] = GIFT_THRESHOLDS) -> list[Gift]:
    """
    Derive the unlocked flag of every gift for a subtotal.

    Args:
        subtotal: Cart subtotal
        thresholds: Gift definitions (any order)

    Returns:
        Gifts in ascending threshold order, unlocked when subtotal >= threshold
    """
    amount = to_decimal(subtotal)
    return [
        Gift(
            id=gift.id,
            name=gift.name,
            threshold=to_decimal(gift.threshold),
            unlocked=amount >= to_decimal(gift.threshold),
        )
        for gift in _ordered(thresholds)
    ]


def gift_progress(subtotal, thresholds: Iterable[Gift] = GIFT_THRESHOLDS) -> GiftProgress:
    """
    Compute progress toward the next locked gift.

    Percent is measured against the highest threshold and capped at 100.
    Remaining is 0 once every gift is unlocked.
    """
    amount = to_decimal(subtotal)
    gifts = compute_gifts(amount, thresholds)
    if not gifts:
        return GiftProgress(next_gift=None, remaining=Decimal("0"), percent=HUNDRED)

    next_gift = next((g for g in gifts if not g.unlocked), None)
    remaining = round_money(next_gift.threshold - amount) if next_gift else Decimal("0")

    top = gifts[-1].threshold
    if top <= 0:
        percent = HUNDRED
    else:
        percent = min(round_money(amount / top * HUNDRED), HUNDRED)

    return GiftProgress(next_gift=next_gift, remaining=remaining, percent=percent)


def describe_progress(subtotal, thresholds: Iterable[Gift] = GIFT_THRESHOLDS) -> str:
    """Progress-bar caption, e.g. "Add $15.00 more for Free Shipping"."""
    gifts = compute_gifts(subtotal, thresholds)
    progress = gift_progress(subtotal, thresholds)
    unlocked = [g.name for g in gifts if g.unlocked]

    if progress.next_gift is None:
        if not unlocked:
            return ""
        return f"{' & '.join(unlocked)} Unlocked!"

    needed = f"Add {format_money(progress.remaining)} more for {progress.next_gift.name}"
    if unlocked:
        return f"{unlocked[-1]} Unlocked! {needed}"
    return needed
