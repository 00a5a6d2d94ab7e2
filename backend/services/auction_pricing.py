"""
Dutch Auction Pricing Engine
════════════════════════════
The clearing price starts at face value and drops by a fixed number of basis
points of the start price for every whole hour elapsed, never going below the
floor:

    hours   = floor((now - auction_start) / 1h), clamped to [0, duration]
    drop    = start_price * rate_bps * hours / 10000
    price   = max(min_price, start_price - drop)

  Phase            Price          Active
  ───────────────  ─────────────  ──────
  now < start      start_price    no
  start <= now     decaying       yes
  now >= end       min_price      no (terminal)

Pure functions of (params, now): nothing here touches the database or the
wall clock.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import DEFAULT_PRICE_DROP_RATE_BPS
from services.clock import as_utc
from services.errors import InvalidAuctionParams
from services.money import Amount, BPS_DENOMINATOR

MAX_DISCOUNT_BPS = 5000  # floor can be at most 50% below face
ONE_HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class AuctionParams:
    auction_start: datetime
    auction_end: datetime
    start_price: Amount
    min_price: Amount
    price_drop_rate_bps: int

    def __post_init__(self):
        object.__setattr__(self, "auction_start", as_utc(self.auction_start))
        object.__setattr__(self, "auction_end", as_utc(self.auction_end))
        if self.auction_end <= self.auction_start:
            raise InvalidAuctionParams("Auction end must be after auction start")
        if not self.start_price.is_positive():
            raise InvalidAuctionParams("Start price must be greater than zero")
        if self.min_price > self.start_price:
            raise InvalidAuctionParams(
                "Floor price cannot exceed start price",
                start_price=self.start_price, min_price=self.min_price,
            )
        if isinstance(self.price_drop_rate_bps, bool) or not isinstance(self.price_drop_rate_bps, int) \
                or self.price_drop_rate_bps < 0:
            raise InvalidAuctionParams("Price drop rate must be a non-negative integer", rate=self.price_drop_rate_bps)

    @property
    def duration(self) -> timedelta:
        return self.auction_end - self.auction_start

    @classmethod
    def from_invoice(cls, invoice) -> Optional["AuctionParams"]:
        """Auction parameters stored on an invoice, or None if no auction was started."""
        if invoice.auction_start is None or invoice.auction_end is None or invoice.start_price is None:
            return None
        return cls(
            auction_start=invoice.auction_start,
            auction_end=invoice.auction_end,
            start_price=invoice.start_price,
            min_price=invoice.min_price if invoice.min_price is not None else Amount.zero(),
            price_drop_rate_bps=invoice.price_drop_rate_bps or 0,
        )


@dataclass(frozen=True)
class PriceQuote:
    price: Amount
    start_price: Amount
    min_price: Amount
    discount_bps: int
    progress_bps: int
    time_remaining: timedelta
    is_active: bool

    def to_dict(self) -> dict:
        return {
            "current_price": str(self.price),
            "start_price": str(self.start_price),
            "min_price": str(self.min_price),
            "discount_pct": _bps_to_pct(self.discount_bps),
            "progress_pct": _bps_to_pct(self.progress_bps),
            "time_remaining_seconds": int(self.time_remaining.total_seconds()),
            "is_active": self.is_active,
        }


def _bps_to_pct(bps: int) -> str:
    return f"{bps // 100}.{bps % 100:02d}"


def get_current_price(params: AuctionParams, now: datetime) -> PriceQuote:
    now = as_utc(now)
    start, end = params.auction_start, params.auction_end

    if now < start:
        price, progress_bps, active = params.start_price, 0, False
    elif now >= end:
        price, progress_bps, active = params.min_price, BPS_DENOMINATOR, False
    else:
        elapsed = now - start
        hours = min(elapsed // ONE_HOUR, params.duration // ONE_HOUR)
        drop = params.start_price.value * params.price_drop_rate_bps * hours // BPS_DENOMINATOR
        price = Amount(max(params.min_price.value, params.start_price.value - drop))
        progress_bps = min(BPS_DENOMINATOR, elapsed * BPS_DENOMINATOR // params.duration)
        active = True

    discount_bps = (params.start_price.value - price.value) * BPS_DENOMINATOR // params.start_price.value
    return PriceQuote(
        price=price,
        start_price=params.start_price,
        min_price=params.min_price,
        discount_bps=discount_bps,
        progress_bps=progress_bps,
        time_remaining=max(timedelta(0), end - now),
        is_active=active,
    )


def build_auction_params(face_amount: Amount, duration_hours: int, max_discount_bps: int,
                         now: datetime, price_drop_rate_bps: int = DEFAULT_PRICE_DROP_RATE_BPS) -> AuctionParams:
    """Auction parameters for an invoice whose auction starts at ``now``."""
    if isinstance(duration_hours, bool) or not isinstance(duration_hours, int) or duration_hours <= 0:
        raise InvalidAuctionParams("Duration must be a positive number of hours", duration_hours=duration_hours)
    if isinstance(max_discount_bps, bool) or not isinstance(max_discount_bps, int) \
            or not 0 < max_discount_bps <= MAX_DISCOUNT_BPS:
        raise InvalidAuctionParams(
            f"Max discount must be between 1 and {MAX_DISCOUNT_BPS} bps", max_discount_bps=max_discount_bps,
        )
    face_amount = Amount.parse(face_amount)
    now = as_utc(now)
    return AuctionParams(
        auction_start=now,
        auction_end=now + timedelta(hours=duration_hours),
        start_price=face_amount,
        min_price=face_amount - face_amount.apply_bps(max_discount_bps),
        price_drop_rate_bps=price_drop_rate_bps,
    )
