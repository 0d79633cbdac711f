"""Daily spend ledger owned by the gateway."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .errors import BudgetRejectedError


def utc_day_key(now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class Reservation:
    cents: int
    day_key: str


@dataclass
class BudgetLedger:
    """Tracks spend for the current UTC day.

    A bid is reserved before the external call and only committed into
    `daily_spend_cents` once the call succeeds, so a failed call never moves
    the ledger and concurrent reservations cannot overshoot the cap.
    """

    max_bid_per_action_cents: int
    max_daily_spend_cents: int
    day_key: str = ""
    daily_spend_cents: int = 0
    paused: bool = False
    reserved_cents: int = 0

    def __post_init__(self) -> None:
        if not self.day_key:
            self.day_key = utc_day_key()

    def roll(self, now: datetime | None = None) -> bool:
        key = utc_day_key(now)
        if key == self.day_key:
            return False
        self.day_key = key
        self.daily_spend_cents = 0
        return True

    @property
    def remaining_cents(self) -> int:
        return max(0, self.max_daily_spend_cents - self.daily_spend_cents - self.reserved_cents)

    def check(self, bid_cents: int, now: datetime | None = None) -> None:
        self.roll(now)
        if bid_cents < 0:
            raise BudgetRejectedError("Bid must be non-negative", {"bidAmountCents": bid_cents})
        if bid_cents == 0:
            return
        if self.paused:
            raise BudgetRejectedError("Agent is paused", {"bidAmountCents": bid_cents, "paused": True})
        if bid_cents > self.max_bid_per_action_cents:
            raise BudgetRejectedError(
                f"Bid {bid_cents} exceeds max per action {self.max_bid_per_action_cents}",
                {"bidAmountCents": bid_cents, "maxBidPerActionCents": self.max_bid_per_action_cents},
            )
        projected = self.daily_spend_cents + self.reserved_cents + bid_cents
        if projected > self.max_daily_spend_cents:
            raise BudgetRejectedError(
                f"Bid {bid_cents} would exceed daily cap {self.max_daily_spend_cents}",
                {
                    "bidAmountCents": bid_cents,
                    "dailySpendCents": self.daily_spend_cents,
                    "maxDailySpendCents": self.max_daily_spend_cents,
                },
            )

    def reserve(self, bid_cents: int, now: datetime | None = None) -> Reservation:
        self.check(bid_cents, now)
        self.reserved_cents += bid_cents
        return Reservation(cents=bid_cents, day_key=self.day_key)

    def commit(self, reservation: Reservation, now: datetime | None = None) -> None:
        """Move a reservation into spend. One made before a UTC rollover counts toward its own day only."""
        self.reserved_cents = max(0, self.reserved_cents - reservation.cents)
        self.roll(now)
        if reservation.day_key == self.day_key:
            self.daily_spend_cents += reservation.cents

    def release(self, reservation: Reservation) -> None:
        self.reserved_cents = max(0, self.reserved_cents - reservation.cents)

    def snapshot(self) -> dict[str, Any]:
        self.roll()
        return {
            "dayKey": self.day_key,
            "dailySpendCents": self.daily_spend_cents,
            "maxDailySpendCents": self.max_daily_spend_cents,
            "maxBidPerActionCents": self.max_bid_per_action_cents,
            "remainingCents": self.remaining_cents,
            "paused": self.paused,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "dayKey": self.day_key,
            "dailySpendCents": self.daily_spend_cents,
            "paused": self.paused,
        }

    def restore(self, data: dict[str, Any]) -> None:
        day_key = data.get("dayKey")
        if isinstance(day_key, str) and day_key == utc_day_key():
            self.day_key = day_key
            spend = data.get("dailySpendCents")
            if isinstance(spend, int) and spend >= 0:
                self.daily_spend_cents = min(spend, self.max_daily_spend_cents)
        if isinstance(data.get("paused"), bool):
            self.paused = bool(data["paused"])
