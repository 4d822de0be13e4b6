"""Client-side odds, for display only.

Payouts are computed by the backend. Everything here is an estimate shown
while a bet is being considered; once the backend freezes a figure for a
placed bet, that figure is shown instead.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from roundmirror.models import RoundRecord

PLATFORM_FEE_PERCENT = 5
EARLY_BIRD_MAX_BONUS = 0.2


@dataclass(frozen=True)
class OddsQuote:
    side: str
    odds: float
    early_bird: float
    estimated: bool

    def to_dict(self):
        return {
            'side': self.side,
            'odds': round(self.odds, 4),
            'early_bird': round(self.early_bird, 4),
            'estimated': self.estimated,
        }


def base_odds(my_pool: float, their_pool: float, fee_percent: float = PLATFORM_FEE_PERCENT) -> float:
    if my_pool <= 0:
        return 2.0
    if their_pool <= 0:
        return 1.0
    return 1 + (their_pool * (1 - fee_percent / 100)) / my_pool


def early_bird_multiplier(time_into_round_ms: float, betting_duration_ms: float,
                          max_bonus: float = EARLY_BIRD_MAX_BONUS) -> float:
    if betting_duration_ms <= 0:
        return 1.0
    ratio = min(1.0, max(0.0, time_into_round_ms / betting_duration_ms))
    return 1 + max_bonus * (1 - ratio)


def _opposing_pool(pools: Dict[str, float], side: str) -> float:
    return sum(v for k, v in pools.items() if k != side)


def estimate_odds(record: RoundRecord, side: str, now: int, amount: float = 0.0,
                  fee_percent: float = PLATFORM_FEE_PERCENT) -> OddsQuote:
    """Pool-ratio odds for ``side``, including the stake about to be placed."""
    my_pool = record.pools.get(side, 0.0) + max(0.0, amount)
    their_pool = _opposing_pool(record.pools, side)
    odds = base_odds(my_pool, their_pool, fee_percent)

    bonus = 1.0
    start = record.extra.get('startTime')
    betting_end = record.deadlines.get(record.phase)
    if start is not None and betting_end is not None:
        bonus = early_bird_multiplier(now - int(start), int(betting_end) - int(start))
    return OddsQuote(side=side, odds=odds * bonus, early_bird=bonus, estimated=True)


def frozen_odds(result: Optional[Dict]) -> Optional[float]:
    """The backend's figure for a placed bet, when the ack carried one."""
    if not result:
        return None
    for key in ('lockedOdds', 'odds', 'payoutMultiplier'):
        value = result.get(key)
        if isinstance(value, (int, float)):
            return float(value)
    return None


def display_odds(estimate: OddsQuote, result: Optional[Dict] = None) -> OddsQuote:
    frozen = frozen_odds(result)
    if frozen is None:
        return estimate
    return OddsQuote(side=estimate.side, odds=frozen, early_bird=1.0, estimated=False)
