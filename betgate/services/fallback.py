from __future__ import annotations

import random
import uuid
from decimal import Decimal

from betgate.utils import q_money


class FallbackPolicy:
    """What the betting service does when the upstream is unreachable."""

    name = "base"
    simulates = False

    def simulate_win(self, amount: Decimal) -> Decimal:
        raise NotImplementedError

    def new_bet_id(self) -> str:
        raise NotImplementedError


class StrictPolicy(FallbackPolicy):
    name = "strict"
    simulates = False


class SimulatedPolicy(FallbackPolicy):
    """Local coin flip: even odds, a win pays double the stake."""

    name = "simulated"
    simulates = True

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def simulate_win(self, amount: Decimal) -> Decimal:
        if self._rng.random() < 0.5:
            return q_money(amount * 2)
        return Decimal("0.00")

    def new_bet_id(self) -> str:
        return f"sim-{uuid.uuid4()}"


def build_fallback_policy(name: str, rng: random.Random | None = None) -> FallbackPolicy:
    clean = (name or "").strip().lower()
    if clean == StrictPolicy.name:
        return StrictPolicy()
    if clean == SimulatedPolicy.name:
        return SimulatedPolicy(rng)
    raise ValueError(f"Unknown BET_FALLBACK_POLICY: {name!r}")
