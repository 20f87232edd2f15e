"""Deterministic d20 skill-check resolution for exploration actions."""
from __future__ import annotations

import random
from dataclasses import dataclass, field

from backend.app.core.error_handling import utc_now_iso
from backend.app.models.exploration import DiceRoll, OutcomeType, SkillModifier

# Margin above the target that counts as a clean success rather than a partial one.
CLEAN_SUCCESS_MARGIN = 5


@dataclass(frozen=True)
class CheckConfig:
    skill: str
    dc: int
    advantage: bool = False
    disadvantage: bool = False
    base_mod: int = 0
    modifiers: tuple[SkillModifier, ...] = field(default_factory=tuple)

    @property
    def total_modifier(self) -> int:
        return self.base_mod + sum(m.value for m in self.modifiers)


@dataclass(frozen=True)
class CheckResult:
    roll: DiceRoll
    outcome: OutcomeType
    success: bool


def classify_roll(natural: int, total: int, dc: int) -> tuple[OutcomeType, bool]:
    """Map a natural roll and total to (outcome, success). Naturals 20 and 1 override the total."""
    if natural == 20:
        return "critical_success", True
    if natural == 1:
        return "critical_failure", False
    if total >= dc + CLEAN_SUCCESS_MARGIN:
        return "success", True
    if total >= dc:
        return "partial_success", True
    return "failure", False


def resolve_check(config: CheckConfig, rng: random.Random | None = None) -> CheckResult:
    """Resolve a d20 check deterministically (if seeded RNG is passed)."""
    roller = rng or random.Random()
    r1 = roller.randint(1, 20)
    if config.advantage != config.disadvantage:
        r2 = roller.randint(1, 20)
        roll = max(r1, r2) if config.advantage else min(r1, r2)
    else:
        roll = r1

    modifier = config.total_modifier
    total = roll + modifier
    outcome, success = classify_roll(roll, total, config.dc)
    return CheckResult(
        roll=DiceRoll(
            dice_type="d20",
            result=roll,
            modifier=modifier,
            total=total,
            purpose=f"{config.skill} check (DC {config.dc})",
            rolled_at=utc_now_iso(),
        ),
        outcome=outcome,
        success=success,
    )
