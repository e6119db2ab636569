"""
Urgency Calculator — pure scoring of inspection items.

No persistence, no permissions: given items (ORM rows or plain dicts with
``condition``, ``item_type``/``category``, ``measurements``, ``priority``,
``estimated_cost``) it returns a score, a level and the human-readable
rationale. The workflow engine calls it on every transition attempt and the
item service on every item mutation to keep ``Inspection.urgency_level``
fresh.

Per-item score:
    condition base
    + measurement bonuses (critical +40 / poor +25 / fair +10)
    + priority bonus (priority - 1) * 5
    + cost bonus min(cost / 100, 10) when cost > 500
    then * item-type multiplier, clamped to 0..100, rounded half up.
    The level is taken from the unrounded score.

Inspection level is categorical over item-level counts, not a max/average.

Usage:
    from inspectflow.services.urgency import score_inspection, UrgencyThresholds

    result = score_inspection(inspection.items)
    result = score_inspection(items, UrgencyThresholds(critical=90, high=70, normal=40))
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

# ═════════════════════════════════════════════════════════════════════════════
# Scoring tables
# ═════════════════════════════════════════════════════════════════════════════

CONDITION_SCORES: dict[str, int] = {
    "good": 10,
    "fair": 40,
    "poor": 70,
    "needs_immediate": 95,
}

MEASUREMENT_BONUS: dict[str, int] = {"critical": 40, "poor": 25, "fair": 10}

COST_BONUS_FLOOR = 500
COST_BONUS_CAP = 10


@dataclass(frozen=True)
class MeasurementThreshold:
    """Critical/poor/fair cutoffs for one named measurement.

    ``higher_is_worse`` flips the comparison for wear-style readings
    (restriction %, wear %, crack length) where a larger value is worse.
    """
    critical: float
    poor: float
    fair: float
    higher_is_worse: bool = False

    def classify(self, value: float) -> str | None:
        if self.higher_is_worse:
            if value >= self.critical:
                return "critical"
            if value >= self.poor:
                return "poor"
            if value >= self.fair:
                return "fair"
            return None
        if value <= self.critical:
            return "critical"
        if value <= self.poor:
            return "poor"
        if value <= self.fair:
            return "fair"
        return None

    def cutoff(self, band: str) -> float:
        return getattr(self, band)


@dataclass(frozen=True)
class ItemTypeProfile:
    multiplier: float
    measurements: dict[str, MeasurementThreshold] = field(default_factory=dict)


ITEM_TYPE_PROFILES: dict[str, ItemTypeProfile] = {
    "brakes": ItemTypeProfile(1.5, {
        "pad_thickness_mm": MeasurementThreshold(2, 4, 6),
        "rotor_thickness_mm": MeasurementThreshold(8, 10, 12),
    }),
    "tires": ItemTypeProfile(1.3, {
        "tread_depth_32nds": MeasurementThreshold(2, 4, 6),
        "pressure_psi": MeasurementThreshold(20, 25, 28),
    }),
    "battery": ItemTypeProfile(1.2, {
        "voltage": MeasurementThreshold(11.5, 11.8, 12.0),
        "load_test_amps": MeasurementThreshold(50, 75, 85),
    }),
    "lights": ItemTypeProfile(1.1, {
        "brightness_percent": MeasurementThreshold(30, 50, 70),
    }),
    "fluids": ItemTypeProfile(1.0, {
        "level_percent": MeasurementThreshold(20, 40, 60),
        "condition_rating": MeasurementThreshold(1, 2, 3),
    }),
    "filters": ItemTypeProfile(0.8, {
        "restriction_percent": MeasurementThreshold(80, 60, 40, higher_is_worse=True),
    }),
    "belts_hoses": ItemTypeProfile(1.0, {
        "wear_percent": MeasurementThreshold(80, 60, 40, higher_is_worse=True),
        "crack_length_mm": MeasurementThreshold(10, 5, 2, higher_is_worse=True),
    }),
    "wipers": ItemTypeProfile(0.6, {
        "effectiveness_percent": MeasurementThreshold(40, 60, 75),
    }),
}

_DEFAULT_PROFILE = ItemTypeProfile(1.0)

LEVEL_RECOMMENDATIONS: dict[str, list[str]] = {
    "critical": ["STOP DRIVING - Immediate safety risk", "Contact shop immediately"],
    "high": ["Schedule repair within 1-2 weeks", "Monitor condition closely"],
    "normal": ["Schedule maintenance within 30 days"],
    "low": ["Monitor during regular maintenance"],
}

# Extra advice for high/critical items of these types
ITEM_TYPE_RECOMMENDATIONS: dict[str, list[str]] = {
    "brakes": ["Avoid heavy braking and steep hills", "Check brake fluid level"],
    "tires": ["Reduce speed in wet conditions", "Check tire pressure weekly"],
    "battery": ["Carry jumper cables", "Avoid leaving lights/accessories on"],
}

# Category label -> profile key, for items created without an explicit item_type
_CATEGORY_ALIASES: dict[str, str] = {
    "brake": "brakes",
    "tire": "tires",
    "wheels": "tires",
    "light": "lights",
    "lighting": "lights",
    "fluid": "fluids",
    "filter": "filters",
    "belts": "belts_hoses",
    "hoses": "belts_hoses",
    "belts_and_hoses": "belts_hoses",
    "wiper": "wipers",
    "batteries": "battery",
}


def item_type_for_category(category: str | None) -> str | None:
    """Map a checklist category label ("Belts & Hoses") to a profile key."""
    if not category:
        return None
    key = category.strip().lower().replace("&", "and")
    key = "_".join(key.replace("/", " ").split())
    if key in ITEM_TYPE_PROFILES:
        return key
    if key.replace("_and_", "_") in ITEM_TYPE_PROFILES:
        return key.replace("_and_", "_")
    return _CATEGORY_ALIASES.get(key)


# ═════════════════════════════════════════════════════════════════════════════
# Result types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class UrgencyThresholds:
    """Score cutoffs for mapping a 0..100 score to a level."""
    critical: int = 85
    high: int = 65
    normal: int = 35

    def __post_init__(self):
        if not (100 >= self.critical > self.high > self.normal >= 1):
            raise ValueError(
                "urgency thresholds must satisfy 100 >= critical > high > normal >= 1, "
                f"got critical={self.critical} high={self.high} normal={self.normal}"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UrgencyThresholds":
        """Build thresholds from a rule payload; missing keys keep defaults.

        Raises ValueError for non-numeric or non-descending values.
        """
        defaults = cls()
        values = {}
        for key in ("critical", "high", "normal"):
            raw = data.get(key, getattr(defaults, key))
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"threshold {key!r} must be a number, got {raw!r}")
            values[key] = int(raw)
        return cls(**values)

    def level_for(self, score: float) -> str:
        if score >= self.critical:
            return "critical"
        if score >= self.high:
            return "high"
        if score >= self.normal:
            return "normal"
        return "low"

    def to_dict(self) -> dict:
        return {"critical": self.critical, "high": self.high, "normal": self.normal}


DEFAULT_THRESHOLDS = UrgencyThresholds()


@dataclass
class UrgencyResult:
    score: int
    level: str
    factors: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level,
            "factors": list(self.factors),
            "recommendations": list(self.recommendations),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Scoring
# ═════════════════════════════════════════════════════════════════════════════

def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def _measurement_value(raw: Any) -> float | None:
    """Accept ``3.5`` or ``{"value": 3.5, "unit": "mm"}``; anything else is ignored."""
    if isinstance(raw, Mapping):
        raw = raw.get("value")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return float(raw)


def _fmt(value: float) -> str:
    return f"{value:g}"


def score_item(item: Any, thresholds: UrgencyThresholds | None = None) -> UrgencyResult:
    """Score a single inspection item."""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    factors: list[str] = []
    recommendations: list[str] = []

    condition = _field(item, "condition")
    base = CONDITION_SCORES.get(condition, 0)
    score = float(base)
    factors.append(f"Condition: {condition or 'unassessed'} (+{base})")

    item_type = _field(item, "item_type") or item_type_for_category(_field(item, "category"))
    item_type = item_type.lower() if item_type else None
    profile = ITEM_TYPE_PROFILES.get(item_type, _DEFAULT_PROFILE)

    measurements = _field(item, "measurements") or {}
    for name, raw in measurements.items():
        threshold = profile.measurements.get(name)
        value = _measurement_value(raw)
        if threshold is None or value is None:
            continue
        band = threshold.classify(value)
        if band is None:
            continue
        bonus = MEASUREMENT_BONUS[band]
        score += bonus
        op = "≥" if threshold.higher_is_worse else "≤"
        factors.append(f"{name}: {_fmt(value)} ({band}) +{bonus}")
        recommendations.append(
            f"{name}: {_fmt(value)} is {band} ({op}{_fmt(threshold.cutoff(band))})"
        )

    priority = _field(item, "priority") or 1
    if priority > 1:
        priority_bonus = (priority - 1) * 5
        score += priority_bonus
        factors.append(f"Priority level {priority} (+{priority_bonus})")

    cost = _field(item, "estimated_cost") or 0
    if cost > COST_BONUS_FLOOR:
        cost_bonus = min(cost / 100, COST_BONUS_CAP)
        score += cost_bonus
        factors.append(f"High cost item (+{cost_bonus:.1f})")

    if profile.multiplier != 1.0:
        score *= profile.multiplier
        factors.append(f"Item type modifier: {profile.multiplier}x")

    clamped = max(0.0, min(score, 100.0))
    # half-up; the level comes from the unrounded score
    final = math.floor(clamped + 0.5)
    level = thresholds.level_for(clamped)

    recommendations.extend(LEVEL_RECOMMENDATIONS[level])
    if level in ("critical", "high") and item_type in ITEM_TYPE_RECOMMENDATIONS:
        recommendations.extend(ITEM_TYPE_RECOMMENDATIONS[item_type])

    return UrgencyResult(score=final, level=level, factors=factors, recommendations=recommendations)


def score_inspection(
    items: Iterable[Any],
    thresholds: UrgencyThresholds | None = None,
) -> UrgencyResult:
    """Aggregate item scores into an inspection-level urgency.

    Rules over item-level counts:
        any critical                       -> critical (95)
        >=3 high, or >=1 high and >=3 normal -> high (75)
        >=1 high, or >=2 normal            -> normal (50)
        otherwise                          -> low (20)
    """
    items = list(items)
    if not items:
        return UrgencyResult(
            score=0,
            level="low",
            factors=["No inspection items"],
            recommendations=["Add inspection items to determine urgency"],
        )

    results = [score_item(item, thresholds) for item in items]
    counts = {level: 0 for level in ("critical", "high", "normal", "low")}
    for r in results:
        counts[r.level] += 1

    factors: list[str] = []
    recommendations: list[str] = []
    mix = f"{counts['high']} high priority, {counts['normal']} normal priority items"

    if counts["critical"] > 0:
        level, score = "critical", 95
        factors.append(f"{counts['critical']} critical safety item(s)")
        recommendations += [
            "IMMEDIATE ATTENTION REQUIRED - Do not drive vehicle",
            "Schedule urgent repair appointment",
        ]
    elif counts["high"] >= 3 or (counts["high"] >= 1 and counts["normal"] >= 3):
        level, score = "high", 75
        factors.append(mix)
        recommendations += [
            "Schedule repair within 1-2 weeks",
            "Monitor driving conditions carefully",
        ]
    elif counts["high"] >= 1 or counts["normal"] >= 2:
        level, score = "normal", 50
        factors.append(mix)
        recommendations += [
            "Schedule maintenance within 30 days",
            "Continue regular driving with awareness",
        ]
    else:
        level, score = "low", 20
        factors.append("All items in good or fair condition")
        recommendations += [
            "Continue regular maintenance schedule",
            "Re-inspect in 6 months or per manufacturer schedule",
        ]

    highest = max(r.score for r in results)
    if highest > 50:
        factors.append(f"Highest concern: {highest}/100")

    # dict.fromkeys keeps first-seen order while de-duplicating
    for r in results:
        recommendations.extend(r.recommendations)
    recommendations = list(dict.fromkeys(recommendations))

    return UrgencyResult(score=score, level=level, factors=factors, recommendations=recommendations)
