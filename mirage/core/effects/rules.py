"""Effect rules: class + depth-range bindings and their packed buffers.

Rules are evaluated in registration order and the first one whose class
matches and whose inclusive `[min_range, max_range]` contains the object's
depth supplies the color (or packed parameter vector). When the table carries
no depth, every rule is treated as in range.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from mirage.core.types import DEFAULT_CLASS_ID, Color, ObjectTable

RULE_DTYPE = np.dtype(
    [
        ("class_id", np.int32),
        ("min_range", np.float32),
        ("max_range", np.float32),
        ("color", np.float32, (4,)),
    ]
)


@dataclass(frozen=True)
class EffectRule:
    """Binds one class and depth range to a color or parameter vector."""

    class_id: int
    min_range: float = 0.0
    max_range: float = 100.0
    color: Color = (1.0, 1.0, 1.0, 1.0)

    def in_range(self, depth: float) -> bool:
        return self.min_range <= depth <= self.max_range

    def matches(self, class_id: int, depth: float, depth_valid: bool = True) -> bool:
        if class_id != self.class_id:
            return False
        return self.in_range(depth) if depth_valid else True


# Installed when a handler has no rules: matches no real class, keeps buffers non-empty.
SENTINEL_RULE = EffectRule(class_id=DEFAULT_CLASS_ID, color=(0.0, 0.0, 0.0, 1.0))


def pack_rules(rules: list[EffectRule]) -> np.ndarray:
    """Pack rules into a structured array (the constant buffer read by whole-image effects)."""

    buf = np.zeros(len(rules), dtype=RULE_DTYPE)
    for i, rule in enumerate(rules):
        buf[i]["class_id"] = rule.class_id
        buf[i]["min_range"] = rule.min_range
        buf[i]["max_range"] = rule.max_range
        buf[i]["color"] = rule.color
    return buf


@dataclass(frozen=True)
class RuleMatch:
    """Per-detection rule resolution for one object table.

    `active[i]` tells whether detection `i` is eligible, `params[i]` is the
    color/parameter vector of the first matching rule (zeros otherwise).
    """

    active: np.ndarray
    params: np.ndarray

    @property
    def count(self) -> int:
        return int(np.count_nonzero(self.active))

    def pixel_lookup(self, table: ObjectTable) -> tuple[np.ndarray, np.ndarray]:
        """Map the rule match onto pixels via the instance mask.

        Returns (selected, params) where `selected` is a bool (H, W) mask of
        pixels belonging to eligible instances and `params` is (H, W, 4).
        """

        return lookup_pixels(self, table.instance_ids)


def lookup_pixels(match: RuleMatch, ids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Per-pixel (selected, params) for an instance-id image.

    Ids outside the table (background included) are never selected.
    """

    k = int(match.active.shape[0])
    valid = (ids >= 0) & (ids < k)
    index = np.where(valid, ids, k)
    active_lut = np.append(match.active, False)
    params_lut = np.vstack([match.params, np.zeros((1, 4), dtype=np.float32)])
    return active_lut[index], params_lut[index]


class RuleSet:
    """Ordered rules for one effect handler plus their packed buffer."""

    def __init__(self, rules: list[EffectRule] | None = None) -> None:
        self._rules: list[EffectRule] = []
        self._is_default = True
        self.buffer = pack_rules([SENTINEL_RULE])
        self.replace(rules or [])

    @property
    def rules(self) -> list[EffectRule]:
        return list(self._rules)

    @property
    def is_default(self) -> bool:
        return self._is_default

    def replace(self, rules: list[EffectRule]) -> None:
        """Install a new rule list; an empty list falls back to the sentinel rule."""

        rules = list(rules)
        self._is_default = not rules
        self._rules = rules if rules else [SENTINEL_RULE]
        self.buffer = pack_rules(self._rules)

    def class_ids(self) -> set[int]:
        return {r.class_id for r in self._rules}

    def first_match(self, class_id: int, depth: float, depth_valid: bool = True) -> EffectRule | None:
        for rule in self._rules:
            if rule.matches(class_id, depth, depth_valid):
                return rule
        return None

    def resolve(self, table: ObjectTable) -> RuleMatch:
        """Resolve the first matching rule for every detection in the table."""

        k = len(table.detections)
        active = np.zeros(k, dtype=bool)
        params = np.zeros((k, 4), dtype=np.float32)
        for i, det in enumerate(table.detections):
            rule = self.first_match(det.class_id, det.depth, table.depth_valid)
            if rule is not None:
                active[i] = True
                params[i] = rule.color
        return RuleMatch(active=active, params=params)
