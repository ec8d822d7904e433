from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import json
import logging
from typing import Any, Iterable

from sqlalchemy import MetaData, Table

from togglecascade.core.config import get_settings
from togglecascade.core.errors import CascadeRuleConfigError
from togglecascade.domain.models import Base


logger = logging.getLogger(__name__)

FEATURE_COUPONS = "coupons"
FEATURE_PROMOTIONS = "promotions"
FEATURE_DRIVERS = "drivers"
FEATURE_TABLES = "tables"


@dataclass(frozen=True)
class CascadeRule:
    """Declarative link between a feature key and the records it controls.

    A record counts as active when every attribute in ``active_attributes`` is
    true. Deactivation clears ``deactivate_attributes``; restoration sets
    ``restore_attributes`` back to true and defaults to the same set.
    """

    feature_key: str
    collection: str
    active_attributes: tuple[str, ...] = ("is_active",)
    deactivate_attributes: tuple[str, ...] = ("is_active",)
    restore_attributes: tuple[str, ...] = ()
    tenant_column: str = "tenant_id"
    id_column: str = "id"

    def __post_init__(self) -> None:
        # Normalize list input from JSON and fill the restore default.
        object.__setattr__(self, "active_attributes", tuple(self.active_attributes))
        object.__setattr__(self, "deactivate_attributes", tuple(self.deactivate_attributes))
        restore = tuple(self.restore_attributes) or self.deactivate_attributes
        object.__setattr__(self, "restore_attributes", restore)

    def as_dict(self) -> dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "collection": self.collection,
            "active_attributes": list(self.active_attributes),
            "deactivate_attributes": list(self.deactivate_attributes),
            "restore_attributes": list(self.restore_attributes),
            "tenant_column": self.tenant_column,
            "id_column": self.id_column,
        }


def default_rules() -> tuple[CascadeRule, ...]:
    return (
        CascadeRule(feature_key=FEATURE_COUPONS, collection="coupons"),
        CascadeRule(feature_key=FEATURE_PROMOTIONS, collection="promotions"),
        CascadeRule(
            feature_key=FEATURE_DRIVERS,
            collection="delivery_drivers",
            deactivate_attributes=("is_active", "is_available"),
            # Drivers mark themselves available again when they go on shift.
            restore_attributes=("is_active",),
        ),
        CascadeRule(feature_key=FEATURE_TABLES, collection="tables"),
    )


class RuleRegistry:
    """Immutable feature key -> cascade rules table, validated against table metadata."""

    def __init__(self, rules: Iterable[CascadeRule], *, metadata: MetaData | None = None) -> None:
        self._metadata = metadata if metadata is not None else Base.metadata
        by_feature: dict[str, list[CascadeRule]] = {}
        for rule in rules:
            self._validate(rule)
            by_feature.setdefault(rule.feature_key, []).append(rule)
        self._rules = {key: tuple(value) for key, value in by_feature.items()}

    def _validate(self, rule: CascadeRule) -> None:
        if not rule.feature_key:
            raise CascadeRuleConfigError("Cascade rule is missing feature_key")
        if not rule.active_attributes or not rule.deactivate_attributes:
            raise CascadeRuleConfigError(
                f"Cascade rule for {rule.feature_key!r} needs active and deactivate attributes"
            )
        table = self._metadata.tables.get(rule.collection)
        if table is None:
            raise CascadeRuleConfigError(
                f"Cascade rule for {rule.feature_key!r} targets unknown collection {rule.collection!r}"
            )
        columns = (
            rule.tenant_column,
            rule.id_column,
            *rule.active_attributes,
            *rule.deactivate_attributes,
            *rule.restore_attributes,
        )
        missing = sorted({name for name in columns if name not in table.c})
        if missing:
            raise CascadeRuleConfigError(
                f"Collection {rule.collection!r} has no column(s) {', '.join(missing)}"
            )

    def rules_for(self, feature_key: str) -> tuple[CascadeRule, ...]:
        # Unknown features cascade to nothing.
        return self._rules.get(feature_key, ())

    def feature_keys(self) -> list[str]:
        return sorted(self._rules)

    def all_rules(self) -> list[CascadeRule]:
        return [rule for key in self.feature_keys() for rule in self._rules[key]]

    def table_for(self, rule: CascadeRule) -> Table:
        return self._metadata.tables[rule.collection]


def parse_rules_json(raw: str) -> tuple[CascadeRule, ...]:
    # Accept a JSON list of rule objects using the CascadeRule field names.
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise CascadeRuleConfigError("cascade_rules_json is not valid JSON") from exc
    if not isinstance(payload, list):
        raise CascadeRuleConfigError("cascade_rules_json must be a JSON list")
    rules: list[CascadeRule] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise CascadeRuleConfigError(f"cascade rule #{index} must be an object")
        try:
            rules.append(CascadeRule(**item))
        except TypeError as exc:
            raise CascadeRuleConfigError(f"cascade rule #{index} is invalid: {exc}") from exc
    return tuple(rules)


@lru_cache
def get_rule_registry() -> RuleRegistry:
    # Rules are fixed per process; changing them is a deployment-time action.
    settings = get_settings()
    if settings.cascade_rules_json:
        rules = parse_rules_json(settings.cascade_rules_json)
        logger.info("cascade_rules_loaded source=settings count=%s", len(rules))
    else:
        rules = default_rules()
    return RuleRegistry(rules)
