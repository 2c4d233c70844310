"""
evaluators.py

Routing evaluators. Each evaluator owns one rule kind, checks the item against
every enabled rule of that kind and turns matches into RoutingDecisions.
Field evaluators (genre, user, guid, year, content_type) also answer single
conditions so the conditional evaluator can combine them into AND/OR groups.

Criteria shapes:
  field rules:  {"operator": "in", "value": ["Horror", "Thriller"]}
  year range:   {"operator": "between", "value": {"min": 1980, "max": 1989}}
  conditional:  {"condition": {"operator": "AND", "negate": false,
                 "conditions": [{"field": "genre", "operator": "in", "value": [...]}, ...]}}
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from watchroute.domain import RoutingContext, RoutingDecision, RoutingRule, WatchlistItem, normalize_guid

logger = logging.getLogger(__name__)


def decision_from_rule(rule: RoutingRule, evaluator_order: int) -> RoutingDecision:
    return RoutingDecision(
        instance_id=rule.target_instance_id,
        instance_type=rule.target_type,
        weight=rule.order,
        quality_profile=rule.quality_profile,
        root_folder=rule.root_folder,
        tags=tuple(rule.tags),
        rule_id=rule.id,
        rule_name=rule.name,
        evaluator_order=evaluator_order,
        always_require_approval=rule.always_require_approval,
        bypass_user_quotas=rule.bypass_user_quotas,
    )


def sort_rules(rules: Iterable[RoutingRule]) -> List[RoutingRule]:
    """Highest order first, ties by rule id ascending."""
    return sorted(rules, key=lambda r: (-r.order, r.id))


def _norm(value: Any) -> str:
    return str(value).strip().lower()


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def regex_matches(pattern: Any, candidates: Iterable[str]) -> bool:
    if not isinstance(pattern, str):
        return False
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"[Router] Invalid regex pattern {pattern!r}: {e}")
        return False
    return any(compiled.search(c) for c in candidates)


class RoutingEvaluator:
    """Base evaluator: subclasses set kind/field and implement evaluate_condition."""

    name = "base"
    kind = ""
    field = ""

    def __init__(self, order: int, enabled: bool = True):
        self.order = order
        self.enabled = enabled

    def can_evaluate(self, item: WatchlistItem, context: RoutingContext) -> bool:
        return True

    def evaluate_condition(self, condition: Dict[str, Any], item: WatchlistItem, context: RoutingContext) -> bool:
        raise NotImplementedError

    def rule_matches(self, rule: RoutingRule, item: WatchlistItem, context: RoutingContext) -> bool:
        return self.evaluate_condition(rule.criteria or {}, item, context)

    def evaluate_routing(
        self,
        item: WatchlistItem,
        context: RoutingContext,
        rules: List[RoutingRule],
    ) -> Optional[List[RoutingDecision]]:
        if not self.can_evaluate(item, context):
            return None
        decisions = []
        for rule in sort_rules(rules):
            if not rule.enabled or rule.kind != self.kind or not rule.applies_to(item.content_type):
                continue
            if self.rule_matches(rule, item, context):
                logger.debug(f"[Router] {self.name} rule '{rule.name}' matched '{item.title}'")
                decisions.append(decision_from_rule(rule, self.order))
        return decisions or None


class GenreEvaluator(RoutingEvaluator):
    name = "genre"
    kind = "genre"
    field = "genre"

    def can_evaluate(self, item, context):
        return bool(item.genres)

    def evaluate_condition(self, condition, item, context):
        operator = condition.get("operator", "in")
        values = [_norm(v) for v in _as_list(condition.get("value", []))]
        genres = {_norm(g) for g in item.genres}

        if operator in ("contains", "in"):
            return any(v in genres for v in values)
        if operator in ("notContains", "notIn"):
            return not any(v in genres for v in values)
        if operator == "equals":
            return set(values) == genres
        if operator == "regex":
            return regex_matches(condition.get("value"), genres)
        logger.warning(f"[Router] Unsupported genre operator: {operator}")
        return False


class UserEvaluator(RoutingEvaluator):
    name = "user"
    kind = "user"
    field = "user"

    def can_evaluate(self, item, context):
        return context.user_id is not None or bool(context.user_name)

    def _is_user(self, value: Any, context: RoutingContext) -> bool:
        if context.user_id is not None and str(value) == str(context.user_id):
            return True
        return bool(context.user_name) and str(value) == context.user_name

    def evaluate_condition(self, condition, item, context):
        operator = condition.get("operator", "in")
        value = condition.get("value")

        if operator in ("equals", "in"):
            return any(self._is_user(v, context) for v in _as_list(value))
        if operator in ("notEquals", "notIn"):
            return not any(self._is_user(v, context) for v in _as_list(value))
        if operator == "regex":
            return bool(context.user_name) and regex_matches(value, [context.user_name])
        logger.warning(f"[Router] Unsupported user operator: {operator}")
        return False


class GuidEvaluator(RoutingEvaluator):
    name = "guid"
    kind = "guid"
    field = "guid"

    def can_evaluate(self, item, context):
        return bool(item.external_ids)

    def evaluate_condition(self, condition, item, context):
        operator = condition.get("operator", "in")
        wanted = {normalize_guid(v) for v in _as_list(condition.get("value", []))}
        matched = bool(wanted & set(item.external_ids))
        if operator in ("in", "equals", "contains"):
            return matched
        if operator in ("notIn", "notEquals", "notContains"):
            return not matched
        logger.warning(f"[Router] Unsupported guid operator: {operator}")
        return False


class ContentTypeEvaluator(RoutingEvaluator):
    name = "content_type"
    kind = "content_type"
    field = "content_type"

    def evaluate_condition(self, condition, item, context):
        operator = condition.get("operator", "equals")
        values = {_norm(v) for v in _as_list(condition.get("value", []))}
        content_type = context.content_type or item.content_type
        if operator in ("equals", "in"):
            return content_type in values
        if operator in ("notEquals", "notIn"):
            return content_type not in values
        logger.warning(f"[Router] Unsupported content_type operator: {operator}")
        return False


def _as_year(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class YearEvaluator(RoutingEvaluator):
    """Release year. Ranges are {"min": 1980, "max": 1989}, both ends inclusive and optional."""

    name = "year"
    kind = "year"
    field = "year"

    def can_evaluate(self, item, context):
        return item.year is not None

    def evaluate_condition(self, condition, item, context):
        year = item.year
        if year is None:
            return False
        operator = condition.get("operator", "equals")
        value = condition.get("value")

        if operator == "between":
            if not isinstance(value, dict):
                logger.warning(f"[Router] Year range must be an object, got {value!r}")
                return False
            low = _as_year(value.get("min"))
            high = _as_year(value.get("max"))
            return (low is None or year >= low) and (high is None or year <= high)

        years = [y for y in (_as_year(v) for v in _as_list(value)) if y is not None]
        if operator in ("equals", "in"):
            return year in years
        if operator in ("notEquals", "notIn"):
            return year not in years
        if operator in ("greaterThan", "lessThan"):
            if len(years) != 1:
                logger.warning(f"[Router] Year operator {operator} needs a single year, got {value!r}")
                return False
            return year > years[0] if operator == "greaterThan" else year < years[0]
        logger.warning(f"[Router] Unsupported year operator: {operator}")
        return False


class ConditionalEvaluator(RoutingEvaluator):
    """Combines field conditions into nested AND/OR groups."""

    name = "conditional"
    kind = "conditional"
    field = "condition"

    def __init__(self, order: int, field_evaluators: Dict[str, RoutingEvaluator], enabled: bool = True):
        super().__init__(order, enabled)
        self.field_evaluators = field_evaluators

    def rule_matches(self, rule, item, context):
        condition = (rule.criteria or {}).get("condition")
        if not isinstance(condition, dict):
            logger.warning(f"[Router] Conditional rule '{rule.name}' has no valid condition")
            return False
        return self.evaluate_condition(condition, item, context)

    def evaluate_condition(self, condition, item, context):
        if isinstance(condition.get("conditions"), list):
            results = (self.evaluate_condition(c, item, context) for c in condition["conditions"])
            if str(condition.get("operator", "AND")).upper() == "OR":
                matched = any(results)
            else:
                matched = all(results)
        else:
            evaluator = self.field_evaluators.get(condition.get("field"))
            if evaluator is None:
                logger.warning(f"[Router] No evaluator for condition field {condition.get('field')!r}")
                matched = False
            else:
                matched = evaluator.evaluate_condition(condition, item, context)
        return not matched if condition.get("negate") else matched


def default_evaluators() -> List[RoutingEvaluator]:
    genre = GenreEvaluator(order=40)
    user = UserEvaluator(order=20)
    guid = GuidEvaluator(order=30)
    year = YearEvaluator(order=45)
    content_type = ContentTypeEvaluator(order=50)
    fields = {e.field: e for e in (genre, user, guid, year, content_type)}
    conditional = ConditionalEvaluator(order=10, field_evaluators=fields)
    return [conditional, user, guid, genre, year, content_type]
