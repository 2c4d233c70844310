"""
router.py

Content router: runs every enabled evaluator over an item and concatenates the
candidate decisions. It never picks a single winner; callers fan out to all
candidates or take select_primary(). No I/O happens here - rules and instances
are loaded by the caller.
"""
import logging
from typing import Iterable, List, Optional

from watchroute.domain import (
    MANAGER_FOR_CONTENT,
    InstanceInfo,
    RoutingContext,
    RoutingDecision,
    RoutingRule,
    WatchlistItem,
)
from watchroute.services.evaluators import RoutingEvaluator, default_evaluators

logger = logging.getLogger(__name__)


def _rank_key(decision: RoutingDecision):
    rule_id = decision.rule_id if decision.rule_id is not None else -1
    return (-decision.weight, decision.evaluator_order, rule_id)


def rank_decisions(decisions: Iterable[RoutingDecision]) -> List[RoutingDecision]:
    """Weight descending, then evaluator order, then rule id."""
    return sorted(decisions, key=_rank_key)


def select_primary(decisions: Iterable[RoutingDecision]) -> Optional[RoutingDecision]:
    ranked = rank_decisions(decisions)
    return ranked[0] if ranked else None


def unique_by_instance(decisions: Iterable[RoutingDecision]) -> List[RoutingDecision]:
    """Keep the best-ranked decision per target instance."""
    seen = set()
    out = []
    for decision in rank_decisions(decisions):
        if decision.instance_id in seen:
            continue
        seen.add(decision.instance_id)
        out.append(decision)
    return out


def default_decisions(content_type: str, instances: Iterable[InstanceInfo]) -> List[RoutingDecision]:
    """Fallback to the default instance of the manager handling content_type."""
    manager = MANAGER_FOR_CONTENT.get(content_type)
    candidates = [i for i in instances if i.enabled and i.instance_type == manager]
    default = next((i for i in candidates if i.is_default), None)
    if default is None:
        if not candidates:
            return []
        default = sorted(candidates, key=lambda i: i.id)[0]
    return [RoutingDecision(
        instance_id=default.id,
        instance_type=default.instance_type,
        weight=0,
        quality_profile=default.quality_profile,
        root_folder=default.root_folder,
        tags=tuple(default.tags),
    )]


class ContentRouter:
    def __init__(self, evaluators: Optional[List[RoutingEvaluator]] = None):
        self.evaluators = sorted(evaluators if evaluators is not None else default_evaluators(), key=lambda e: e.order)

    def evaluate(self, item: WatchlistItem, context: RoutingContext, rules: List[RoutingRule]) -> List[RoutingDecision]:
        """Concatenate decisions from all evaluators in ascending order. Never raises."""
        decisions: List[RoutingDecision] = []
        for evaluator in self.evaluators:
            if not evaluator.enabled:
                continue
            kind_rules = [r for r in rules if r.kind == evaluator.kind]
            if not kind_rules:
                continue
            try:
                result = evaluator.evaluate_routing(item, context, kind_rules)
            except Exception as e:
                logger.error(f"[Router] Evaluator {evaluator.name} failed for '{item.title}': {e}", exc_info=True)
                continue
            if result:
                decisions.extend(result)
        if not decisions:
            logger.debug(f"[Router] No routing rules matched '{item.title}'")
        return decisions
