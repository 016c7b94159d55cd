import hashlib
from typing import Mapping, Optional, Tuple

from flaggate.models import FlagStore, RequestContext, RuleKind, TargetingRule


def bucket(key: str, subject: str) -> int:
    # 0..99, stable across processes and interpreter versions
    digest = hashlib.sha1(f"{key}:{subject}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def in_rollout(key: str, subject: Optional[str], percentage: int) -> bool:
    if percentage >= 100:
        return True
    if percentage <= 0 or subject is None:
        return False
    return bucket(key, subject) < percentage


def match_attribute(rule: TargetingRule, attributes: Mapping[str, str]) -> bool:
    candidate = attributes.get(rule.attr)
    if candidate is None:
        return False
    val = rule.value
    if rule.op == "eq":
        return str(candidate) == str(val)
    if rule.op == "ne":
        return str(candidate) != str(val)
    members = set(map(str, val if isinstance(val, (list, tuple, set, frozenset)) else [val]))
    if rule.op == "in":
        return str(candidate) in members
    if rule.op == "nin":
        return str(candidate) not in members
    return False


def match_rule(rule: TargetingRule, key: str, ctx: RequestContext) -> bool:
    if rule.kind is RuleKind.USER_IN_LIST:
        return ctx.subject_id is not None and ctx.subject_id in rule.values
    if rule.kind is RuleKind.GROUP_IN_LIST:
        return not rule.values.isdisjoint(ctx.groups)
    if rule.kind is RuleKind.TIME_WINDOW:
        # [start, end)
        if rule.start is not None and ctx.now < rule.start:
            return False
        if rule.end is not None and ctx.now >= rule.end:
            return False
        return True
    if rule.kind is RuleKind.PERCENTAGE_OF:
        if rule.subject_key == "subject":
            subject = ctx.subject_id
        else:
            subject = ctx.attributes.get(rule.subject_key)
        return subject is not None and in_rollout(key, subject, rule.percentage)
    if rule.kind is RuleKind.ATTRIBUTE:
        return match_attribute(rule, ctx.attributes)
    return False


def explain(store: FlagStore, key: str, ctx: RequestContext) -> Tuple[bool, str]:
    """Evaluate ``key`` for ``ctx`` and say which step decided the outcome.

    Pure: the only clock consulted is ``ctx.now`` and the only source of
    spread is the stable bucket hash, so equal inputs always agree.
    """
    flag = store.get(key)
    if flag is None:
        return False, "missing"
    if not flag.enabled:
        return False, "disabled"
    for index, rule in enumerate(flag.rules):
        if match_rule(rule, key, ctx):
            return rule.enabled, f"rule-{index}-{rule.kind.value}"
    if flag.rollout_percentage is not None:
        pct = flag.rollout_percentage
        if in_rollout(key, ctx.subject_id, pct):
            return True, f"rollout-{pct}%"
        return False, f"rollout-miss-{pct}%"
    return True, "default"


def is_enabled(store: FlagStore, key: str, ctx: RequestContext) -> bool:
    return explain(store, key, ctx)[0]
