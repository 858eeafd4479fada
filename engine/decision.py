"""
Compliance Flow — Decision Table Engine

Evaluates static rules against the validated payload and the enrichment
facts to pick a branch (proceed / escalate / human_review) and the
terminal action. Purely deterministic: no I/O, no clock, no randomness.
Identical (payload, facts) always yields an identical DecisionOutcome.

Evaluation order:
  1. Confidence gate — payload.confidence < threshold forces human_review,
     whatever the rules say.
  2. Rules in declared order — all conditions of a rule must hold; the
     first matching rule wins. No implicit priority.
  3. Default — when nothing matches (escalate unless configured otherwise).

Config format:
    decision:
      confidence_threshold: 0.70
      rules:
        - name: claim_for_active_customer
          when:
            - {field: payload.requested_action, operator: eq, value: create_case}
            - {field: facts.customer_status, operator: eq, value: active}
          branch: proceed
          action: create_case
      default:
        branch: escalate
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from engine.validate import Payload


DEFAULT_CONFIDENCE_THRESHOLD = 0.70


class Branch(str, enum.Enum):
    PROCEED = "proceed"
    ESCALATE = "escalate"
    HUMAN_REVIEW = "human_review"


OPERATORS = (
    "exists", "not_exists",
    "eq", "ne",
    "gt", "gte", "lt", "lte",
    "in", "not_in",
    "contains",
)


# ─── Rules ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Condition:
    """One predicate over payload.* or facts.*."""
    field: str
    operator: str = "exists"
    value: Any = None


@dataclass(frozen=True)
class Rule:
    name: str
    branch: Branch
    action: str = ""
    conditions: tuple[Condition, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of evaluating the table for one instance."""
    branch: Branch
    action: str
    matched_rule: str | None
    confidence_override: bool
    reason: str
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch.value,
            "action": self.action,
            "matched_rule": self.matched_rule,
            "confidence_override": self.confidence_override,
            "reason": self.reason,
            "threshold": self.threshold,
        }


# ─── Predicate evaluation ────────────────────────────────────────────

_MISSING = object()


def _get_nested(obj: Any, path: str) -> Any:
    """Navigate a dot-separated path. Returns _MISSING if absent."""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        if op == "gt":
            return float(left) > float(right)
        if op == "gte":
            return float(left) >= float(right)
        if op == "lt":
            return float(left) < float(right)
        if op == "lte":
            return float(left) <= float(right)
    except (TypeError, ValueError):
        return False
    return False


def condition_holds(cond: Condition, context: dict[str, Any]) -> bool:
    """Evaluate one condition against {"payload": ..., "facts": ...}."""
    val = _get_nested(context, cond.field)

    if cond.operator == "exists":
        return val is not _MISSING and val is not None
    if cond.operator == "not_exists":
        return val is _MISSING or val is None
    if val is _MISSING:
        return False

    if cond.operator == "eq":
        return val == cond.value
    if cond.operator == "ne":
        return val != cond.value
    if cond.operator in ("gt", "gte", "lt", "lte"):
        return _compare(val, cond.value, cond.operator)
    if cond.operator == "in":
        return isinstance(cond.value, (list, tuple)) and val in cond.value
    if cond.operator == "not_in":
        return isinstance(cond.value, (list, tuple)) and val not in cond.value
    if cond.operator == "contains":
        if isinstance(val, (list, tuple, set)):
            return cond.value in val
        if isinstance(val, str) and isinstance(cond.value, str):
            return cond.value in val
        return False
    return False


# ─── Table ───────────────────────────────────────────────────────────

class DecisionTable:
    """Ordered rules plus the confidence gate. First match wins."""

    def __init__(
        self,
        rules: list[Rule] | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        default_branch: Branch = Branch.ESCALATE,
        default_action: str = "",
    ):
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1], got {confidence_threshold}")
        self.rules = list(rules or [])
        self.confidence_threshold = confidence_threshold
        self.default_branch = default_branch
        self.default_action = default_action

    def _first_match(self, context: dict[str, Any]) -> Rule | None:
        for rule in self.rules:
            if all(condition_holds(c, context) for c in rule.conditions):
                return rule
        return None

    def evaluate(self, payload: Payload, facts: dict[str, Any]) -> DecisionOutcome:
        context = {"payload": payload.to_dict(), "facts": dict(facts)}
        rule = self._first_match(context)

        if payload.confidence < self.confidence_threshold:
            # The proposed action stays visible to the reviewer.
            proposed = rule.action if rule and rule.action else payload.requested_action
            return DecisionOutcome(
                branch=Branch.HUMAN_REVIEW,
                action=proposed,
                matched_rule=rule.name if rule else None,
                confidence_override=True,
                reason=(
                    f"confidence {payload.confidence:.2f} below threshold "
                    f"{self.confidence_threshold:.2f}"
                ),
                threshold=self.confidence_threshold,
            )

        if rule is not None:
            action = rule.action
            if not action and rule.branch == Branch.HUMAN_REVIEW:
                action = payload.requested_action
            return DecisionOutcome(
                branch=rule.branch,
                action=action,
                matched_rule=rule.name,
                confidence_override=False,
                reason=f"matched rule {rule.name}",
                threshold=self.confidence_threshold,
            )

        action = self.default_action
        if not action and self.default_branch == Branch.HUMAN_REVIEW:
            action = payload.requested_action
        return DecisionOutcome(
            branch=self.default_branch,
            action=action,
            matched_rule=None,
            confidence_override=False,
            reason="no rule matched",
            threshold=self.confidence_threshold,
        )


# ─── Loading ─────────────────────────────────────────────────────────

def _parse_rule(raw: dict[str, Any], index: int) -> Rule:
    name = raw.get("name") or f"rule_{index + 1}"
    try:
        branch = Branch(raw.get("branch", ""))
    except ValueError:
        raise ValueError(
            f"Rule {name!r}: branch must be one of {[b.value for b in Branch]}"
        ) from None

    conditions = []
    for c in raw.get("when", []) or []:
        op = c.get("operator", "exists")
        if op not in OPERATORS:
            raise ValueError(f"Rule {name!r}: unknown operator {op!r}")
        path = c.get("field", "")
        if not (path.startswith("payload.") or path.startswith("facts.")):
            raise ValueError(
                f"Rule {name!r}: field {path!r} must start with 'payload.' or 'facts.'")
        conditions.append(Condition(field=path, operator=op, value=c.get("value")))

    branch_action = raw.get("action", "") or ""
    if branch == Branch.PROCEED and not branch_action:
        raise ValueError(f"Rule {name!r}: proceed rules must name an action")

    return Rule(
        name=name,
        branch=branch,
        action=branch_action,
        conditions=tuple(conditions),
        description=raw.get("description", ""),
    )


def load_decision_table(config: dict[str, Any] | None) -> DecisionTable:
    """Build a DecisionTable from the `decision` config section."""
    section = (config or {}).get("decision", {}) or {}
    rules = [_parse_rule(r, i) for i, r in enumerate(section.get("rules", []) or [])]

    names = [r.name for r in rules]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate rule names: {dupes}")

    default = section.get("default", {}) or {}
    default_branch = Branch(default.get("branch", Branch.ESCALATE.value))
    default_action = default.get("action", "") or ""
    if default_branch == Branch.PROCEED and not default_action:
        raise ValueError("Default proceed branch must name an action")

    return DecisionTable(
        rules=rules,
        confidence_threshold=float(
            section.get("confidence_threshold", DEFAULT_CONFIDENCE_THRESHOLD)),
        default_branch=default_branch,
        default_action=default_action,
    )
