"""
Compliance Flow — Decision Table Engine Tests

Tests:
  - First matching rule wins, in declared order
  - All conditions of a rule must hold
  - Default branch when nothing matches
  - Confidence below threshold forces human_review, keeps the proposed action
  - Threshold is inclusive: confidence == threshold is not overridden
  - Operators over payload.* and facts.*
  - Determinism: same inputs, same outcome
  - Loading rejects malformed tables
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.decision import (
    Branch,
    Condition,
    DecisionTable,
    Rule,
    condition_holds,
    load_decision_table,
)
from engine.validate import validate


def _payload(confidence=0.93, action="create_case", customer="C-1001"):
    return validate({
        "correlationId": "req-1",
        "document": {
            "uri": "s3://intake/1.pdf",
            "type": "claim_form",
            "extracted": {
                "customerId": customer,
                "receivedDate": "2024-03-01",
                "keyDates": {"incidentDate": "2024-02-27"},
                "confidence": confidence,
            },
        },
        "requestedAction": action,
    })


_CONFIG = {"decision": {
    "confidence_threshold": 0.70,
    "rules": [
        {"name": "suspended",
         "when": [{"field": "facts.customer_status", "operator": "eq", "value": "suspended"}],
         "branch": "escalate"},
        {"name": "high_risk_case",
         "when": [{"field": "facts.risk_tier", "operator": "eq", "value": "high"},
                  {"field": "payload.requested_action", "operator": "eq", "value": "create_case"}],
         "branch": "human_review", "action": "create_case"},
        {"name": "active_case",
         "when": [{"field": "facts.customer_status", "operator": "eq", "value": "active"},
                  {"field": "payload.requested_action", "operator": "eq", "value": "create_case"}],
         "branch": "proceed", "action": "create_case"},
    ],
    "default": {"branch": "escalate"},
}}


class TestEvaluation(unittest.TestCase):

    def setUp(self):
        self.table = load_decision_table(_CONFIG)

    def test_proceed(self):
        out = self.table.evaluate(_payload(), {"customer_status": "active", "risk_tier": "low"})
        self.assertEqual(out.branch, Branch.PROCEED)
        self.assertEqual(out.action, "create_case")
        self.assertEqual(out.matched_rule, "active_case")
        self.assertFalse(out.confidence_override)

    def test_first_match_wins(self):
        # Both high_risk_case and active_case hold; the earlier one wins.
        out = self.table.evaluate(_payload(), {"customer_status": "active", "risk_tier": "high"})
        self.assertEqual(out.branch, Branch.HUMAN_REVIEW)
        self.assertEqual(out.matched_rule, "high_risk_case")

    def test_escalate_rule(self):
        out = self.table.evaluate(_payload(), {"customer_status": "suspended", "risk_tier": "low"})
        self.assertEqual(out.branch, Branch.ESCALATE)
        self.assertEqual(out.matched_rule, "suspended")

    def test_partial_match_does_not_fire(self):
        out = self.table.evaluate(
            _payload(action="notify"), {"customer_status": "active", "risk_tier": "low"})
        self.assertEqual(out.branch, Branch.ESCALATE)
        self.assertIsNone(out.matched_rule)
        self.assertEqual(out.reason, "no rule matched")

    def test_missing_fact_does_not_match(self):
        out = self.table.evaluate(_payload(), {})
        self.assertIsNone(out.matched_rule)

    def test_low_confidence_overrides_proceed(self):
        out = self.table.evaluate(
            _payload(confidence=0.55), {"customer_status": "active", "risk_tier": "low"})
        self.assertEqual(out.branch, Branch.HUMAN_REVIEW)
        self.assertTrue(out.confidence_override)
        self.assertEqual(out.action, "create_case")
        self.assertEqual(out.matched_rule, "active_case")
        self.assertIn("0.55", out.reason)

    def test_low_confidence_overrides_escalate(self):
        out = self.table.evaluate(
            _payload(confidence=0.1), {"customer_status": "suspended"})
        self.assertEqual(out.branch, Branch.HUMAN_REVIEW)
        self.assertTrue(out.confidence_override)

    def test_low_confidence_without_rule_proposes_requested_action(self):
        out = self.table.evaluate(_payload(confidence=0.2, action="notify"), {})
        self.assertEqual(out.branch, Branch.HUMAN_REVIEW)
        self.assertEqual(out.action, "notify")
        self.assertIsNone(out.matched_rule)

    def test_threshold_inclusive(self):
        out = self.table.evaluate(
            _payload(confidence=0.70), {"customer_status": "active", "risk_tier": "low"})
        self.assertEqual(out.branch, Branch.PROCEED)
        self.assertFalse(out.confidence_override)

    def test_deterministic(self):
        facts = {"customer_status": "active", "risk_tier": "low"}
        first = self.table.evaluate(_payload(), facts)
        for _ in range(10):
            self.assertEqual(self.table.evaluate(_payload(), dict(facts)), first)

    def test_outcome_to_dict(self):
        out = self.table.evaluate(_payload(), {"customer_status": "active", "risk_tier": "low"})
        d = out.to_dict()
        self.assertEqual(d["branch"], "proceed")
        self.assertEqual(d["action"], "create_case")
        self.assertFalse(d["confidence_override"])

    def test_default_human_review_uses_requested_action(self):
        table = DecisionTable(rules=[], default_branch=Branch.HUMAN_REVIEW)
        out = table.evaluate(_payload(action="archive"), {})
        self.assertEqual(out.branch, Branch.HUMAN_REVIEW)
        self.assertEqual(out.action, "archive")


class TestOperators(unittest.TestCase):

    def _holds(self, op, value, actual):
        ctx = {"payload": {}, "facts": {"x": actual}}
        return condition_holds(Condition(field="facts.x", operator=op, value=value), ctx)

    def test_exists(self):
        self.assertTrue(condition_holds(Condition("facts.x"), {"facts": {"x": 0}}))
        self.assertFalse(condition_holds(Condition("facts.x"), {"facts": {"x": None}}))
        self.assertFalse(condition_holds(Condition("facts.x"), {"facts": {}}))
        self.assertTrue(condition_holds(Condition("facts.x", "not_exists"), {"facts": {}}))

    def test_equality(self):
        self.assertTrue(self._holds("eq", "a", "a"))
        self.assertFalse(self._holds("eq", "a", "b"))
        self.assertTrue(self._holds("ne", "a", "b"))

    def test_numeric(self):
        self.assertTrue(self._holds("gt", 5, 6))
        self.assertTrue(self._holds("gte", 5, 5))
        self.assertTrue(self._holds("lt", 5, 4))
        self.assertTrue(self._holds("lte", 5, 5))
        self.assertFalse(self._holds("gt", 5, "n/a"))

    def test_membership(self):
        self.assertTrue(self._holds("in", ["a", "b"], "a"))
        self.assertFalse(self._holds("in", "ab", "a"))
        self.assertTrue(self._holds("not_in", ["a"], "b"))
        self.assertTrue(self._holds("contains", "fraud", ["fraud", "late"]))
        self.assertTrue(self._holds("contains", "ra", "fraud"))
        self.assertFalse(self._holds("contains", "x", 12))

    def test_nested_payload_path(self):
        ctx = {"payload": {"key_dates": {"incidentDate": "2024-02-27"}}, "facts": {}}
        cond = Condition("payload.key_dates.incidentDate", "eq", "2024-02-27")
        self.assertTrue(condition_holds(cond, ctx))

    def test_missing_field_never_matches_comparisons(self):
        ctx = {"payload": {}, "facts": {}}
        for op in ("eq", "ne", "gt", "in", "not_in", "contains"):
            self.assertFalse(condition_holds(Condition("facts.x", op, ["a"]), ctx), op)


class TestLoading(unittest.TestCase):

    def test_defaults(self):
        table = load_decision_table({})
        self.assertEqual(table.rules, [])
        self.assertEqual(table.confidence_threshold, 0.70)
        self.assertEqual(table.default_branch, Branch.ESCALATE)

    def test_unknown_branch(self):
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"rules": [{"name": "r", "branch": "maybe"}]}})

    def test_unknown_operator(self):
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"rules": [{
                "name": "r", "branch": "escalate",
                "when": [{"field": "facts.x", "operator": "regex", "value": "."}],
            }]}})

    def test_field_root_enforced(self):
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"rules": [{
                "name": "r", "branch": "escalate", "when": [{"field": "env.HOME"}],
            }]}})

    def test_proceed_needs_action(self):
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"rules": [{"name": "r", "branch": "proceed"}]}})
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"default": {"branch": "proceed"}}})

    def test_duplicate_names(self):
        rule = {"name": "r", "branch": "escalate"}
        with self.assertRaises(ValueError):
            load_decision_table({"decision": {"rules": [rule, dict(rule)]}})

    def test_threshold_range(self):
        with self.assertRaises(ValueError):
            DecisionTable(confidence_threshold=1.5)

    def test_unnamed_rules_numbered(self):
        table = load_decision_table({"decision": {"rules": [{"branch": "escalate"}]}})
        self.assertEqual(table.rules[0].name, "rule_1")
        self.assertIsInstance(table.rules[0], Rule)


if __name__ == "__main__":
    unittest.main()
