"""
Compliance Flow — Payload Validator Tests

Tests:
  - Well-formed payload accepted, fields mapped to the Payload
  - schemaVersion defaults to 1.0; unsupported versions rejected
  - Every violation reported in one pass
  - Confidence bounds and type (bool is not a number)
  - Dates must be ISO-8601
  - requestedAction restricted to the supported set
  - Non-object body rejected
  - Unknown extracted keys preserved in extra
  - Canonical dict and wire shape reproduce the same Payload
"""

import copy
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.errors import ValidationError
from engine.validate import Payload, validate


def _raw(**overrides):
    raw = {
        "schemaVersion": "1.0",
        "correlationId": "req-2024-000123",
        "document": {
            "uri": "s3://intake/claims/123.pdf",
            "type": "claim_form",
            "extracted": {
                "customerId": "C-1001",
                "receivedDate": "2024-03-01",
                "keyDates": {"incidentDate": "2024-02-27"},
                "confidence": 0.93,
            },
        },
        "requestedAction": "create_case",
        "agent": {"model": "extractor", "version": "3.2"},
    }
    raw.update(overrides)
    return raw


def _fields(ctx):
    return [v["field"] for v in ctx.exception.violations]


class TestValidPayload(unittest.TestCase):

    def test_fields_mapped(self):
        p = validate(_raw())
        self.assertEqual(p.correlation_id, "req-2024-000123")
        self.assertEqual(p.document.uri, "s3://intake/claims/123.pdf")
        self.assertEqual(p.document.type, "claim_form")
        self.assertEqual(p.extracted.customer_id, "C-1001")
        self.assertEqual(p.extracted.received_date, "2024-03-01")
        self.assertEqual(p.extracted.key_dates, {"incidentDate": "2024-02-27"})
        self.assertAlmostEqual(p.confidence, 0.93)
        self.assertEqual(p.requested_action, "create_case")
        self.assertEqual(p.agent_model, "extractor")
        self.assertEqual(p.agent_version, "3.2")

    def test_schema_version_defaults(self):
        raw = _raw()
        del raw["schemaVersion"]
        self.assertEqual(validate(raw).schema_version, "1.0")

    def test_agent_optional(self):
        raw = _raw()
        del raw["agent"]
        p = validate(raw)
        self.assertEqual(p.agent_model, "")
        self.assertEqual(p.agent_version, "")

    def test_key_dates_optional(self):
        raw = _raw()
        del raw["document"]["extracted"]["keyDates"]
        self.assertEqual(validate(raw).extracted.key_dates, {})

    def test_confidence_bounds_inclusive(self):
        for value in (0, 0.0, 1, 1.0):
            raw = _raw()
            raw["document"]["extracted"]["confidence"] = value
            self.assertEqual(validate(raw).confidence, float(value))

    def test_unknown_extracted_keys_kept(self):
        raw = _raw()
        raw["document"]["extracted"]["claimAmount"] = 1250
        p = validate(raw)
        self.assertEqual(p.extracted.extra, {"claimAmount": 1250})

    def test_payload_is_immutable(self):
        p = validate(_raw())
        with self.assertRaises(Exception):
            p.correlation_id = "other"


class TestViolations(unittest.TestCase):

    def test_non_object_body(self):
        for body in (None, [], "text", 3):
            with self.assertRaises(ValidationError) as ctx:
                validate(body)
            self.assertEqual(_fields(ctx), ["$"])

    def test_empty_object_lists_all_required(self):
        with self.assertRaises(ValidationError) as ctx:
            validate({})
        fields = _fields(ctx)
        self.assertIn("correlationId", fields)
        self.assertIn("document", fields)
        self.assertIn("requestedAction", fields)

    def test_all_violations_in_one_pass(self):
        raw = _raw(correlationId="", requestedAction="delete_everything")
        raw["document"]["extracted"]["confidence"] = 1.5
        raw["document"]["extracted"]["receivedDate"] = "03/01/2024"
        with self.assertRaises(ValidationError) as ctx:
            validate(raw)
        fields = _fields(ctx)
        self.assertEqual(len(fields), 4)
        self.assertIn("correlationId", fields)
        self.assertIn("requestedAction", fields)
        self.assertIn("document.extracted.confidence", fields)
        self.assertIn("document.extracted.receivedDate", fields)

    def test_unsupported_schema_version(self):
        with self.assertRaises(ValidationError) as ctx:
            validate(_raw(schemaVersion="9.9"))
        self.assertEqual(_fields(ctx), ["schemaVersion"])

    def test_confidence_must_be_number(self):
        for value in ("0.9", True, None):
            raw = _raw()
            raw["document"]["extracted"]["confidence"] = value
            with self.assertRaises(ValidationError) as ctx:
                validate(raw)
            self.assertEqual(_fields(ctx), ["document.extracted.confidence"])

    def test_confidence_out_of_range(self):
        for value in (-0.01, 1.01):
            raw = _raw()
            raw["document"]["extracted"]["confidence"] = value
            with self.assertRaises(ValidationError):
                validate(raw)

    def test_bad_key_date_named_in_path(self):
        raw = _raw()
        raw["document"]["extracted"]["keyDates"] = {"incidentDate": "yesterday"}
        with self.assertRaises(ValidationError) as ctx:
            validate(raw)
        self.assertEqual(_fields(ctx), ["document.extracted.keyDates.incidentDate"])

    def test_document_must_be_object(self):
        with self.assertRaises(ValidationError) as ctx:
            validate(_raw(document="s3://x"))
        self.assertEqual(_fields(ctx), ["document"])

    def test_overlong_correlation_id(self):
        with self.assertRaises(ValidationError) as ctx:
            validate(_raw(correlationId="x" * 129))
        self.assertEqual(_fields(ctx), ["correlationId"])

    def test_agent_fields_must_be_strings(self):
        with self.assertRaises(ValidationError) as ctx:
            validate(_raw(agent={"model": 7, "version": "1"}))
        self.assertEqual(_fields(ctx), ["agent.model"])

    def test_error_dict_shape(self):
        with self.assertRaises(ValidationError) as ctx:
            validate(_raw(requestedAction="nope"))
        d = ctx.exception.to_dict()
        self.assertEqual(d["error"], "validation_error")
        self.assertEqual(d["violations"][0]["field"], "requestedAction")
        self.assertIn("message", d["violations"][0])

    def test_input_not_mutated(self):
        raw = _raw()
        before = copy.deepcopy(raw)
        validate(raw)
        self.assertEqual(raw, before)


class TestCanonicalForms(unittest.TestCase):

    def test_to_dict_round_trip(self):
        raw = _raw()
        raw["document"]["extracted"]["claimAmount"] = 1250
        p = validate(raw)
        self.assertEqual(Payload.from_dict(p.to_dict()), p)

    def test_wire_shape_revalidates(self):
        p = validate(_raw())
        self.assertEqual(validate(p.to_wire()), p)

    def test_canonical_keys_are_snake_case(self):
        d = validate(_raw()).to_dict()
        self.assertEqual(d["customer_id"], "C-1001")
        self.assertEqual(d["requested_action"], "create_case")
        self.assertEqual(d["document_type"], "claim_form")


if __name__ == "__main__":
    unittest.main()
