"""
Compliance Flow - Engine Package

Leaf components with no knowledge of workflow instances or storage
layout: payload validation, enrichment connectors with retry, the
decision table, the approval gate state machine, the action executor,
the audit log, plus logging and configuration.

  - engine.validate: validate, Payload
  - engine.connectors: ConnectorRegistry, fetch_all
  - engine.decision: DecisionTable, load_decision_table
  - engine.approval: open_request, decide, expire, withdraw
  - engine.actions: ActionRegistry, ActionExecutor, create_simulation_registry
  - engine.audit: AuditLog
"""

from engine.validate import validate, Payload
from engine.connectors import ConnectorRegistry, EnrichmentFact, EnrichmentQuery, fetch_all
from engine.decision import Branch, DecisionOutcome, DecisionTable, load_decision_table
from engine.actions import ActionRegistry, ActionExecutor, ActionResult, create_simulation_registry
from engine.audit import AuditLog, AuditEntry
