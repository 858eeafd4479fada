"""
Compliance Flow — Operator CLI

Drive the orchestrator from a terminal against the same store the API
server uses. Every command runs inline (no background workers).

Usage:
    # Submit a payload
    python -m coordinator.cli submit --file request.json

    # Inspect an instance and its audit trail
    python -m coordinator.cli status req-2024-000123
    python -m coordinator.cli trail req-2024-000123 --verbose

    # Human decisions
    python -m coordinator.cli pending
    python -m coordinator.cli approve apr_1a2b3c4d5e6f --approver alice
    python -m coordinator.cli reject apr_1a2b3c4d5e6f --approver alice

    # Operations
    python -m coordinator.cli cancel req-2024-000123 --reason "duplicate upload"
    python -m coordinator.cli recover
    python -m coordinator.cli sweep
    python -m coordinator.cli verify [correlation_id]
    python -m coordinator.cli stats
    python -m coordinator.cli actions
"""

import argparse
import datetime
import json
import sys
from pathlib import Path

from coordinator.runtime import Orchestrator
from coordinator.types import CallbackStatus
from engine.config import deep_merge, load_config
from engine.errors import CancellationRefused, InstanceNotFound
from engine.logging import configure_logging


def _ts(epoch) -> str:
    if epoch is None:
        return "—"
    return datetime.datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_submit(args, orch: Orchestrator) -> int:
    """Submit one payload."""
    if args.file:
        p = Path(args.file)
        if not p.exists():
            print(f"Error: payload file not found: {args.file}", file=sys.stderr)
            return 1
        with open(p) as f:
            raw = json.load(f)
    elif args.input:
        raw = json.loads(args.input)
    else:
        print("Error: provide --file or --input", file=sys.stderr)
        return 1

    resp = orch.submit(raw)
    print(f"HTTP {resp.status_code}", file=sys.stderr)
    _print_json(resp.body)
    return 0 if resp.status_code < 400 else 2


def cmd_status(args, orch: Orchestrator) -> int:
    """Show the current state of an instance."""
    try:
        inst = orch.get_instance(args.correlation_id)
    except InstanceNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    decision = inst.decision or {}
    print(f"\n{'═' * 70}")
    print(f"  {inst.correlation_id}")
    print(f"{'─' * 70}")
    print(f"  state:       {inst.state.value}")
    print(f"  version:     {inst.version}")
    print(f"  requested:   {inst.payload.get('requested_action', '')}")
    if decision:
        print(f"  branch:      {decision.get('branch')}")
        print(f"  action:      {decision.get('action')}")
        print(f"  rule:        {decision.get('matched_rule') or '—'}")
        print(f"  reason:      {decision.get('reason')}")
    if inst.approval_request_id:
        print(f"  approval:    {inst.approval_request_id}")
    if inst.failure_kind:
        print(f"  failure:     {inst.failure_kind}")
    if inst.escalation_reason:
        print(f"  escalation:  {inst.escalation_reason}")
    if inst.error:
        print(f"  error:       {inst.error}")
    if inst.action_result:
        print(f"  confirmation: {inst.action_result.get('confirmation_id')}")
    print(f"  restarts:    {inst.retry_count}")
    print(f"  created:     {_ts(inst.created_at)}")
    print(f"  updated:     {_ts(inst.updated_at)}")
    print(f"{'═' * 70}\n")
    return 0


def cmd_trail(args, orch: Orchestrator) -> int:
    """Show the audit trail of an instance."""
    try:
        entries = orch.get_audit_trail(args.correlation_id)
    except InstanceNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\nAudit Trail {args.correlation_id} ({len(entries)} entries)")
    print(f"{'─' * 70}")
    for e in entries:
        print(f"  #{e.sequence:<3} [{_ts(e.timestamp)}] "
              f"{(e.from_state or '∅'):>17s} → {e.to_state:<17s} "
              f"{e.transition:22s} {e.actor_type}:{e.actor}")
        if args.verbose:
            for k, v in e.snapshot.items():
                print(f"           {k}: {str(v)[:80]}")
    return 0


def cmd_pending(args, orch: Orchestrator) -> int:
    """List open approval requests."""
    approvals = orch.list_pending_approvals()
    if not approvals:
        print("No approval requests open.")
        return 0

    print(f"\nOpen Approvals ({len(approvals)})")
    print(f"{'─' * 70}")
    for a in approvals:
        print(f"  {a.approval_request_id}")
        print(f"    correlation: {a.instance_id}")
        print(f"    action:      {a.context.get('action', '—')}")
        print(f"    reason:      {a.context.get('reason', '—')}")
        print(f"    deadline:    {_ts(a.deadline)}")
        print()
    print("Approve:  python -m coordinator.cli approve <approval_request_id> --approver NAME")
    print("Reject:   python -m coordinator.cli reject <approval_request_id> --approver NAME")
    return 0


def _decide(args, orch: Orchestrator, decision: str) -> int:
    result = orch.handle_approval_callback(
        args.approval_request_id, decision, args.approver,
        timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    )
    _print_json(result.to_dict())
    if result.status in (CallbackStatus.ACCEPTED, CallbackStatus.DUPLICATE):
        return 0
    return 1


def cmd_approve(args, orch: Orchestrator) -> int:
    """Approve an open approval request."""
    return _decide(args, orch, "approve")


def cmd_reject(args, orch: Orchestrator) -> int:
    """Reject an open approval request."""
    return _decide(args, orch, "reject")


def cmd_cancel(args, orch: Orchestrator) -> int:
    try:
        inst = orch.cancel(args.correlation_id, reason=args.reason, actor=args.actor)
    except (InstanceNotFound, CancellationRefused) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Cancelled: {inst.correlation_id}")
    return 0


def cmd_recover(args, orch: Orchestrator) -> int:
    _print_json(orch.recover())
    return 0


def cmd_sweep(args, orch: Orchestrator) -> int:
    _print_json(orch.sweep())
    return 0


def cmd_verify(args, orch: Orchestrator) -> int:
    ok, message = orch.verify_audit(args.correlation_id)
    print(("OK: " if ok else "FAILED: ") + message)
    return 0 if ok else 3


def cmd_stats(args, orch: Orchestrator) -> int:
    _print_json(orch.stats())
    return 0


def cmd_actions(args, orch: Orchestrator) -> int:
    print("Registered actions:")
    print(orch.action_registry.describe())
    return 0


COMMANDS = {
    "submit": cmd_submit,
    "status": cmd_status,
    "trail": cmd_trail,
    "pending": cmd_pending,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "cancel": cmd_cancel,
    "recover": cmd_recover,
    "sweep": cmd_sweep,
    "verify": cmd_verify,
    "stats": cmd_stats,
    "actions": cmd_actions,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m coordinator.cli",
        description="Compliance Flow — Operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default="compliance_flow.yaml",
        help="Base config YAML (default: compliance_flow.yaml)",
    )
    parser.add_argument("--db", default=None, help="Override store.db_path")
    parser.add_argument("--log-level", default=None, help="Override logging.level")

    subs = parser.add_subparsers(dest="command", help="Command")

    submit_p = subs.add_parser("submit", help="Submit an extraction payload")
    submit_p.add_argument("--file", "-f", help="Payload JSON file")
    submit_p.add_argument("--input", "-i", help="Payload JSON string")

    status_p = subs.add_parser("status", help="Show instance state and outcome")
    status_p.add_argument("correlation_id")

    trail_p = subs.add_parser("trail", help="Show the audit trail of an instance")
    trail_p.add_argument("correlation_id")
    trail_p.add_argument("--verbose", "-v", action="store_true")

    subs.add_parser("pending", help="List open approval requests")

    for name, help_text in (("approve", "Approve a request"), ("reject", "Reject a request")):
        p = subs.add_parser(name, help=help_text)
        p.add_argument("approval_request_id")
        p.add_argument("--approver", "-a", required=True, help="Approver id")

    cancel_p = subs.add_parser("cancel", help="Cancel a non-terminal instance")
    cancel_p.add_argument("correlation_id")
    cancel_p.add_argument("--reason", "-r", default="")
    cancel_p.add_argument("--actor", default="operator")

    subs.add_parser("recover", help="Resume unfinished instances after a restart")
    subs.add_parser("sweep", help="Expire overdue approvals and archive old instances")

    verify_p = subs.add_parser("verify", help="Verify audit hash chains")
    verify_p.add_argument("correlation_id", nargs="?", default=None)

    subs.add_parser("stats", help="Show orchestrator statistics")
    subs.add_parser("actions", help="List registered actions and their side effects")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args.config)
    overrides = {}
    if args.db:
        overrides["store"] = {"db_path": args.db}
    # CLI runs are always synchronous.
    overrides["worker"] = {"mode": "inline"}
    config = deep_merge(config, overrides)

    level = args.log_level or str(config.get("logging", {}).get("level", "WARNING"))
    configure_logging(level=level)

    orch = Orchestrator(config=config)
    try:
        return COMMANDS[args.command](args, orch)
    finally:
        orch.close()


if __name__ == "__main__":
    sys.exit(main())
