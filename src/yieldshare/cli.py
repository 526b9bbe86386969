"""YieldShare CLI — command-line interface for the vault simulator.

Usage:
    python -m yieldshare.cli params
    python -m yieldshare.cli simulate --scenario scenario.json --log data/events.jsonl
    python -m yieldshare.cli verify-log --log data/events.jsonl
    python -m yieldshare.cli anchor-log --log data/events.jsonl

A scenario is a JSON object with a ``steps`` list. Each step names an
``op`` and its arguments; amounts are integer base units or decimal
strings in whole units ("1.5"). ``unstake`` steps may carry ``"as":
"name"`` so a later ``claim_withdrawal`` can refer to the request by
``"request": "name"``. A step with ``"expect_error": true`` must fail.

    {"steps": [
        {"op": "register_community", "community_id": "c1",
         "min_donation_percent": 10000, "recipient": "c1_wallet"},
        {"op": "stake", "user": "alice", "community_id": "c1",
         "donation_percent": 10000, "amount": "1"},
        {"op": "rebase", "amount": "0.1"},
        {"op": "pending_yield", "user": "alice", "community_id": "c1"}
    ]}
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Union

from yieldshare.crypto.merkle import commit_event_log
from yieldshare.models.community import UNIT
from yieldshare.persistence.event_log import EventLog
from yieldshare.policy.resolver import PolicyResolver
from yieldshare.router.memory import InMemoryVaultBackend
from yieldshare.service import ServiceResult, YieldShareService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_ENV = Path(__file__).resolve().parents[2] / ".env"


def parse_amount(value: Union[int, str]) -> int:
    """Integers are base units; strings are decimal whole units."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        return value
    try:
        scaled = Decimal(str(value)) * UNIT
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}") from None
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value!r} is finer than one base unit")
    return int(scaled)


class ScenarioRunner:
    """Drives a YieldShareService through scripted steps.

    Keeps every in-memory backend it has created so yield, losses and
    withdrawal finalization can be simulated on retired generations too.
    """

    def __init__(self, service: YieldShareService, backend: InMemoryVaultBackend) -> None:
        self._service = service
        self._backends: Dict[str, InMemoryVaultBackend] = {backend.backend_id: backend}
        self._requests: Dict[str, str] = {}

    def run(self, steps: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self.step(i, step) for i, step in enumerate(steps, 1)]

    def step(self, index: int, step: dict[str, Any]) -> dict[str, Any]:
        op = step.get("op", "")
        handler = getattr(self, f"_op_{op}", None)
        if handler is None:
            return {"step": index, "op": op, "success": False,
                    "errors": [f"Unknown op: {op}"], "expected": False}
        try:
            result = handler(step)
        except (KeyError, ValueError) as e:
            result = ServiceResult(success=False, errors=[f"Bad step: {e}"])
        expect_error = bool(step.get("expect_error", False))
        return {
            "step": index,
            "op": op,
            "success": result.success,
            "errors": result.errors,
            "data": result.data,
            "expected": result.success != expect_error,
        }

    # -- listing ------------------------------------------------------

    def _op_register_community(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.register_community(
            step.get("caller", self._service.roles.listing_authority),
            step["community_id"],
            int(step["min_donation_percent"]),
            step["recipient"],
        )

    def _op_rotate_recipient(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.rotate_recipient(
            step.get("caller", self._service.roles.listing_authority),
            step["community_id"],
            step["recipient"],
        )

    # -- depositors ---------------------------------------------------

    def _op_stake(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.stake(
            step["user"], step["community_id"],
            int(step["donation_percent"]), parse_amount(step["amount"]),
        )

    def _op_change_donation_rate(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.change_donation_rate(
            step["user"], step["community_id"], int(step["donation_percent"]),
        )

    def _op_unstake(self, step: dict[str, Any]) -> ServiceResult:
        result = self._service.unstake(
            step["user"], step["community_id"], parse_amount(step["amount"]),
        )
        if result.success and "as" in step:
            self._requests[step["as"]] = result.data["request_id"]
        return result

    def _op_claim_withdrawal(self, step: dict[str, Any]) -> ServiceResult:
        request = step["request"]
        return self._service.claim_withdrawal(step["user"], self._requests.get(request, request))

    def _op_claim_yield(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.claim_yield(step["user"], step["community_id"])

    def _op_withdraw_community_donations(self, step: dict[str, Any]) -> ServiceResult:
        community = self._service.engine.get_community(step["community_id"])
        return self._service.withdraw_community_donations(
            step.get("caller", community.recipient), step["community_id"],
        )

    def _op_pending_yield(self, step: dict[str, Any]) -> ServiceResult:
        return ServiceResult(success=True, data={
            "user": step["user"],
            "community_id": step["community_id"],
            "pending_yield": self._service.pending_yield(step["user"], step["community_id"]),
        })

    # -- yield source -------------------------------------------------

    def _op_rebase(self, step: dict[str, Any]) -> ServiceResult:
        backend = self._backend(step)
        backend.rebase(parse_amount(step["amount"]))
        return ServiceResult(success=True, data={"backend_id": backend.backend_id})

    def _op_report_loss(self, step: dict[str, Any]) -> ServiceResult:
        backend = self._backend(step)
        backend.report_loss(parse_amount(step["amount"]))
        return ServiceResult(success=True, data={"backend_id": backend.backend_id})

    def _op_finalize_withdrawals(self, step: dict[str, Any]) -> ServiceResult:
        finalized = {
            backend_id: backend.finalize_all()
            for backend_id, backend in self._backends.items()
        }
        return ServiceResult(success=True, data={"finalized": finalized})

    # -- router administration ---------------------------------------

    def _op_initiate_migration(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.initiate_migration(step.get("caller", self._service.roles.admin))

    def _op_finalize_migration(self, step: dict[str, Any]) -> ServiceResult:
        backend_id = step["backend_id"]
        backend = self._backends.setdefault(backend_id, InMemoryVaultBackend(backend_id))
        return self._service.finalize_migration(
            step.get("caller", self._service.roles.admin), backend,
        )

    def _op_set_admin_fee(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.set_admin_fee_percent(
            step.get("caller", self._service.roles.admin), int(step["percent"]),
        )

    def _op_withdraw_admin_fees(self, step: dict[str, Any]) -> ServiceResult:
        return self._service.withdraw_admin_fees(
            step.get("caller", self._service.roles.admin), step["recipient"],
        )

    def _backend(self, step: dict[str, Any]) -> InMemoryVaultBackend:
        if "backend_id" in step:
            return self._backends[step["backend_id"]]
        active = self._service.coordinator.active_backend
        if active is None or active.backend_id not in self._backends:
            raise ValueError("No active in-memory backend")
        return self._backends[active.backend_id]


def cmd_params(args: argparse.Namespace) -> int:
    resolver = PolicyResolver.from_config_dir(args.config)
    print(json.dumps(resolver.as_dict(), indent=2))
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    scenario_path = Path(args.scenario)
    if not scenario_path.exists():
        print(f"Scenario not found: {scenario_path}", file=sys.stderr)
        return 1
    scenario = json.loads(scenario_path.read_text(encoding="utf-8"))

    resolver = PolicyResolver.from_config_dir(args.config)
    event_log = None
    if args.log:
        log_path = Path(args.log)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        event_log = EventLog(storage_path=log_path)
    backend = InMemoryVaultBackend(scenario.get("backend_id", "backend-0"))
    service = YieldShareService(resolver, backend=backend, event_log=event_log)

    results = ScenarioRunner(service, backend).run(scenario.get("steps", []))
    print(json.dumps({"steps": results, "status": service.status()}, indent=2))

    unexpected = [r for r in results if not r["expected"]]
    if unexpected:
        for r in unexpected:
            print(f"Step {r['step']} ({r['op']}) did not behave as expected: "
                  f"{'; '.join(r['errors']) or 'succeeded'}", file=sys.stderr)
        return 1
    return 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    log_path = Path(args.log)
    if not log_path.exists():
        print(f"Event log not found: {log_path}", file=sys.stderr)
        return 1
    try:
        log = EventLog(storage_path=log_path)
    except ValueError as e:
        print(f"Integrity check failed: {e}", file=sys.stderr)
        return 1
    commitment = commit_event_log(log)
    print(json.dumps({
        "events": commitment.event_count,
        "last_event_id": commitment.last_event_id,
        "root": commitment.root,
    }, indent=2))
    return 0


def cmd_anchor_log(args: argparse.Namespace) -> int:
    from dotenv import load_dotenv
    from yieldshare.crypto.anchor import anchor_commitment

    load_dotenv(args.env)
    rpc_url = os.getenv("SEPOLIA_RPC_URL")
    private_key = os.getenv("PRIVATE_KEY") or os.getenv("SEPOLIA_PRIVATE_KEY")
    if not rpc_url or not private_key:
        print("Missing SEPOLIA_RPC_URL and/or PRIVATE_KEY in environment or .env",
              file=sys.stderr)
        return 1

    log_path = Path(args.log)
    if not log_path.exists():
        print(f"Event log not found: {log_path}", file=sys.stderr)
        return 1
    try:
        commitment = commit_event_log(EventLog(storage_path=log_path))
        record = anchor_commitment(commitment, rpc_url, private_key)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps({
        "root": record.root,
        "events": record.event_count,
        "tx_hash": record.tx_hash,
        "block_number": record.block_number,
        "explorer_url": record.explorer_url,
    }, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="yieldshare",
        description="YieldShare — donation-splitting yield vault simulator",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    # params
    sub.add_parser("params", help="Show resolved vault parameters")

    # simulate
    p_sim = sub.add_parser("simulate", help="Run a scenario against in-memory backends")
    p_sim.add_argument("--scenario", required=True, help="Scenario JSON file")
    p_sim.add_argument("--log", help="Append events to this JSONL file")

    # verify-log
    p_verify = sub.add_parser("verify-log", help="Check event log integrity and print its root")
    p_verify.add_argument("--log", required=True, help="Event log JSONL file")

    # anchor-log
    p_anchor = sub.add_parser("anchor-log", help="Anchor the event log root on Sepolia")
    p_anchor.add_argument("--log", required=True, help="Event log JSONL file")
    p_anchor.add_argument("--env", type=Path, default=DEFAULT_ENV, help="dotenv file with credentials")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "params": cmd_params,
        "simulate": cmd_simulate,
        "verify-log": cmd_verify_log,
        "anchor-log": cmd_anchor_log,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
