#!/usr/bin/env python3
"""
Replay recorded participant actions through the market engine.

Each fixture is a JSON file:

  {
    "name": "...",
    "initial_market": {...camelCase MarketState...},   (optional)
    "initial_policy": {...camelCase PolicyState...},   (optional)
    "actions": [
      {"participantId": "u1", "role": "regulator",
       "actionType": "set_fed_rate", "parameters": {"rate": 5.0}},
      ...
    ],
    "expected": {"timeStep": 0.5, "eventTypes": ["fed_rate_change"]}   (optional)
  }

Prints the final state and a SHA-256 digest per fixture.  Two runs over the
same fixtures must print identical digests.
"""
from __future__ import annotations

import argparse
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import market_engine as me


FIXTURE_DIR = ROOT / "tests" / "fixtures" / "replay"


@dataclass(frozen=True)
class Scenario:
    name: str
    market: me.MarketState
    policy: me.PolicyState
    actions: list[me.Action]
    expected: dict


@dataclass(frozen=True)
class ReplayResult:
    name: str
    market: dict
    policy: dict
    events: list[dict]
    digest: str


def load_scenario(path: Path) -> Scenario:
    raw = json.loads(path.read_text(encoding="utf-8"))
    actions = [
        me.Action(
            participant_id=str(a.get("participantId", "")),
            role=str(a.get("role", "")),
            action_type=str(a.get("actionType", "")),
            parameters=dict(a.get("parameters") or {}),
        )
        for a in raw.get("actions", [])
    ]
    return Scenario(
        name=str(raw.get("name", path.stem)),
        market=me.market_from_dict(raw.get("initial_market")),
        policy=me.policy_from_dict(raw.get("initial_policy")),
        actions=actions,
        expected=dict(raw.get("expected") or {}),
    )


def load_scenarios(fixture_dir: Path = FIXTURE_DIR) -> list[Scenario]:
    return [load_scenario(p) for p in sorted(Path(fixture_dir).glob("*.json"))]


def state_digest(market: dict, policy: dict, events: list[dict]) -> str:
    canonical = json.dumps(
        {"marketState": market, "policyState": policy, "events": events},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def replay_scenario(scenario: Scenario) -> ReplayResult:
    for action in scenario.actions:
        me.validate_action(action)
    market, policy, events = me.replay(scenario.actions, scenario.market, scenario.policy)
    market_d = me.market_to_dict(market)
    policy_d = me.policy_to_dict(policy)
    events_d = [me.event_to_dict(e) for e in events]
    return ReplayResult(
        name=scenario.name,
        market=market_d,
        policy=policy_d,
        events=events_d,
        digest=state_digest(market_d, policy_d, events_d),
    )


def check_expected(scenario: Scenario, result: ReplayResult) -> list[str]:
    problems: list[str] = []
    expected = scenario.expected
    if "timeStep" in expected and abs(result.market["timeStep"] - float(expected["timeStep"])) > 1e-9:
        problems.append(f"timeStep {result.market['timeStep']} != {expected['timeStep']}")
    if "eventTypes" in expected:
        got = [e["eventType"] for e in result.events]
        if got != list(expected["eventTypes"]):
            problems.append(f"eventTypes {got} != {expected['eventTypes']}")
    violations = me.check_invariants(me.market_from_dict(result.market))
    problems.extend(violations)
    return problems


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Replay recorded action logs and print final state digests."
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help=f"Fixture files (default: every *.json under {FIXTURE_DIR})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full final state as JSON instead of the summary line",
    )
    args = parser.parse_args(argv)

    if args.paths:
        scenarios = [load_scenario(Path(p)) for p in args.paths]
    else:
        scenarios = load_scenarios()
    if not scenarios:
        raise SystemExit(f"No fixtures found under {FIXTURE_DIR}")

    failures = 0
    for scenario in scenarios:
        result = replay_scenario(scenario)
        problems = check_expected(scenario, result)
        failures += 1 if problems else 0
        if args.json:
            print(json.dumps({
                "name": result.name,
                "marketState": result.market,
                "policyState": result.policy,
                "events": result.events,
                "digest": result.digest,
            }, indent=2, sort_keys=True))
        else:
            print(
                f"{result.name:>28}: {len(scenario.actions):4d} actions  "
                f"t={result.market['timeStep']:6.2f}  "
                f"risk={result.market['bubbleRisk']:6.2f}  {result.digest[:16]}"
            )
        for problem in problems:
            print(f"  MISMATCH: {problem}")

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
