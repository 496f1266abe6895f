from __future__ import annotations

import argparse
import json
import sys

from debtcall.errors import SerializationError
from debtcall.learners import ActionSelector, ActionValueStore, load_snapshot


def main() -> None:
    ap = argparse.ArgumentParser(description="Validate a policy snapshot and print its greedy policy.")
    ap.add_argument("path", type=str, help="Snapshot JSON file.")
    ap.add_argument("--json", action="store_true", help="Print the policy as JSON.")
    args = ap.parse_args()

    try:
        table = load_snapshot(args.path)
    except SerializationError as exc:
        print(f"invalid snapshot: {exc}", file=sys.stderr)
        raise SystemExit(2)

    policy = ActionSelector(ActionValueStore(table)).greedy_policy()
    if args.json:
        print(json.dumps(policy, indent=2, sort_keys=True))
        return

    print(f"kind={table.kind} version={table.version} episodes_trained={table.episodes_trained}")
    for key in sorted(policy):
        print(f"  {key}: {policy[key]}")


if __name__ == "__main__":
    main()
