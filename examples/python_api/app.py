from __future__ import annotations

import argparse
from pathlib import Path

from infra_reconciler.config import apply, load, plan


def _progress(change: object, event: str) -> None:
    key = getattr(change, "key", "unknown")
    print(f"[apply:{event}] {key}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply an infra-reconciler config")
    parser.add_argument(
        "--config", default="examples/vpc/reconciler.yaml", help="Path to config file"
    )
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("--destroy", action="store_true", help="Plan destruction instead")
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip refresh during plan",
    )
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, destroy=args.destroy, refresh=not args.no_refresh)
    print("Plan summary:", plan_obj.summary())
    for change in plan_obj.changes:
        print(f"- {change.action.value:7} {change.key}")

    if args.apply:
        result = apply(plan_obj, config, progress=_progress)
        print("Apply summary:", result.summary())


if __name__ == "__main__":
    main()
