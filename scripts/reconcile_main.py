"""Run the two-tier topology end-to-end against the in-memory provider.

Applies the topology, re-plans to show convergence, prints the outputs and
then destroys everything, all against a throwaway state store.
"""

from __future__ import annotations

import argparse
import json
import logging
import tempfile
from pathlib import Path

from topology_reconciler import FileStateStore, ReconcileOrchestrator, RuntimeSettings, two_tier_topology
from topology_reconciler.providers import InMemoryProvider


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply, verify and destroy the two-tier topology in memory")
    parser.add_argument("--keep-state", type=Path, default=None, help="Write state here instead of a temp dir")
    parser.add_argument("--skip-destroy", action="store_true", help="Leave the resources in place")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args()


def run(state_root: Path, *, skip_destroy: bool) -> int:
    settings = RuntimeSettings.from_env()
    provider = InMemoryProvider(region=settings.region)
    orchestrator = ReconcileOrchestrator(
        topology=two_tier_topology(settings),
        provider=provider,
        store=FileStateStore(state_root, project_id=settings.project_id),
        settings=settings,
    )

    result = orchestrator.apply()
    print(json.dumps(result.to_dict(), indent=2))
    if not result.ok:
        return 1

    follow_up = orchestrator.plan()
    print(f"converged={not follow_up.actions}")
    print(json.dumps(orchestrator.outputs(), indent=2))

    if not skip_destroy:
        destroyed = orchestrator.destroy()
        print(f"destroyed={destroyed.ok} remaining_resources={len(provider.resources())}")
        return 0 if destroyed.ok else 1
    return 0


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.keep_state is not None:
        return run(args.keep_state, skip_destroy=args.skip_destroy)
    with tempfile.TemporaryDirectory(prefix="reconcile-") as tmp:
        return run(Path(tmp), skip_destroy=args.skip_destroy)


if __name__ == "__main__":
    raise SystemExit(main())
