"""Entry point for `python -m topology_reconciler` and the `reconcile` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import signal
from dataclasses import replace
from pathlib import Path
from types import FrameType

from dotenv import load_dotenv

from topology_reconciler import ReconcileOrchestrator
from topology_reconciler.errors import OutputError, ReconcilerError, StateLockError
from topology_reconciler.models import TopologySpec
from topology_reconciler.providers import build_provider
from topology_reconciler.settings import RuntimeSettings
from topology_reconciler.state_store import FileStateStore
from topology_reconciler.topology import load_topology, two_tier_topology

MODES = ["plan", "apply", "destroy", "refresh", "outputs"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile the two-tier AWS topology against recorded state")
    parser.add_argument("mode", choices=MODES, help="Operation to run")
    parser.add_argument(
        "--topology-file",
        type=Path,
        default=None,
        help="YAML topology document (default: the built-in two-tier topology)",
    )
    parser.add_argument("--provider", choices=["memory", "aws"], default=None, help="Override RECONCILER_PROVIDER")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Override RECONCILER_STATE_STORE_ROOT",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Optional .env file loaded before settings (default: ./.env when present)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace, *, repo_root: Path) -> RuntimeSettings:
    env_path = args.env_file if args.env_file is not None else repo_root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    elif args.env_file is not None:
        raise FileNotFoundError(f"Env file does not exist: {env_path}")

    settings = RuntimeSettings.from_env()
    overrides: dict[str, str] = {}
    if args.provider is not None:
        overrides["provider"] = args.provider
    if args.state_store_root is not None:
        overrides["state_store_root"] = str(args.state_store_root)
    if args.topology_file is not None:
        overrides["topology_path"] = str(args.topology_file)
    return replace(settings, **overrides).normalized() if overrides else settings


def load_declared_topology(settings: RuntimeSettings, *, repo_root: Path) -> TopologySpec:
    topology_file = settings.topology_file(repo_root)
    if topology_file is not None:
        return load_topology(topology_file)
    return two_tier_topology(settings)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = Path.cwd()

    try:
        settings = load_settings(args, repo_root=repo_root)
        topology = load_declared_topology(settings, repo_root=repo_root)
        store = FileStateStore(settings.state_store_path(repo_root), project_id=settings.project_id)
        orchestrator = ReconcileOrchestrator(
            topology=topology,
            provider=build_provider(settings),
            store=store,
            settings=settings,
        )
    except (OSError, ValueError, ReconcilerError) as exc:
        logging.error("Unable to prepare reconciliation: %s", exc)
        return 1

    if args.mode == "plan":
        report = orchestrator.plan()
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    if args.mode == "outputs":
        try:
            print(json.dumps(orchestrator.outputs(), indent=2, default=str))
        except OutputError as exc:
            logging.error("Outputs are not available: %s", exc)
            return 1
        return 0

    if args.mode == "refresh":
        try:
            refresh = orchestrator.refresh()
        except ReconcilerError as exc:
            logging.error("Refresh failed: %s", exc)
            return 1
        print(json.dumps(refresh.to_dict(), indent=2))
        return 1 if refresh.failed else 0

    def _on_interrupt(_signum: int, _frame: FrameType | None) -> None:
        logging.warning("Interrupt received; finishing in-flight actions")
        orchestrator.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        result = orchestrator.apply() if args.mode == "apply" else orchestrator.destroy()
    except StateLockError as exc:
        logging.error("%s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Reconciliation failed: %s", exc)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    orchestrator.write_report(result)
    print(json.dumps(result.to_dict(), indent=2))
    if result.ok and args.mode == "apply":
        try:
            print(json.dumps({"outputs": orchestrator.outputs()}, indent=2, default=str))
        except OutputError as exc:
            logging.warning("Outputs are not available: %s", exc)
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
