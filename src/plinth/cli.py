"""plinth CLI: validate, plan, apply, destroy and inspect outputs."""

import argparse
import json
import sys
import threading
from importlib.metadata import version as get_version, PackageNotFoundError
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

EXIT_CANCELLED = 130


def _parse_vars(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """KEY=VALUE pairs; values that parse as JSON keep their type."""
    values: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"--var expects KEY=VALUE, got '{pair}'")
        key, raw = pair.split("=", 1)
        try:
            values[key] = json.loads(raw)
        except json.JSONDecodeError:
            values[key] = raw
    return values


def _run_cancellable(fn: Callable[[], Any], cancel) -> Any:
    """Run ``fn`` on a worker thread; Ctrl-C trips the cancel token instead of killing the pass."""
    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="plinth-pass", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            if not cancel.cancelled:
                print("Cancelling: waiting for in-flight remote calls to return...", file=sys.stderr)
            cancel.cancel()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def main():
    """Main CLI entry point for plinth commands."""
    try:
        plinth_version = get_version("plinth")
    except PackageNotFoundError:
        plinth_version = "dev"

    parser = argparse.ArgumentParser(
        prog="plinth",
        description="plinth: declarative provisioning with readiness-aware reconciliation"
    )
    parser.add_argument("--version", action="version", version=f"plinth {plinth_version}")
    # Common arguments
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all non-error output."
    )
    parent_parser.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Emit logs as JSON lines on stderr."
    )
    # Arguments shared by commands that touch state
    state_parser = argparse.ArgumentParser(add_help=False)
    state_parser.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Path to the state document (default: PLINTH_STATE_PATH or plinth.state.json)"
    )
    state_parser.add_argument(
        "--platform-state",
        type=Path,
        default=None,
        help="Snapshot file of the local simulated platform"
    )
    # Arguments shared by commands that read a descriptor
    descriptor_parser = argparse.ArgumentParser(add_help=False)
    descriptor_parser.add_argument("descriptor", type=Path, help="Path to the resource descriptor (JSON)")
    descriptor_parser.add_argument(
        "--var",
        action="append",
        metavar="KEY=VALUE",
        help="Set a descriptor variable (repeatable)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "validate",
        help="Validate a descriptor without touching the platform",
        parents=[parent_parser, descriptor_parser]
    )

    plan_parser = subparsers.add_parser(
        "plan",
        help="Show the actions an apply would take",
        parents=[parent_parser, state_parser, descriptor_parser]
    )
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    apply_parser = subparsers.add_parser(
        "apply",
        help="Reconcile the platform with the descriptor",
        parents=[parent_parser, state_parser, descriptor_parser]
    )
    apply_parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Retry nodes recorded as failed by a previous pass"
    )
    apply_parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Parallel workers for independent subtrees"
    )
    apply_parser.add_argument(
        "--build-strategy",
        choices=["remote", "local"],
        default=None,
        help="Run image builds on the platform pipeline (remote) or with the local registry CLI"
    )
    apply_parser.add_argument("--json", action="store_true", help="Print the apply report as JSON")

    destroy_parser = subparsers.add_parser(
        "destroy",
        help="Delete every recorded resource, dependents first",
        parents=[parent_parser, state_parser]
    )
    destroy_parser.add_argument(
        "descriptor",
        type=Path,
        nargs="?",
        default=None,
        help="Descriptor used for deletion order (default: recorded resources by id)"
    )
    destroy_parser.add_argument("--var", action="append", metavar="KEY=VALUE", help="Set a descriptor variable")

    output_parser = subparsers.add_parser(
        "output",
        help="Print outputs recorded by the last apply",
        parents=[parent_parser, state_parser]
    )
    output_parser.add_argument("name", nargs="?", default=None, help="Single output to print (raw value)")
    output_parser.add_argument(
        "--show-sensitive",
        action="store_true",
        help="Print sensitive outputs in clear text"
    )

    template_parser = subparsers.add_parser(
        "template",
        help="Print a bundled descriptor template",
        parents=[parent_parser]
    )
    template_parser.add_argument("template_name", choices=["wiki"], help="Template name")
    template_parser.add_argument("--out", type=Path, default=None, help="Write to a file instead of stdout")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from ._internal.canonical_json import canonical_dumps
    from ._internal.logging import configure_logging
    from .errors import PlinthError
    from .settings import get_settings

    settings = get_settings()
    overrides: Dict[str, Any] = {}
    if getattr(args, "max_workers", None) is not None:
        overrides["max_workers"] = args.max_workers
    if getattr(args, "build_strategy", None) is not None:
        overrides["build_strategy"] = args.build_strategy
    if getattr(args, "state", None) is not None:
        overrides["state_path"] = args.state
    if getattr(args, "platform_state", None) is not None:
        overrides["platform_path"] = args.platform_state
    if args.log_json is not None:
        overrides["log_json"] = args.log_json
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level, json_output=settings.log_json, quiet=args.quiet)

    def _platform():
        from .platform.memory import LocalPlatform
        return LocalPlatform(settings.platform_path)

    def _print_failures(failed) -> None:
        for failure in failed:
            line = f"  FAILED {failure.node_id}: {failure.kind}: {failure.message}"
            if failure.log_url:
                line += f" (log: {failure.log_url})"
            print(line, file=sys.stderr)

    try:
        variables = _parse_vars(getattr(args, "var", None))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "validate":
        from .api import validate

        result = validate(args.descriptor, variables)
        for issue in result.errors:
            print(f"  ERROR {issue.code}: {issue.message}", file=sys.stderr)
        if not args.quiet:
            for issue in result.warnings:
                print(f"  WARNING {issue.code}: {issue.message}")
            status = "OK" if result.ok else "FAILED"
            print(f"[{status}] Validation complete")
            print(f"  Nodes: {len(result.order)}")
            print(f"  Errors: {len(result.errors)}")
            print(f"  Warnings: {len(result.warnings)}")
        if not result.ok:
            sys.exit(1)
    elif args.command == "plan":
        from .api import plan

        try:
            result = plan(args.descriptor, _platform(), variables, settings=settings)
        except PlinthError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if args.json:
            print(canonical_dumps(result.model_dump(mode="json"), indent=2))
        elif not args.quiet:
            for node in result.nodes:
                print(f"  {node.action:<6} {node.node_id}")
                for change in node.changes:
                    print(f"           {change.attribute}: {json.dumps(change.old_value)} -> {json.dumps(change.new_value)}")
            for node_id, reason in sorted(result.unknown.items()):
                print(f"  ?      {node_id} ({reason})")
            print("[OK] Plan complete")
            counts = ", ".join(f"{k}={v}" for k, v in sorted(result.summary.items()))
            print(f"  Status: {'CHANGES' if result.has_changes else 'NO CHANGES'} ({counts})")
    elif args.command == "apply":
        from .api import apply
        from .gates import CancelToken

        cancel = CancelToken()
        try:
            report = _run_cancellable(
                lambda: apply(
                    args.descriptor,
                    _platform(),
                    variables,
                    settings=settings,
                    cancel=cancel,
                    retry_failed=args.retry_failed,
                ),
                cancel,
            )
        except PlinthError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if args.json:
            print(canonical_dumps(report.model_dump(mode="json"), indent=2))
        _print_failures(report.failed)
        if not args.quiet and not args.json:
            if report.cancelled:
                status = "CANCELLED"
            else:
                status = "OK" if report.ok else "FAILED"
            print(f"[{status}] Apply complete")
            print(f"  Ready: {len(report.ready)}")
            print(f"  Failed: {len(report.failed)}")
            print(f"  Pending: {len(report.pending)}")
            print(f"  Changes: {len(report.mutations)}")
            for name, value in sorted(report.outputs.items()):
                print(f"  {name} = {json.dumps(value)}")
        if report.cancelled:
            sys.exit(EXIT_CANCELLED)
        if not report.ok:
            sys.exit(1)
    elif args.command == "destroy":
        from .api import destroy
        from .gates import CancelToken

        cancel = CancelToken()
        try:
            report = _run_cancellable(
                lambda: destroy(_platform(), args.descriptor, variables, settings=settings, cancel=cancel),
                cancel,
            )
        except PlinthError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        _print_failures(report.failed)
        if not args.quiet:
            print(f"[{'OK' if report.ok else 'FAILED'}] Destroy complete")
            print(f"  Deleted: {len(report.deleted)}")
            print(f"  Forgotten: {len(report.forgotten)}")
            print(f"  Blocked: {len(report.blocked)}")
        if cancel.cancelled:
            sys.exit(EXIT_CANCELLED)
        if not report.ok:
            sys.exit(1)
    elif args.command == "output":
        from .api import outputs

        names = [args.name] if args.name else None
        try:
            values = outputs(settings.state_path, names, show_sensitive=args.show_sensitive)
        except PlinthError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if args.name:
            value = values[args.name]
            print(value if isinstance(value, str) else json.dumps(value))
        else:
            print(canonical_dumps(values, indent=2))
    elif args.command == "template":
        from importlib.resources import files

        text = files("plinth.templates").joinpath(f"{args.template_name}.json").read_text(encoding="utf-8")
        if args.out is not None:
            args.out.write_text(text, encoding="utf-8")
            if not args.quiet:
                print("[OK] Template written")
                print(f"  Path: {args.out}")
        else:
            print(text, end="" if text.endswith("\n") else "\n")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
