#!/usr/bin/env python3
"""
Instance Guardian CLI
Manage CPU limits and run monitoring passes from a terminal.
"""

import argparse
import logging
import sys
import time

from .config import Settings
from .exceptions import GuardianError
from .scheduler import MonitoringScheduler
from .service import GuardianService
from .store import Stores, create_tables


def _require_user(args) -> str:
    if not args.user_id:
        raise GuardianError("--user-id is required for this command")
    return args.user_id


def _service(args) -> GuardianService:
    settings = Settings.from_env()
    return GuardianService(settings, Stores.from_settings(settings))


def cmd_init_tables(args):
    """Create the DynamoDB tables."""
    settings = Settings.from_env()
    stores = Stores.from_settings(settings)
    created = create_tables(stores.thresholds.client, settings.tables)
    if created:
        print(f"Created tables: {', '.join(created)}")
    else:
        print("All tables already exist")
    return 0


def cmd_limits(args):
    """List, set or remove per-instance CPU limits."""
    user_id = _require_user(args)
    service = _service(args)

    if args.limits_command == "set":
        threshold = service.save_limit(
            user_id, args.instance_id, cpu_limit=args.cpu_limit, auto_shutdown=not args.no_auto_shutdown
        )
        print(
            f"{threshold.instance_id}: limit {threshold.cpu_limit:g}% "
            f"(auto-shutdown {'on' if threshold.auto_shutdown else 'off'})"
        )
        return 0

    if args.limits_command == "remove":
        if not service.remove_limit(user_id, args.instance_id):
            print(f"No limit set for {args.instance_id}")
            return 1
        print(f"Removed limit for {args.instance_id}")
        return 0

    limits = service.list_limits(user_id)
    if not limits:
        print("No CPU limits configured")
        return 0

    print(f"{'Instance':<22} {'Limit':>6} {'Shutdown':>9} {'Monitor':>8} {'Alert':>6} {'Breaches':>9}  Last breach")
    print("-" * 87)
    for t in limits:
        print(
            f"{t.instance_id:<22} {t.cpu_limit:>5g}% {('yes' if t.auto_shutdown else 'no'):>9} "
            f"{('yes' if t.auto_monitoring else 'no'):>8} {('yes' if t.breaching else 'no'):>6} "
            f"{t.breach_count:>9}  "
            f"{t.last_breach.isoformat() if t.last_breach else '-'}"
        )
    return 0


def cmd_auto_monitor(args):
    """Enable or disable auto-monitoring for an instance."""
    user_id = _require_user(args)
    threshold = _service(args).set_auto_monitoring(
        user_id, args.instance_id, args.enable, cpu_limit=args.cpu_limit
    )
    if threshold is None:
        print(f"No limit set for {args.instance_id}, nothing to disable")
        return 1
    state = "enabled" if threshold.auto_monitoring else "disabled"
    print(f"Auto-monitoring {state} for {threshold.instance_id} (limit {threshold.cpu_limit:g}%)")
    return 0


def cmd_production_mode(args):
    """Show or change production mode."""
    user_id = _require_user(args)
    service = _service(args)

    if args.enable is None and args.email is None:
        settings = service.get_production_mode(user_id)
    else:
        settings = service.update_production_mode(
            user_id,
            enabled=args.enable,
            instance_id=args.instance_id,
            email_enabled=None if args.email is None else args.email == "on",
        )

    print(f"Production mode: {'enabled' if settings.enabled else 'disabled'}")
    for instance_id, options in sorted(settings.instance_settings.items()):
        print(f"  {instance_id}: email {'on' if options.get('emailEnabled') is not False else 'off'}")
    return 0


def cmd_stop(args):
    """Stop one instance (use with caution)."""
    user_id = _require_user(args)
    if not args.confirm:
        print(f"This will stop instance {args.instance_id}.")
        print("Use --confirm to proceed.")
        return 1

    result = _service(args).stop_instance(user_id, args.instance_id, args.reason)
    print(f"Instance {result.instance_id} in {result.region}: {result.previous_state} -> {result.current_state}")
    return 0


def cmd_run_once(args):
    """Run a single monitoring pass now."""
    settings = Settings.from_env()
    scheduler = MonitoringScheduler(settings, Stores.from_settings(settings))
    summary = scheduler.run_pass(user_id=args.user_id)

    if summary.outside_active_hours:
        print("Outside active hours, nothing evaluated")
        return 0

    print("Monitoring Pass")
    print("=" * 40)
    print(f"Users evaluated:    {summary.users_evaluated}")
    print(f"Users skipped:      {summary.users_skipped}")
    print(f"Users failed:       {summary.users_failed}")
    print(f"Instances checked:  {summary.instances_checked}")
    print(f"Instances stopped:  {summary.instances_stopped}")
    print(f"Instances alerted:  {summary.instances_alerted}")
    print(f"Emails sent:        {summary.emails_sent}")
    for error in summary.errors:
        print(f"  ! {error}")
    return 0 if not summary.users_failed else 2


def cmd_watch(args):
    """Run the scheduler in the foreground until interrupted."""
    settings = Settings.from_env()
    stores = Stores.from_settings(settings)
    scheduler = MonitoringScheduler(settings, stores)
    scheduler.start()
    if args.now:
        GuardianService(settings, stores, dispatch=scheduler.trigger).trigger_monitoring(args.user_id)
    print(
        f"Watching every {settings.monitor_interval_seconds}s "
        f"(first pass in {settings.monitor_initial_delay_seconds}s). Ctrl-C to stop."
    )
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print()
    finally:
        scheduler.stop(timeout=30)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Instance Guardian CLI - per-instance CPU limits with auto-shutdown"
    )
    parser.add_argument("--user-id", help="User whose limits and settings to act on")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-tables", help="Create DynamoDB tables")

    # limits command
    limits_parser = subparsers.add_parser("limits", help="Manage CPU limits")
    limits_sub = limits_parser.add_subparsers(dest="limits_command")
    limits_sub.add_parser("list", help="List CPU limits")
    set_parser = limits_sub.add_parser("set", help="Create or update a limit")
    set_parser.add_argument("--instance-id", required=True)
    set_parser.add_argument("--cpu-limit", type=float, default=None, help="Percent, clamped to 10-100")
    set_parser.add_argument("--no-auto-shutdown", action="store_true", help="Alert instead of stopping")
    remove_parser = limits_sub.add_parser("remove", help="Remove a limit")
    remove_parser.add_argument("--instance-id", required=True)

    # auto-monitor command
    monitor_parser = subparsers.add_parser("auto-monitor", help="Toggle auto-monitoring")
    monitor_parser.add_argument("--instance-id", required=True)
    toggle = monitor_parser.add_mutually_exclusive_group(required=True)
    toggle.add_argument("--enable", dest="enable", action="store_true")
    toggle.add_argument("--disable", dest="enable", action="store_false")
    monitor_parser.add_argument("--cpu-limit", type=float, default=None)

    # production-mode command
    prod_parser = subparsers.add_parser("production-mode", help="Show or change production mode")
    prod_toggle = prod_parser.add_mutually_exclusive_group()
    prod_toggle.add_argument("--enable", dest="enable", action="store_const", const=True)
    prod_toggle.add_argument("--disable", dest="enable", action="store_const", const=False)
    prod_parser.add_argument("--instance-id", help="Instance for --email")
    prod_parser.add_argument("--email", choices=["on", "off"], help="Per-instance email alerts")

    # stop command
    stop_parser = subparsers.add_parser("stop", help="Stop an instance")
    stop_parser.add_argument("--instance-id", required=True)
    stop_parser.add_argument("--reason", default="Manual stop from CLI")
    stop_parser.add_argument("--confirm", action="store_true", help="Confirm stop action")

    subparsers.add_parser("run-once", help="Run one monitoring pass")
    watch_parser = subparsers.add_parser("watch", help="Run the monitoring scheduler")
    watch_parser.add_argument(
        "--now", action="store_true", help="Run a pass immediately instead of waiting for the first tick"
    )

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "production-mode" and args.email is not None and not args.instance_id:
        parser.error("--email requires --instance-id")

    commands = {
        "init-tables": cmd_init_tables,
        "limits": cmd_limits,
        "auto-monitor": cmd_auto_monitor,
        "production-mode": cmd_production_mode,
        "stop": cmd_stop,
        "run-once": cmd_run_once,
        "watch": cmd_watch,
    }

    try:
        return commands[args.command](args)
    except GuardianError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
