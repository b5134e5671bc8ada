#!/usr/bin/env python3
"""
Confidential Budget Exchange Launcher
=====================================
Runs either party of the exchange, or both in one process:

1. --serve   compute party (optionally with the HTTP monitor)
2. --owner   data owner, entering figures interactively
3. --demo    compute party plus an owner session with sample figures
"""

import argparse
import asyncio
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from finance_core.config import ExchangeConfig
from finance_core.errors import ExchangeError
from finance_core.session_logger import SessionAuditLog
from finance_core.variants import BUDGET_GOAL, ITEMIZED_BUDGET, SAVINGS_PLAN, build_registry


DEMO_FIGURES = {
    BUDGET_GOAL: {
        'total_income': ["1500.75"],
        'savings_goal': ["500.00"],
        'essential_expenses': ["450.50"],
        'non_essential_expenses': ["120.00"],
    },
    SAVINGS_PLAN: {
        'income': ["1500.75", "250.00", "75.20"],
        'expense': ["450.50", "120.00", "30.80"],
    },
    ITEMIZED_BUDGET: {
        'income_items': ["1500.75", "250.00", "75.20"],
        'expense_items': ["450.50", "120.00", "30.80"],
        'savings_goal': ["500.00"],
    },
}


def print_banner():
    """Print startup banner"""
    banner = """
╔═══════════════════════════════════════════════════════════════╗
║                                                               ║
║   🔐  Confidential Budget Exchange                            ║
║                                                               ║
║   Budget arithmetic on encrypted figures (BFV)                ║
║                                                               ║
╚═══════════════════════════════════════════════════════════════╝
    """
    print(banner)


def print_report(report):
    print("\n📊 Decrypted results")
    for line in report.format_lines():
        print(line)
    if report.matches:
        print("✓ All results match the clear-text evaluation")
    else:
        print("✗ Results differ from the clear-text evaluation")


async def serve(config: ExchangeConfig, audit: SessionAuditLog, monitor: bool):
    from server.compute_server import ComputeServer

    compute = ComputeServer(config, audit_log=audit)
    await compute.start()
    tasks = [asyncio.create_task(compute.serve_forever())]

    if monitor:
        from server.monitor import build_monitor_server
        print(f"📊 Monitor: http://{config.host}:{config.monitor_port}/")
        web = build_monitor_server(compute, config.host, config.monitor_port)
        tasks.append(asyncio.create_task(web.serve()))

    print("\n✓ Compute party running. Press Ctrl+C to stop.\n")
    try:
        await asyncio.gather(*tasks)
    finally:
        await compute.stop()


async def run_owner(config: ExchangeConfig, audit: SessionAuditLog, variant: str):
    from owner.owner_client import OwnerClient
    from owner.prompts import prompt_figures

    client = OwnerClient(config, audit_log=audit)
    figures = prompt_figures(client.registry[variant])
    print(f"\n🔐 Encrypting and sending to {config.host}:{config.port} ...")
    report = await client.run(variant, figures)
    print_report(report)


async def run_demo(config: ExchangeConfig, audit: SessionAuditLog, variant: str):
    from owner.owner_client import OwnerClient
    from server.compute_server import ComputeServer

    compute = ComputeServer(config.with_overrides(port=0), audit_log=audit)
    await compute.start()
    host, port = compute.address
    try:
        print(f"\n🧪 Demo session: {variant}")
        for name, lines in DEMO_FIGURES[variant].items():
            print(f"   {name:<24} {', '.join(lines)}")
        client = OwnerClient(config, audit_log=audit)
        report = await client.run(variant, DEMO_FIGURES[variant], host=host, port=port)
        print_report(report)
    finally:
        await compute.stop()

    summary = audit.get_compute_summary()
    print("\n🛡️  Compute party audit")
    print(f"   Operations logged: {summary['total_operations']}")
    print(f"   Data types handled: {', '.join(summary['data_types_handled'])}")
    print(f"   Plaintext or secret key seen: {'NO ✓' if audit.verify_no_violations() else 'YES ✗'}")


def parse_rate(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid rate: {value!r}")


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Confidential Budget Exchange Launcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_system.py --demo                          # Both parties, sample figures
  python run_system.py --demo --variant savings_plan
  python run_system.py --serve --monitor               # Compute party with monitor
  python run_system.py --owner --host 10.0.0.5         # Enter figures interactively
        """
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--serve", action="store_true", help="Run the compute party")
    mode.add_argument("--owner", action="store_true", help="Run an interactive owner session")
    mode.add_argument("--demo", action="store_true", help="Run both parties with sample figures (default)")

    parser.add_argument(
        "--variant",
        default=BUDGET_GOAL,
        choices=sorted(build_registry()),
        help=f"Session variant (default: {BUDGET_GOAL})"
    )
    parser.add_argument("--host", help="Compute party host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Compute party port (default: 8080)")
    parser.add_argument("--monitor", action="store_true", help="Serve the HTTP monitor with --serve")
    parser.add_argument("--monitor-port", type=int, help="Monitor port (default: 8000)")
    parser.add_argument("--timeout", type=float, help="Per-frame I/O deadline in seconds (default: 30)")
    parser.add_argument("--savings-rate", type=parse_rate, help="Savings rate for savings_plan (default: 0.15)")
    parser.add_argument("--audit-log", metavar="FILE", help="Persist the audit trail as JSON lines")

    args = parser.parse_args()

    try:
        config = ExchangeConfig().with_overrides(
            host=args.host,
            port=args.port,
            monitor_port=args.monitor_port,
            io_timeout=args.timeout,
            savings_rate=args.savings_rate,
        )
    except ValueError as e:
        parser.error(str(e))
    audit = SessionAuditLog(args.audit_log)

    print_banner()
    try:
        if args.serve:
            asyncio.run(serve(config, audit, args.monitor))
        elif args.owner:
            asyncio.run(run_owner(config, audit, args.variant))
        else:
            asyncio.run(run_demo(config, audit, args.variant))
    except ExchangeError as e:
        print(f"\n✗ Session failed ({e.kind}): {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n🛑 System stopped.")


if __name__ == "__main__":
    main()
