from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dsm.application.container import AppContainer, build_container
from dsm.config import IntakeSettings, get_app_paths
from dsm.domain.errors import AppError
from dsm.domain.models import Actor, SaleIntake, SupplyIntake
from dsm.logging_config import setup_logging
from dsm.services.sale_intake import SaleResult


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dsm",
        description="Record dealer sales while keeping dealer stock consistent.",
    )
    parser.add_argument("--db", type=Path, default=None, help="Local database path (default: app data dir).")
    parser.add_argument("--actor-id", type=int, default=None, help="Id of the user recording the operation.")
    parser.add_argument("--actor-role", default="ADMIN", help="ADMIN, COMPANY or DEALER.")
    parser.add_argument("--actor-company", type=int, default=None)
    parser.add_argument("--actor-dealer", type=int, default=None)
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    sell = sub.add_parser("sell", help="Sell a product from dealer stock to a customer.")
    sell.add_argument("--product", type=int, required=True)
    sell.add_argument("--dealer", type=int, required=True)
    sell.add_argument("--warranty", type=int, default=365, help="Warranty period in days.")
    sell.add_argument("--qty", type=int, default=1)
    sell.add_argument("--batch", default=None)
    who = sell.add_mutually_exclusive_group(required=True)
    who.add_argument("--contact", help="10-digit customer contact number.")
    who.add_argument("--customer-id", type=int)
    sell.add_argument("--name", default=None, help="Customer name, used when the contact is new.")

    supply = sub.add_parser("supply", help="Ship a batch from the company to a dealer.")
    supply.add_argument("--product", type=int, required=True)
    supply.add_argument("--dealer", type=int, required=True)
    supply.add_argument("--qty", type=int, required=True)
    supply.add_argument("--batch", required=True)
    supply.add_argument("--warranty", type=int, default=365)

    stock = sub.add_parser("stock", help="Show dealer stock.")
    stock.add_argument("--dealer", type=int, required=True)
    stock.add_argument("--product", type=int, default=None)

    rec = sub.add_parser("reconcile", help="Inspect and repair unreconciled sales.")
    rec_sub = rec.add_subparsers(dest="action", required=True)
    rec_sub.add_parser("list", help="List pending entries.")
    rec_sub.add_parser("retry", help="Re-apply pending stock deltas.")
    resolve = rec_sub.add_parser("resolve", help="Mark an entry resolved after a manual fix.")
    resolve.add_argument("entry_id", type=int)
    export = rec_sub.add_parser("export", help="Export pending entries to Excel.")
    export.add_argument("path", type=Path)

    return parser.parse_args(argv)


def _actor(args: argparse.Namespace) -> Optional[Actor]:
    if args.actor_id is None:
        return None
    return Actor(
        id=int(args.actor_id),
        role=str(args.actor_role).upper(),
        company_id=args.actor_company,
        dealer_id=args.actor_dealer,
    )


def _print_result(result: SaleResult) -> None:
    sale = result.sale
    print(f"Sale #{sale.id} created: product={sale.product_id} dealer={sale.dealer_id} qty={sale.quantity}")
    if result.customer is not None:
        print(f"Customer: {result.customer.name} ({result.customer.contact})")
    if result.reconciled:
        print(f"Stock updated. Remaining: {result.stock_after}")
    else:
        print(f"WARNING: {result.warning}")


def run(container: AppContainer, args: argparse.Namespace) -> int:
    actor = _actor(args)

    if args.command == "sell":
        intake = SaleIntake(
            product_id=args.product,
            dealer_id=args.dealer,
            warranty_till=args.warranty,
            quantity=args.qty,
            customer_contact=args.contact,
            customer_name=args.name,
            customer_id=args.customer_id,
            batch_number=args.batch,
        )
        _print_result(container.coordinator.create_sale(intake, actor))
        return 0

    if args.command == "supply":
        intake = SupplyIntake(
            product_id=args.product,
            dealer_id=args.dealer,
            quantity=args.qty,
            batch_number=args.batch,
            warranty_till=args.warranty,
        )
        _print_result(container.coordinator.create_supply_sale(intake, actor))
        return 0

    if args.command == "stock":
        for e in container.stock.list_for_dealer(args.dealer, args.product):
            print(f"product={e.product_id} batch={e.batch_number or '-'} qty={e.quantity} status={e.status}")
        return 0

    # reconcile
    if args.action == "list":
        container.auth.require_action(actor, "view_reconciliation")
        for e in container.reconciliation.list_pending():
            print(
                f"#{e.id} sale={e.sale_id} dealer={e.dealer_id} product={e.product_id} "
                f"batch={e.batch_number or '-'} delta={e.expected_delta} reason={e.reason} attempts={e.attempts}"
            )
        return 0
    if args.action == "retry":
        container.auth.require_action(actor, "resolve_reconciliation")
        sweep = container.reconciliation.retry_pending(container.stock, container.policy)
        print(f"Resolved: {len(sweep.resolved)}  Still pending: {len(sweep.failed)}")
        return 0 if not sweep.failed else 2
    if args.action == "resolve":
        container.auth.require_action(actor, "resolve_reconciliation")
        entry = container.reconciliation.resolve(args.entry_id)
        print(f"Entry #{entry.id} resolved at {entry.resolved_at}")
        return 0
    if args.action == "export":
        container.auth.require_action(actor, "view_reconciliation")
        out = container.reconciliation.export_pending_excel(args.path)
        print(f"Exported to {out}")
        return 0
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = IntakeSettings.from_env()
        container = build_container(args.db or paths.db_path, settings)
        return run(container, args)
    except AppError as e:
        logging.getLogger("dsm").warning("command_failed command=%s error=%s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
