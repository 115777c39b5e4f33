import argparse
import asyncio
import json
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException
from pydantic import ValidationError

from gateflow.db.session import SessionLocal
from gateflow.schemas.coupons import CouponCreate, CouponRead
from gateflow.services import coupon_reservations
from gateflow.services import coupons as coupons_service


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw}")


async def cleanup_reservations() -> int:
    async with SessionLocal() as session:
        return await coupon_reservations.cleanup_expired_reservations(session)


async def create_coupon(payload: CouponCreate) -> dict[str, Any]:
    async with SessionLocal() as session:
        try:
            coupon = await coupons_service.create_coupon(session, payload)
        except HTTPException as exc:
            raise SystemExit(str(exc.detail))
        return CouponRead.model_validate(coupon).model_dump(mode="json")


async def coupon_stats(code: str) -> dict[str, Any]:
    async with SessionLocal() as session:
        coupon = await coupons_service.get_coupon_by_code(session, code=code)
        if coupon is None:
            raise SystemExit(f"Coupon not found: {code}")
        stats = await coupons_service.coupon_stats(session, coupon.id)
        return stats.model_dump(mode="json")


def _coupon_payload(args: argparse.Namespace) -> CouponCreate:
    try:
        return CouponCreate(
            code=args.code,
            name=args.name,
            discount_type=args.type,
            discount_value=args.value,
            currency=args.currency,
            usage_limit_global=args.global_limit,
            usage_limit_per_user=args.per_user_limit or None,
            current_usage_count=args.used,
            allowed_product_ids=args.product or [],
            allowed_emails=args.email or [],
            exclude_order_bumps=bool(args.exclude_order_bumps),
        )
    except ValidationError as exc:
        messages = "; ".join(str(err.get("msg")) for err in exc.errors())
        raise SystemExit(f"Invalid coupon: {messages}")


def _add_coupon_commands(subparsers) -> None:
    subparsers.add_parser("cleanup-reservations", help="Expire coupon reservations past their TTL")

    create = subparsers.add_parser("create-coupon", help="Create a coupon")
    create.add_argument("code", help="Coupon code (stored upper-case)")
    create.add_argument("--type", choices=["percentage", "fixed"], required=True, help="Discount type")
    create.add_argument("--value", type=_decimal, required=True, help="Percent (1-100) or fixed amount")
    create.add_argument("--name", help="Admin label")
    create.add_argument("--currency", help="ISO currency (required for fixed discounts)")
    create.add_argument("--global-limit", type=int, help="Maximum redemptions across all customers")
    create.add_argument("--per-user-limit", type=int, default=1, help="Maximum redemptions per customer email (0 = unlimited)")
    create.add_argument("--used", type=int, default=0, help="Usage already consumed outside this service")
    create.add_argument("--product", action="append", help="Allowed product id (repeatable)")
    create.add_argument("--email", action="append", help="Allowed customer email (repeatable)")
    create.add_argument("--exclude-order-bumps", action="store_true", help="Do not discount order bumps")

    stats = subparsers.add_parser("coupon-stats", help="Print redemption statistics for a coupon")
    stats.add_argument("code", help="Coupon code")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon maintenance utilities")
    subparsers = parser.add_subparsers(dest="command")
    _add_coupon_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "cleanup-reservations":
        reclaimed = asyncio.run(cleanup_reservations())
        print(f"Reclaimed {reclaimed} expired reservation(s)")
        return True

    if args.command == "create-coupon":
        created = asyncio.run(create_coupon(_coupon_payload(args)))
        print(json.dumps(created, indent=2))
        return True

    if args.command == "coupon-stats":
        print(json.dumps(asyncio.run(coupon_stats(args.code)), indent=2))
        return True

    return False


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
