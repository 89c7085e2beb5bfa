import argparse
import asyncio

from app.core.config import settings
from app.core.logging_config import configure_logging
from app.db.session import SessionLocal, create_all
from app.models.coupon import COUPON_CODE_MAX_LENGTH
from app.repositories.coupons import CouponRepository
from app.services import coupon_codes


async def generate_codes(*, length: int, count: int) -> list[str]:
    """Return `count` codes that are unused in the database and distinct from each other."""
    codes: list[str] = []
    async with SessionLocal() as session:
        repo = CouponRepository(session)
        while len(codes) < count:
            code = await coupon_codes.generate_unique_coupon_code(repo, length=length)
            if code not in codes:
                codes.append(code)
    return codes


async def init_db() -> None:
    await create_all()
    print("Database tables created")


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {raw!r}")
    if value < 1:
        raise argparse.ArgumentTypeError("Value must be at least 1")
    return value


def _code_length(raw: str) -> int:
    value = _positive_int(raw)
    if value > COUPON_CODE_MAX_LENGTH:
        raise argparse.ArgumentTypeError(f"Length must be at most {COUPON_CODE_MAX_LENGTH}")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon service utilities")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create database tables from the ORM metadata")
    generate = subparsers.add_parser("generate-code", help="Print unused coupon codes")
    generate.add_argument("--length", type=_code_length, default=settings.coupon_code_default_length)
    generate.add_argument("--count", type=_positive_int, default=1)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "generate-code":
        try:
            codes = asyncio.run(generate_codes(length=args.length, count=args.count))
        except coupon_codes.CouponCodeExhaustedError as exc:
            raise SystemExit(str(exc))
        for code in codes:
            print(code)
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
