import argparse
import logging
import random
from typing import Optional, Sequence

from config import get_settings
from database import get_engine, init_db, session_scope, shutdown
from services import FixtureService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create the ledger tables and load fixture data."
    )
    parser.add_argument(
        "--defaults",
        action="store_true",
        help="create the default users and account when the store is empty",
    )
    parser.add_argument("--account-id", type=int, default=1)
    parser.add_argument(
        "--transactions",
        type=int,
        default=0,
        help="number of random transactions to generate on the account",
    )
    parser.add_argument("--seed", type=int, default=None, help="random seed")
    return parser


def run(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level)

    init_db(get_engine())
    try:
        if args.defaults:
            with session_scope() as session:
                FixtureService(session).seed_defaults()
        if args.transactions:
            with session_scope() as session:
                result = FixtureService(
                    session, rng=random.Random(args.seed)
                ).generate_transactions(args.account_id, args.transactions)
            logger.info(
                f"seed: account_id={result.account_id} inserted={result.inserted} "
                f"balance_delta={result.balance_delta_cents}"
            )
    finally:
        shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
