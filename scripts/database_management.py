"""
Database maintenance for the vault risk engine: index creation and ledger rebuilds
"""
import argparse
import asyncio
import os
import sys
from typing import List, Optional

import structlog

from vault_risk.classifier import ExecutionClassifier
from vault_risk.config import Settings
from vault_risk.database import DatabaseManager, Repository
from vault_risk.ledger import PositionLedger
from vault_risk.main import configure_logging

logger = structlog.get_logger()


async def create_indexes(settings: Settings):
    """Connect once; the manager creates every index on connect."""
    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    await db_manager.disconnect()


async def rebuild_ledger(settings: Settings, vault_address: Optional[str] = None, dry_run: bool = False) -> int:
    """Recompute vault and user positions from the persisted audit trail"""
    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    try:
        repository = Repository(db_manager.database)
        records = await repository.load_audit_trail(vault_address)
        logger.info("Loaded audit trail", records=len(records), vault=vault_address)

        ledger = PositionLedger(ExecutionClassifier.from_settings(settings), settings.TOKEN_DECIMALS)
        applied = ledger.replay(records)

        positions = [*ledger.vaults.values(), *ledger.users.values()]
        if dry_run:
            logger.info("Dry run - positions not written", positions=len(positions))
        else:
            await repository.persist(upserts=positions)
            logger.info("Positions rewritten", vaults=len(ledger.vaults), users=len(ledger.users))
        return applied
    finally:
        await db_manager.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vault risk database management tool")
    parser.add_argument("--mongodb-uri", default=os.getenv("MONGODB_URI"))
    parser.add_argument("--database-name", default=os.getenv("MONGO_DB_NAME"))

    subcommands = parser.add_subparsers(dest="action", required=True)
    subcommands.add_parser("create-indexes", help="Create all collection indexes")
    rebuild = subcommands.add_parser("rebuild-ledger", help="Replay the audit trail into position documents")
    rebuild.add_argument("--vault", help="Only replay this vault")
    rebuild.add_argument("--dry-run", action="store_true", help="Replay without writing positions")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {"MONGODB_URI": args.mongodb_uri}
    if args.database_name:
        overrides["MONGO_DB_NAME"] = args.database_name
    settings = Settings(**overrides)
    configure_logging(settings)

    if not settings.MONGODB_URI:
        print("Error: MongoDB URI is required (set MONGODB_URI env var or use --mongodb-uri)")
        return 1

    if args.action == "create-indexes":
        await create_indexes(settings)
        print("Indexes created successfully")
    elif args.action == "rebuild-ledger":
        applied = await rebuild_ledger(settings, args.vault, args.dry_run)
        print(f"Ledger rebuilt from {applied} audit records")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
