#!/usr/bin/env python3
"""CLI script to seed the default CRM pipelines.

Usage:
    python scripts/seed_pipelines.py
    python scripts/seed_pipelines.py --skip-active-members

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates the "Sales" pipeline (New, Negotiating, Won, Lost) and the
"Active Members" enrollment pipeline (Active). Pipelines that already
exist are left untouched.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

DEFAULT_PIPELINES: dict[str, list[str]] = {
    "Sales": ["New", "Negotiating", "Won", "Lost"],
    "Active Members": ["Active"],
}


async def seed(skip_active_members: bool) -> None:
    """Create each default pipeline unless one with the same name exists."""
    from src.app.config import get_settings
    from src.app.core.database import close_db, get_session, init_db
    from src.app.crm.exceptions import DuplicateName
    from src.app.crm.registry import PipelineRegistry
    from src.app.crm.schemas import PipelineCreate, StageCreate

    settings = get_settings()
    await init_db()

    registry = PipelineRegistry(
        get_session,
        won_names=settings.won_stage_names(),
        lost_names=settings.lost_stage_names(),
    )

    try:
        for name, stage_names in DEFAULT_PIPELINES.items():
            if skip_active_members and name == settings.ACTIVE_MEMBERS_PIPELINE_NAME:
                continue
            data = PipelineCreate(
                name=name,
                stages=[StageCreate(name=stage) for stage in stage_names],
            )
            try:
                pipeline = await registry.create_pipeline(data)
            except DuplicateName:
                print(f"Pipeline already exists, skipping: {name}")
                continue

            print(f"Created pipeline: {pipeline.name} ({pipeline.id})")
            for stage in pipeline.stages:
                print(f"  {stage.order}. {stage.name} [{stage.kind.value}] {stage.id}")
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the default CRM pipelines")
    parser.add_argument(
        "--skip-active-members",
        action="store_true",
        help="Do not create the auto-enrollment pipeline",
    )
    args = parser.parse_args()

    asyncio.run(seed(skip_active_members=args.skip_active_members))


if __name__ == "__main__":
    main()
