#!/usr/bin/env python3
"""CLI script to load the CRM snapshot for a user and print the pipeline.

Usage:
    uv run python scripts/crm_snapshot.py --user-id 6f1c0c4e-... --access-token eyJ...
    uv run python scripts/crm_snapshot.py --user-id demo --provider local

Reads SUPABASE_URL, SUPABASE_ANON_KEY and ENCRYPTION_KEY from environment or
.env file. Mounts a CRMProvider, waits for the initial refresh and prints
collection counts plus the stage-by-stage pipeline.

Exit code 0 on a successful load, 1 if the refresh failed.
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


async def snapshot(user_id: str, access_token: str | None, provider: str | None) -> int:
    """Mount a provider for ``user_id`` and print what it loaded."""
    from src.app.config import get_settings
    from src.app.core.logging import configure_structlog
    from src.app.core.session import AuthSession, User
    from src.app.crm.backend import SupabaseCRMService, build_crm_service
    from src.app.crm.context import CRMLifecycle, CRMProvider
    from src.app.crm.selectors import deals_by_stage, pipeline_summary

    settings = get_settings()
    if provider:
        settings = settings.model_copy(update={"BACKEND_PROVIDER": provider})
    configure_structlog()

    service = build_crm_service(settings)
    if access_token and isinstance(service, SupabaseCRMService):
        service.set_access_token(access_token)

    session = AuthSession(User(id=user_id))
    async with CRMProvider(service, session) as crm:
        await crm.wait_until_idle()

        if crm.status == CRMLifecycle.ERRORED:
            print(f"Refresh failed: {crm.state.error}")
            return 1

        state = crm.state
        print(f"CRM snapshot for user {user_id}:")
        print(f"  Companies:  {len(state.companies)}")
        print(f"  Contacts:   {len(state.contacts)}")
        print(f"  Deals:      {len(state.deals)}")
        print(f"  Activities: {len(state.activities)}")

        print()
        print(f"{'STAGE':<15} {'DEALS':>6} {'VALUE':>14} {'WEIGHTED':>14}")
        print("-" * 52)
        for column in deals_by_stage(state):
            print(
                f"{column.stage.value:<15} {column.count:>6} "
                f"{column.total_value:>14,.2f} {column.weighted_value:>14,.2f}"
            )

        summary = pipeline_summary(state)
        print("-" * 52)
        print(
            f"{'total':<15} {summary.total_deals:>6} "
            f"{summary.total_value:>14,.2f} {summary.weighted_value:>14,.2f}"
        )
        print(f"Win rate: {summary.win_rate:.1f}%")

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Print a user's CRM snapshot")
    parser.add_argument("--user-id", required=True, help="Signed-in user id (createdBy stamp)")
    parser.add_argument("--access-token", default=None, help="User JWT for the Supabase backend")
    parser.add_argument(
        "--provider",
        choices=["supabase", "local"],
        default=None,
        help="Override BACKEND_PROVIDER",
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(snapshot(args.user_id, args.access_token, args.provider)))


if __name__ == "__main__":
    main()
