#!/usr/bin/env python3
"""
Recalculate standings for every league in the database.

This script:
1. Auto-finalizes proposals left unanswered past each league's window
2. Recomputes member stats and ranks for each league
3. Prints a summary of successes and failures

Usage:
    python scripts/recalculate_standings.py [league_id ...]
"""

import asyncio
import os
import sys

# Add the project root to path (so league_engine.* imports work)
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from sqlalchemy import select

from league_engine.database.db import AsyncSessionLocal
from league_engine.database.models import League
from league_engine.services import calculation_service, scoring_service


async def recalculate_all_leagues(league_ids=None):
    """Recalculate standings for the given leagues, or all of them."""
    async with AsyncSessionLocal() as session:
        query = select(League).order_by(League.id)
        if league_ids:
            query = query.where(League.id.in_(league_ids))
        result = await session.execute(query)
        leagues = [(league.id, league.name) for league in result.scalars().all()]

        if not leagues:
            print("❌ No leagues found in the database.")
            return

        print(f"✓ Found {len(leagues)} league(s)\n")

        successful = 0
        failures = []

        for idx, (league_id, league_name) in enumerate(leagues, 1):
            print(f"[{idx}/{len(leagues)}] League: {league_name} (ID: {league_id})")
            try:
                finalized = await scoring_service.auto_finalize_expired(session, league_id)
                if finalized:
                    print(f"   ✓ Auto-finalized {len(finalized)} match(es)")

                counts = await calculation_service.recalculate_league_standings(session, league_id)
                print(f"   ✓ Success: {counts['member_count']} members, {counts['match_count']} matches")
                successful += 1
            except Exception as e:
                print(f"   ❌ Error: {str(e)}")
                await session.rollback()
                failures.append((league_id, league_name, str(e)))
            print()

        print("=" * 60)
        print("📊 Summary")
        print("=" * 60)
        print(f"Total leagues: {len(leagues)}")
        print(f"✅ Successful: {successful}")
        print(f"❌ Failed: {len(failures)}")

        if failures:
            print("\nFailed leagues:")
            for league_id, league_name, error in failures:
                print(f"  - {league_name} (ID: {league_id}): {error}")


if __name__ == "__main__":
    asyncio.run(recalculate_all_leagues([int(arg) for arg in sys.argv[1:]]))
