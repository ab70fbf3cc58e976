"""Script to run a knowledge base sync in-process and wait for it to finish."""

import argparse
import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import from app
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.db.db import init_db, close_db, get_session_maker
from app.models.knowledge_chunk import Collection
from app.models.sync_job import SyncMode
from app.services.errors import KnowledgeBaseError
from app.services.knowledge_base import build_knowledge_base


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index iTop records or library documents into the knowledge base.")
    parser.add_argument("--organization", required=True, help="Organization id to index for")
    parser.add_argument(
        "--collection",
        choices=[c.value for c in Collection],
        default=Collection.INCIDENT.value,
    )
    parser.add_argument(
        "--mode",
        choices=[SyncMode.FULL.value, SyncMode.INCREMENTAL.value],
        default=SyncMode.INCREMENTAL.value,
    )
    return parser.parse_args(argv)


async def run_sync(organization_id: str, collection: str, mode: str) -> int:
    """Start a sync, wait for it and print the outcome. Returns a process exit code."""
    await init_db()
    try:
        kb = build_knowledge_base(get_session_maker())
    except (KnowledgeBaseError, RuntimeError) as e:
        print(f"Knowledge base unavailable: {e}")
        await close_db()
        return 1

    try:
        result = await kb.sync_manager.start_sync(organization_id, collection, mode)
        if result.reused:
            print(f"A sync is already running for {organization_id}/{collection}: {result.job_id}")
            print("It belongs to another process; check GET /v1/knowledge/sync/<job_id> for progress.")
            return 0

        print(f"Sync job {result.job_id} started (mode={result.mode})")
        job = await kb.sync_manager.wait_for_job(result.job_id)

        print("=" * 50)
        print(f"Status:   {job.status}")
        print(f"Progress: {job.progress}/{job.total}")
        if job.error:
            print(f"Message:  {job.error}")
        print("=" * 50)
        return 0 if job.status == "completed" else 1

    except KnowledgeBaseError as e:
        print(f"Sync could not run: {e}")
        return 1
    finally:
        await kb.aclose()
        await close_db()


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    return asyncio.run(run_sync(args.organization, args.collection, args.mode))


if __name__ == "__main__":
    sys.exit(main())
