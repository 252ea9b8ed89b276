#!/usr/bin/env python3
"""Queue management utility script."""

import asyncio
import sys
import argparse
import json
from pathlib import Path
from typing import Optional, List

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from ketmar_queue.config import QUEUES, describe_queues, is_queue_enabled
from ketmar_queue.manager import QueueManager, get_queue_manager
from ketmar_queue.bootstrap import get_queue_health


class QueueManagementCLI:
    """Command-line interface for queue management."""

    def __init__(self, manager: Optional[QueueManager] = None):
        self.queue_manager = manager or get_queue_manager()

    async def initialize(self) -> bool:
        """Connect the manager. Listeners are not needed for one-shot commands."""
        if not is_queue_enabled(self.queue_manager.settings):
            print("❌ Queue system disabled: REDIS_URL is not set")
            return False
        if not await self.queue_manager.initialize(listen=False):
            print("❌ Could not connect to Redis")
            return False
        return True

    async def cleanup(self):
        """Cleanup resources."""
        await self.queue_manager.shutdown()
        self.queue_manager.provider.close_connection()

    def _resolve(self, queues: Optional[List[str]]) -> List[str]:
        if not queues:
            return list(QUEUES.values())
        return [QUEUES.get(name.upper().replace('-', '_'), name) for name in queues]

    async def show_detailed_status(self):
        """Show detailed queue status."""
        stats = await self.queue_manager.get_stats()

        print("=" * 60)
        print("🚀 KETMAR QUEUE SYSTEM STATUS")
        print("=" * 60)

        print("📋 QUEUE DETAILS:")
        for queue_name, queue_stats in stats.items():
            if 'error' in queue_stats:
                print(f"   ❌ {queue_name}: ERROR - {queue_stats['error']}")
                continue

            paused = await self.queue_manager.is_queue_paused(queue_name)
            print(f"   📦 {queue_name.upper()}{' (PAUSED)' if paused else ''}:")
            print(f"      Waiting: {queue_stats['waiting']}")
            print(f"      Active: {queue_stats['active']}")
            print(f"      Delayed: {queue_stats['delayed']}")
            print(f"      Completed: {queue_stats['completed']}")
            print(f"      Failed: {queue_stats['failed']}")

            total = queue_stats['completed'] + queue_stats['failed']
            if total > 0:
                success_rate = (queue_stats['completed'] / total) * 100
                print(f"      Success Rate: {success_rate:.1f}%")
            print()

        repeatables = await self.queue_manager.get_repeatable_jobs()
        if repeatables:
            print("⏰ REPEATABLE JOBS:")
            for job in repeatables:
                print(f"   {job.key}")
            print()

    async def show_health(self):
        health = await get_queue_health()
        print(json.dumps(health, indent=2, default=str))

    async def show_failed_jobs(self, queues: Optional[List[str]] = None, limit: int = 20):
        """List failed jobs with their reasons."""
        for queue_name in self._resolve(queues):
            jobs = await self.queue_manager.get_failed_jobs(queue_name, 0, limit - 1)
            print(f"❌ {queue_name}: {len(jobs)} failed")
            for job in jobs:
                print(f"   {job['id']} {job['name']} (attempts: {job['attempts_made']})")
                print(f"      {job['failed_reason']}")

    async def retry_failed_jobs(self, queue_name: str, job_ids: Optional[List[str]] = None):
        """Retry specific failed jobs, or every listed failed job of a queue."""
        queue_name = self._resolve([queue_name])[0]
        if not job_ids:
            failed = await self.queue_manager.get_failed_jobs(queue_name, 0, 999)
            job_ids = [job['id'] for job in failed]

        retried = 0
        for job_id in job_ids:
            if await self.queue_manager.retry_job(queue_name, job_id):
                retried += 1
            else:
                print(f"⚠️  Could not retry {job_id}")
        print(f"🔄 Retried {retried} jobs in {queue_name}")

    async def set_paused(self, queues: Optional[List[str]], paused: bool):
        for queue_name in self._resolve(queues):
            if paused:
                ok = await self.queue_manager.pause_queue(queue_name)
            else:
                ok = await self.queue_manager.resume_queue(queue_name)
            state = "paused" if paused else "resumed"
            print(f"{'✅' if ok else '❌'} {queue_name} {state if ok else 'unchanged'}")

    async def show_job_details(self, queue_name: str, job_id: str):
        queue_name = self._resolve([queue_name])[0]
        status = await self.queue_manager.get_job_status(queue_name, job_id)
        if status is None:
            print(f"❌ Job {job_id} not found in {queue_name}")
            return
        print(f"🔍 {job_id} in {queue_name}: {status}")


def show_config():
    """Show the queue registry and worker tuning."""
    print(json.dumps(describe_queues(), indent=2))


async def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(description="KETMAR Queue Management")

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('status', help='Show queue status')
    subparsers.add_parser('health', help='Show queue health')
    subparsers.add_parser('config', help='Show queue configuration')

    failed_parser = subparsers.add_parser('failed', help='List failed jobs')
    failed_parser.add_argument('queues', nargs='*', help='Queues to inspect (default: all)')
    failed_parser.add_argument('--limit', type=int, default=20, help='Jobs per queue')

    retry_parser = subparsers.add_parser('retry', help='Retry failed jobs')
    retry_parser.add_argument('queue', help='Queue name')
    retry_parser.add_argument('job_ids', nargs='*', help='Job IDs (default: all failed)')

    pause_parser = subparsers.add_parser('pause', help='Pause queues')
    pause_parser.add_argument('queues', nargs='*', help='Queues to pause (default: all)')

    resume_parser = subparsers.add_parser('resume', help='Resume queues')
    resume_parser.add_argument('queues', nargs='*', help='Queues to resume (default: all)')

    job_parser = subparsers.add_parser('job', help='Show job status')
    job_parser.add_argument('queue', help='Queue name')
    job_parser.add_argument('job_id', help='Job ID to inspect')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.command == 'config':
        show_config()
        return

    if args.command == 'health':
        cli = QueueManagementCLI()
        try:
            await cli.queue_manager.initialize(listen=False)
            await cli.show_health()
        finally:
            await cli.cleanup()
        return

    cli = QueueManagementCLI()

    try:
        if not await cli.initialize():
            sys.exit(1)

        if args.command == 'status':
            await cli.show_detailed_status()
        elif args.command == 'failed':
            await cli.show_failed_jobs(args.queues, args.limit)
        elif args.command == 'retry':
            await cli.retry_failed_jobs(args.queue, args.job_ids)
        elif args.command == 'pause':
            await cli.set_paused(args.queues, True)
        elif args.command == 'resume':
            await cli.set_paused(args.queues, False)
        elif args.command == 'job':
            await cli.show_job_details(args.queue, args.job_id)

    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled")
    except Exception as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        await cli.cleanup()


if __name__ == '__main__':
    asyncio.run(main())
