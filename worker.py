#!/usr/bin/env python3
"""Worker script for running KETMAR queue workers outside the API process."""

import asyncio
import logging
import signal
import sys
import argparse
from typing import Any, Dict, List, Optional
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from aiogram import Bot

from ketmar_queue.bootstrap import QueueRuntime, queue_runtime
from ketmar_queue.config import describe_queues
from ketmar_queue.settings import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('worker.log')
    ]
)

logger = logging.getLogger(__name__)

WORKER_KEYS = list(queue_runtime.workers.keys())


class WorkerManager:
    """Runs a selection of queue workers until asked to stop."""

    def __init__(self, worker_keys: Optional[List[str]] = None, enable_scheduler: bool = True):
        selected = worker_keys or WORKER_KEYS
        self.runtime = QueueRuntime(
            manager=queue_runtime.manager,
            workers={key: queue_runtime.workers[key] for key in selected},
            scheduler=queue_runtime.scheduler,
        )
        self.enable_scheduler = enable_scheduler
        self.bot: Optional[Bot] = None
        self.shutdown_event = asyncio.Event()

    async def initialize(self, bot_token: Optional[str] = None) -> Dict[str, Any]:
        """Start workers and the scheduler."""
        if bot_token:
            self.bot = Bot(token=bot_token)

        result = await self.runtime.initialize(
            telegram_bot=self.bot,
            enable_workers=True,
            enable_scheduler=self.enable_scheduler,
        )
        if not result.get('initialized'):
            raise RuntimeError(f"Queue system not available: {result}")

        logger.info(f"Worker manager started {result['workers_started']} workers: "
                    f"{', '.join(self.runtime.workers)}")
        return result

    async def cleanup(self):
        """Stop workers and release the connection."""
        try:
            await self.runtime.shutdown()
        finally:
            if self.bot:
                await self.bot.session.close()
        logger.info("Worker manager cleanup completed")

    def get_status(self) -> dict:
        return {name: worker.get_stats() for name, worker in self.runtime.workers.items()}


async def run_worker_daemon(args):
    """Run workers as a daemon process."""
    worker_manager = WorkerManager(args.queues, enable_scheduler=not args.no_scheduler)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        worker_manager.shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await worker_manager.initialize(args.bot_token)
        await worker_manager.shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Worker daemon error: {e}")
        raise
    finally:
        await worker_manager.cleanup()


async def show_status():
    """Show queue counts."""
    runtime = queue_runtime
    try:
        if not await runtime.manager.initialize(listen=False):
            print("❌ Queue system not available (is REDIS_URL set?)")
            sys.exit(1)

        stats = await runtime.manager.get_stats()

        print("\n=== KETMAR Queue Status ===")
        for queue_name, queue_stats in stats.items():
            if 'error' in queue_stats:
                print(f"❌ {queue_name}: Error - {queue_stats['error']}")
                continue

            print(f"📋 {queue_name}:")
            print(f"   Waiting: {queue_stats['waiting']}")
            print(f"   Active: {queue_stats['active']}")
            print(f"   Delayed: {queue_stats['delayed']}")
            print(f"   Completed: {queue_stats['completed']}")
            print(f"   Failed: {queue_stats['failed']}")
            print()
    finally:
        await runtime.shutdown()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="KETMAR Queue Worker")

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Worker command
    worker_parser = subparsers.add_parser('work', help='Start workers')
    worker_parser.add_argument('--queues', '-q', nargs='+', choices=WORKER_KEYS,
                               help='Workers to run (default: all)')
    worker_parser.add_argument('--no-scheduler', action='store_true',
                               help='Do not promote delayed or repeatable jobs in this process')
    worker_parser.add_argument('--bot-token', help='Telegram bot token for the notifications worker')
    worker_parser.add_argument('--verbose', '-v', action='store_true',
                               help='Verbose logging')

    # Status command
    subparsers.add_parser('status', help='Show queue status')

    # Queues command
    subparsers.add_parser('queues', help='Show queue registry')

    args = parser.parse_args()

    if getattr(args, 'verbose', False):
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == 'work':
        asyncio.run(run_worker_daemon(args))
    elif args.command == 'status':
        asyncio.run(show_status())
    elif args.command == 'queues':
        for key, info in describe_queues().items():
            print(f"{key}: {info}")
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
