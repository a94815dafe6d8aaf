"""
Schedule worker - runs the schedule clock that fires cron triggers.

To run:
    python -m flow_automation.worker

Or as a module:
    from flow_automation.worker import run_worker
    asyncio.run(run_worker(app))
"""
import asyncio
import logging
import sys

from dotenv import load_dotenv

from flow_automation.triggers import ScheduleClock

logger = logging.getLogger(__name__)


async def run_worker(app):
    """
    Run the schedule clock until cancelled. Must run inside app.app_context().

    Args:
        app: Flask app built by create_app()
    """
    dispatcher = app.extensions['flow_automation']['dispatcher']
    clock = ScheduleClock(dispatcher, tick_seconds=app.config['SCHEDULE_TICK_SECONDS'])

    logger.info(f"Schedule worker started, tick every {clock.tick_seconds}s")
    try:
        await clock.run()
    finally:
        clock.stop()


def main():
    """CLI entry point"""
    load_dotenv()

    from flow_automation import create_app
    app = create_app()

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    with app.app_context():
        try:
            asyncio.run(run_worker(app))
        except KeyboardInterrupt:
            logger.info("Worker interrupted by user")
        except Exception as e:
            logger.exception(f"Worker error: {e}")
            sys.exit(1)


if __name__ == "__main__":
    main()
