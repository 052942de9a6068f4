"""
Background scheduler for points expiration.

Runs LedgerEngine.expire_due on a fixed interval (every minute by default).
The engine itself holds no scheduling logic; this module is only the timer.
"""
import os
import logging

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only runs in production or when ENABLE_SCHEDULER=true.
    Only the main gunicorn process should run the scheduler.
    """
    global _scheduler, _flask_app

    _flask_app = app

    # Don't run scheduler in testing
    if app.config.get('TESTING'):
        logger.info('[Scheduler] Disabled in testing mode')
        return None

    if not (os.getenv('FLASK_ENV') == 'production' or os.getenv('ENABLE_SCHEDULER') == 'true'):
        logger.info('[Scheduler] Disabled (set FLASK_ENV=production or ENABLE_SCHEDULER=true)')
        return None

    # Prevent multiple scheduler instances (important for gunicorn workers)
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return None

    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    interval = app.config.get('EXPIRE_INTERVAL_SECONDS', 60)

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,  # Combine missed runs
            'max_instances': 1,  # Prevent concurrent runs
            'misfire_grace_time': interval
        }
    )

    _scheduler.add_job(
        run_points_expiration,
        trigger=IntervalTrigger(seconds=interval),
        id='points_expiration',
        name='Expire overdue point lots',
        replace_existing=True
    )

    _scheduler.start()
    os.environ['SCHEDULER_RUNNING'] = 'true'
    logger.info(f'[Scheduler] Started: points expiration every {interval}s')

    import atexit
    atexit.register(shutdown_scheduler)
    return _scheduler


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')
    _scheduler = None


def run_points_expiration():
    """
    Expire overdue lots for all users.

    Failures are logged, never raised: the next tick simply tries again.
    """
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return None

    with _flask_app.app_context():
        from ..services import get_ledger_engine
        from ..utils.exceptions import LedgerError

        engine = get_ledger_engine()
        try:
            summary = engine.expire_due(batch_size=_flask_app.config.get('EXPIRE_BATCH_SIZE'))
        except LedgerError as e:
            logger.error(f'[Scheduler] Points expiration failed: {e.message}')
            return None

        if summary.errors:
            logger.warning(
                f'[Scheduler] Points expiration finished with {len(summary.errors)} user errors'
            )
        return summary
