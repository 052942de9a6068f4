"""
Tests for the background points expiration scheduler.
"""
import pytest
from datetime import timedelta
from unittest.mock import patch, MagicMock

from pointsledger.utils import scheduler
from pointsledger.utils.exceptions import StorageFailureError


class TestInitScheduler:
    """Tests for init_scheduler."""

    def test_disabled_in_testing(self, app):
        """Test no background jobs start under the testing config."""
        assert scheduler.init_scheduler(app) is None

    def test_disabled_without_opt_in(self, app, monkeypatch):
        """Test the scheduler stays off outside production unless enabled."""
        monkeypatch.setitem(app.config, 'TESTING', False)
        monkeypatch.delenv('FLASK_ENV', raising=False)
        monkeypatch.delenv('ENABLE_SCHEDULER', raising=False)

        assert scheduler.init_scheduler(app) is None

    def test_starts_interval_job(self, app, monkeypatch):
        """Test the expiration job is registered on the configured interval."""
        monkeypatch.setitem(app.config, 'TESTING', False)
        monkeypatch.setitem(app.config, 'EXPIRE_INTERVAL_SECONDS', 15)
        monkeypatch.setenv('ENABLE_SCHEDULER', 'true')
        monkeypatch.delenv('SCHEDULER_RUNNING', raising=False)

        mock_scheduler = MagicMock()
        with patch('apscheduler.schedulers.background.BackgroundScheduler', return_value=mock_scheduler), \
                patch('atexit.register'):
            result = scheduler.init_scheduler(app)

        try:
            assert result is mock_scheduler
            mock_scheduler.start.assert_called_once()

            _, kwargs = mock_scheduler.add_job.call_args
            assert kwargs['id'] == 'points_expiration'
            assert kwargs['trigger'].interval == timedelta(seconds=15)
        finally:
            scheduler.shutdown_scheduler()

    def test_single_instance(self, app, monkeypatch):
        """Test a second process does not start another scheduler."""
        monkeypatch.setitem(app.config, 'TESTING', False)
        monkeypatch.setenv('ENABLE_SCHEDULER', 'true')
        monkeypatch.setenv('SCHEDULER_RUNNING', 'true')

        assert scheduler.init_scheduler(app) is None


class TestRunPointsExpiration:
    """Tests for the scheduled job body."""

    def test_expires_due_lots(self, app, engine, clock):
        """Test the job expires overdue lots using the app's engine."""
        with app.app_context():
            engine.earn(1, 'order_1', '40', 'electronics', lot_lifetime=timedelta(days=1))
        clock.advance(days=2)

        scheduler.init_scheduler(app)
        summary = scheduler.run_points_expiration()

        assert summary.points_expired == 40
        with app.app_context():
            assert engine.current_balance(1) == 0

    def test_failure_is_logged_not_raised(self, app, engine):
        """Test a failed run returns None so the next tick can retry."""
        scheduler.init_scheduler(app)

        with patch.object(engine, 'expire_due', side_effect=StorageFailureError('db down')):
            assert scheduler.run_points_expiration() is None
