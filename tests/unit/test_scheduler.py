"""
Unit tests for scheduler (snapshelf/scheduler.py).

Tests APScheduler configuration and job registration.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from freezegun import freeze_time
from apscheduler.jobstores.base import JobLookupError

from snapshelf.exceptions import ConfigurationError
from snapshelf.scheduler import BackupScheduler


def _callback(**kwargs):
    pass


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    @patch('snapshelf.scheduler.AsyncIOScheduler')
    def test_init_scheduler(self, mock_scheduler_class):
        """Test the underlying scheduler is configured with job defaults."""
        BackupScheduler()

        mock_scheduler_class.assert_called_once()
        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['timezone'] == 'UTC'
        assert call_kwargs['job_defaults'] == {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }

    def test_custom_timezone(self):
        scheduler = BackupScheduler(timezone='Europe/Berlin')

        assert scheduler.timezone == 'Europe/Berlin'


class TestRegisterSchedule:
    """Test registering and removing cron jobs."""

    def test_register_schedule(self):
        """Test a job is added under its id with the given kwargs."""
        scheduler = BackupScheduler()

        job_id = scheduler.register_schedule(
            '0 2 * * *', _callback, 'nightly', name='Nightly backup', kwargs={'full': True}
        )

        assert job_id == 'nightly'
        job = scheduler.scheduler.get_job('nightly')
        assert job.name == 'Nightly backup'
        assert job.kwargs == {'full': True}

    def test_register_replaces_existing(self):
        """Test registering the same id twice keeps a single job."""
        scheduler = BackupScheduler()

        scheduler.register_schedule('0 2 * * *', _callback, 'nightly')
        scheduler.register_schedule('30 3 * * *', _callback, 'nightly')

        jobs = scheduler.get_scheduled_jobs()
        assert len(jobs) == 1
        assert "hour='3'" in jobs[0]['trigger']

    @pytest.mark.parametrize("cron_expr", ["not a cron", "* * *", "61 * * * *"])
    def test_invalid_cron_expression(self, cron_expr):
        """Test invalid expressions raise ConfigurationError."""
        scheduler = BackupScheduler()

        with pytest.raises(ConfigurationError, match="Invalid cron expression"):
            scheduler.register_schedule(cron_expr, _callback, 'nightly')

    def test_unregister(self):
        scheduler = BackupScheduler()
        scheduler.register_schedule('0 2 * * *', _callback, 'nightly')

        assert scheduler.unregister('nightly') is True
        assert scheduler.get_scheduled_jobs() == []

    def test_unregister_missing_job(self):
        """Test removing an unknown job returns False instead of raising."""
        assert BackupScheduler().unregister('missing') is False

    @patch('snapshelf.scheduler.AsyncIOScheduler')
    def test_unregister_lookup_error(self, mock_scheduler_class):
        mock_scheduler_class.return_value.remove_job.side_effect = JobLookupError('nightly')

        assert BackupScheduler().unregister('nightly') is False


class TestNextRunTime:
    """Test next run time calculation."""

    @freeze_time("2024-01-15 10:00:00")
    def test_next_run_before_start(self):
        """Test pending jobs report the next fire time of their trigger."""
        scheduler = BackupScheduler()
        scheduler.register_schedule('0 2 * * *', _callback, 'nightly')

        next_run = scheduler.next_run_time('nightly')

        assert next_run == datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)

    def test_next_run_unknown_job(self):
        assert BackupScheduler().next_run_time('missing') is None

    @freeze_time("2024-01-15 10:00:00")
    def test_get_scheduled_jobs(self):
        scheduler = BackupScheduler()
        scheduler.register_schedule('0 2 * * *', _callback, 'nightly', name='Nightly backup')

        jobs = scheduler.get_scheduled_jobs()

        assert jobs[0]['id'] == 'nightly'
        assert jobs[0]['name'] == 'Nightly backup'
        assert jobs[0]['next_run'].startswith('2024-01-16T02:00:00')


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def test_start_scheduler(self, mock_scheduler):
        """Test starting a stopped scheduler."""
        BackupScheduler().start()

        mock_scheduler.start.assert_called_once()

    def test_start_already_running(self, mock_scheduler):
        """Test starting an already running scheduler does nothing."""
        mock_scheduler.running = True

        BackupScheduler().start()

        mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self, mock_scheduler):
        mock_scheduler.running = True

        BackupScheduler().stop()

        mock_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_stop_not_running(self, mock_scheduler):
        BackupScheduler().stop()

        mock_scheduler.shutdown.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_and_stop_on_event_loop(self):
        """Test a real AsyncIOScheduler starts and stops inside a running loop."""
        scheduler = BackupScheduler()
        scheduler.register_schedule('0 2 * * *', _callback, 'nightly')

        scheduler.start()
        assert scheduler.running is True
        assert scheduler.next_run_time('nightly') is not None

        scheduler.stop()
        # AsyncIOScheduler shuts down on the next loop iteration
        await asyncio.sleep(0)
        assert scheduler.running is False
