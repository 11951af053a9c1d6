"""Background scheduler for the cost pipeline.

Uses APScheduler to drive three triggers:
- Threshold sweep (hourly): evaluate every subject with an alerting policy
  and dispatch deduplicated alerts.
- Ledger sync (daily): pull the prior day's costs for every registry account.
- Retention cleanup (weekly): purge old ledger rows, alert events and job runs.

Each run is recorded in the job_runs table and logs how many units it
processed and how many failed. Per-unit failures (one subject, one account)
are isolated; a store failure aborts the run. A trigger that fails
MAX_CONSECUTIVE_FAILURES times in a row escalates to a critical log.
"""

import logging
import sqlite3
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from spendwatch.accounts.registry import AccountRegistry, load_registry
from spendwatch.alerts.dispatcher import DispatchOutcome, Dispatcher, DispatchResult
from spendwatch.alerts.ledger import AlertLedger
from spendwatch.api.config import Settings
from spendwatch.budgets import policies
from spendwatch.budgets.evaluator import evaluate
from spendwatch.core.errors import (
    ConsistencyError,
    ProviderError,
    StoreError,
    TransientProviderError,
    ValidationError,
)
from spendwatch.ledger import job_runs, records
from spendwatch.ledger.db import get_db_path, init_db, ledger_connection
from spendwatch.ledger.periods import to_iso, utc_now
from spendwatch.ledger.sync import SyncResult, sync_prior_day
from spendwatch.notifications.email import SmtpTransport
from spendwatch.providers.billing import HttpBillingProvider, MeteredBillingProvider

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3

JOB_SWEEP = "sweep"
JOB_SYNC = "sync"
JOB_CLEANUP = "cleanup"
JOB_NAMES = (JOB_SWEEP, JOB_SYNC, JOB_CLEANUP)


@dataclass
class RunResult:
    """Outcome of one trigger run."""

    job: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "ok"
        if self.processed > 0:
            return "partial"
        return "failed"


class CostScheduler:
    """Owns the APScheduler instance and the three trigger implementations.

    Args:
        settings: Application settings (crons, workers, retention, retry).
        registry: Account registry.
        provider: Billing provider client used by the daily sync.
        dispatcher: Alert dispatcher used by the sweep.
        db_path: Ledger database path (defaults to the configured data dir).
    """

    def __init__(
        self,
        settings: Settings,
        registry: AccountRegistry,
        provider: MeteredBillingProvider,
        dispatcher: Dispatcher,
        db_path: Path | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.provider = provider
        self.dispatcher = dispatcher
        self.db_path = db_path or get_db_path(settings.get_data_dir())
        self._scheduler: BackgroundScheduler | None = None
        self._failures: dict[str, int] = {}
        self._failures_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the cron triggers and start the background scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        scheduler = BackgroundScheduler(timezone="UTC")
        schedules = (
            (JOB_SWEEP, self.run_sweep, self.settings.sweep_cron, "Budget threshold sweep"),
            (JOB_SYNC, self.run_daily_sync, self.settings.sync_cron, "Daily ledger sync"),
            (JOB_CLEANUP, self.run_cleanup, self.settings.cleanup_cron, "Retention cleanup"),
        )
        jobs_registered = 0
        for job_id, func, cron, name in schedules:
            try:
                trigger = CronTrigger.from_crontab(cron, timezone="UTC")
            except ValueError as e:
                logger.error("Invalid cron expression for %s (%r): %s", job_id, cron, e)
                continue
            scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            jobs_registered += 1
            logger.info("Scheduled %s: %s", job_id, cron)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Background scheduler started with %d jobs", jobs_registered)

    def stop(self) -> None:
        """Stop the background scheduler without waiting for running jobs."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Background scheduler stopped")

    def close(self) -> None:
        """Stop the scheduler and release the provider's HTTP client."""
        self.stop()
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()

    # -----------------------------------------------------------------------
    # Failure tracking and run bookkeeping
    # -----------------------------------------------------------------------

    def _track_failure(self, job: str, error: str) -> None:
        with self._failures_lock:
            self._failures[job] = self._failures.get(job, 0) + 1
            count = self._failures[job]
        logger.error(
            "%s run failed (attempt %d/%d): %s", job, count, MAX_CONSECUTIVE_FAILURES, error
        )
        if count >= MAX_CONSECUTIVE_FAILURES:
            logger.critical(
                "%s has failed %d times consecutively. Manual intervention required.",
                job,
                count,
            )

    def _reset_failure(self, job: str) -> None:
        with self._failures_lock:
            self._failures.pop(job, None)

    def consecutive_failures(self, job: str) -> int:
        with self._failures_lock:
            return self._failures.get(job, 0)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            with ledger_connection(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Ledger store unavailable: {e}") from e

    @contextmanager
    def _job_run(self, job: str, started: datetime) -> Generator[RunResult, None, None]:
        """Record a run in job_runs and track consecutive failures."""
        result = RunResult(job=job)
        try:
            with self._connect() as conn:
                run_id = job_runs.start_run(conn, job, started)
        except StoreError as e:
            self._track_failure(job, str(e))
            raise
        try:
            yield result
        except (StoreError, sqlite3.Error) as e:
            self._track_failure(job, str(e))
            self._finish(run_id, result, "failed", str(e))
            if isinstance(e, StoreError):
                raise
            raise StoreError(f"{job} aborted: {e}") from e
        except Exception as e:
            self._track_failure(job, str(e))
            self._finish(run_id, result, "failed", str(e))
            raise

        self._finish(run_id, result, result.status)
        logger.info(
            "%s run finished: %d processed, %d failed, %d skipped",
            job,
            result.processed,
            result.failed,
            result.skipped,
        )
        if result.status == "failed":
            self._track_failure(job, f"all {result.failed} units failed")
        else:
            self._reset_failure(job)

    def _finish(
        self, run_id: int, result: RunResult, status: str, error: str | None = None
    ) -> None:
        try:
            with ledger_connection(self.db_path) as conn:
                job_runs.finish_run(
                    conn, run_id, utc_now(), result.processed, result.failed, status, error
                )
        except sqlite3.Error:
            logger.exception("Could not record %s run %d", result.job, run_id)

    # -----------------------------------------------------------------------
    # Triggers
    # -----------------------------------------------------------------------

    def _sweep_subject(self, subject_id: str, now: datetime) -> DispatchResult | None:
        with ledger_connection(self.db_path) as conn:
            status = evaluate(conn, subject_id, now)
            if status is None:
                return None
            return self.dispatcher.dispatch(conn, status, now)

    def run_sweep(self, now: datetime | None = None) -> RunResult:
        """Evaluate every alerting subject and dispatch alerts.

        Subjects are evaluated in parallel, one SQLite connection per worker.

        Raises:
            StoreError: If the ledger is unreachable.
        """
        now = now or utc_now()
        logger.info("Starting threshold sweep")
        with self._job_run(JOB_SWEEP, now) as result:
            with self._connect() as conn:
                subjects = policies.list_alerting_subjects(conn, now.date())

            store_error: sqlite3.Error | None = None
            with ThreadPoolExecutor(
                max_workers=self.settings.sweep_workers, thread_name_prefix="sweep"
            ) as pool:
                futures = {pool.submit(self._sweep_subject, s, now): s for s in subjects}
                for future in as_completed(futures):
                    subject_id = futures[future]
                    try:
                        outcome = future.result()
                    except ConsistencyError as e:
                        logger.warning("Skipping %s: %s", subject_id, e)
                        result.skipped += 1
                        result.details[subject_id] = "inconsistent"
                    except sqlite3.Error as e:
                        store_error = e
                    except Exception:
                        logger.exception("Sweep failed for subject %s", subject_id)
                        result.failed += 1
                        result.details[subject_id] = "error"
                    else:
                        if outcome is None:
                            result.skipped += 1
                            result.details[subject_id] = "no_policy"
                        elif outcome.outcome is DispatchOutcome.FAILED:
                            result.failed += 1
                            result.details[subject_id] = outcome.outcome.value
                        else:
                            result.processed += 1
                            result.details[subject_id] = outcome.outcome.value

            if store_error is not None:
                raise StoreError(f"Ledger store failed during sweep: {store_error}")
        return result

    def run_daily_sync(
        self, day: date | None = None, account_id: str | None = None
    ) -> RunResult:
        """Sync the day before ``day`` for every account (or one account).

        Accounts that stay unavailable after retries count as failed and do
        not stop the others.

        Raises:
            ValidationError: If account_id is not in the registry.
            StoreError: If the ledger is unreachable.
        """
        now = utc_now()
        day = day or now.date()
        accounts = self.registry.accounts
        if account_id is not None:
            account = self.registry.get_account(account_id)
            if account is None:
                raise ValidationError("account_id", f"unknown account {account_id!r}")
            accounts = [account]

        logger.info(
            "Starting ledger sync for %s (%d accounts)", day - timedelta(days=1), len(accounts)
        )
        with self._job_run(JOB_SYNC, now) as result:
            with self._connect() as conn:
                for account in accounts:
                    try:
                        synced: SyncResult = sync_prior_day(
                            conn,
                            self.provider,
                            self.registry,
                            account,
                            day,
                            max_attempts=self.settings.provider_max_attempts,
                            backoff_seconds=self.settings.provider_backoff_seconds,
                            now=now,
                        )
                    except (TransientProviderError, ProviderError) as e:
                        logger.error("Sync failed for account %s: %s", account.id, e)
                        result.failed += 1
                        result.details[account.id] = {"error": str(e)}
                        continue
                    except (StoreError, sqlite3.Error):
                        raise
                    except Exception as e:
                        logger.exception("Unexpected sync failure for account %s", account.id)
                        result.failed += 1
                        result.details[account.id] = {"error": str(e)}
                        continue
                    result.processed += 1
                    result.details[account.id] = {
                        "fetched": synced.fetched,
                        "written": synced.written,
                        "unchanged": synced.unchanged,
                        "rejected": synced.rejected,
                        "unassigned": synced.unassigned,
                        "total": str(synced.total_amount),
                    }

                if self.settings.daily_summary_enabled and account_id is None:
                    result.details["daily_summaries"] = self._send_daily_summaries(conn, now)
        return result

    def _send_daily_summaries(self, conn: sqlite3.Connection, now: datetime) -> dict[str, str]:
        sent: dict[str, str] = {}
        for subject_id in policies.list_alerting_subjects(conn, now.date()):
            try:
                outcome = self.dispatcher.dispatch_daily_summary(conn, subject_id, now)
            except ConsistencyError as e:
                logger.warning("Skipping daily summary for %s: %s", subject_id, e)
                continue
            sent[subject_id] = outcome.outcome.value
        return sent

    def run_cleanup(self, today: date | None = None) -> RunResult:
        """Purge ledger rows, alert events and job runs past their retention.

        Raises:
            StoreError: If the ledger is unreachable.
        """
        now = utc_now()
        today = today or now.date()
        logger.info("Starting retention cleanup")
        with self._job_run(JOB_CLEANUP, now) as result:
            with self._connect() as conn:
                purged = {
                    "cost_records": records.purge_older_than(
                        conn, self.settings.ledger_retention_months, today
                    ),
                    "alert_events": AlertLedger(conn).purge_older_than(
                        self.settings.alert_retention_months, today
                    ),
                    "job_runs": job_runs.purge_older_than(
                        conn, self.settings.job_run_retention_months, today
                    ),
                }
            result.processed = len(purged)
            result.details.update(purged)
        return result

    # -----------------------------------------------------------------------
    # Manual triggers and status
    # -----------------------------------------------------------------------

    def run_job_now(self, name: str) -> RunResult:
        """Run one trigger immediately (manual sweeps use the same dedup path).

        Raises:
            ValidationError: If the job name is unknown.
        """
        match name:
            case "sweep":
                return self.run_sweep()
            case "sync":
                return self.run_daily_sync()
            case "cleanup":
                return self.run_cleanup()
            case _:
                raise ValidationError("job", f"unknown job {name!r}, expected one of {JOB_NAMES}")

    def status(self) -> dict[str, Any]:
        """Scheduled jobs with next run times, plus the latest recorded runs."""
        jobs: list[dict[str, Any]] = []
        if self._scheduler is not None:
            for job in self._scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run": to_iso(next_run) if next_run else None,
                    }
                )

        last_runs: dict[str, Any] = {}
        with self._connect() as conn:
            for name in JOB_NAMES:
                run = job_runs.last_run(conn, name)
                last_runs[name] = (
                    {
                        "started_at": run.started_at,
                        "finished_at": run.finished_at,
                        "processed": run.processed,
                        "failed": run.failed,
                        "status": run.status,
                        "error": run.error_message,
                    }
                    if run
                    else None
                )

        return {
            "running": self.running,
            "jobs": jobs,
            "last_runs": last_runs,
            "consecutive_failures": {name: self.consecutive_failures(name) for name in JOB_NAMES},
        }


def build_cost_scheduler(settings: Settings, db_path: Path | None = None) -> CostScheduler:
    """Wire the registry, provider client, mail transport and dispatcher from settings.

    The ledger schema is initialized first. The returned scheduler is not
    started; its provider owns an HTTP client that the caller closes.
    """
    path = init_db(db_path or get_db_path(settings.get_data_dir()))
    registry = load_registry(settings.get_accounts_path())
    provider = HttpBillingProvider(
        settings.provider_base_url,
        token=settings.provider_token,
        timeout=settings.provider_timeout_seconds,
    )
    transport = SmtpTransport.from_settings(settings)
    if not transport.configured:
        logger.warning("SMTP is not configured; alerts will be recorded as undelivered")
    dispatcher = Dispatcher(
        registry,
        transport,
        cooldown=timedelta(hours=settings.alert_cooldown_hours),
        claim_lease=timedelta(minutes=settings.alert_claim_lease_minutes),
    )
    return CostScheduler(settings, registry, provider, dispatcher, db_path=path)
