# File: flows/etl_flows.py

from datetime import date
from typing import Optional

from prefect import flow, get_run_logger, task

from data_sources.rdbms import make_engine
from notifications.alerts import AlertChannel
from notifications.telegram import send_telegram_message, telegram_sink
from warehouse.config import Settings
from warehouse.orchestrator import Orchestrator
from warehouse.pipeline_defs import build_pipeline
from warehouse.schema import create_all


def build_orchestrator(settings: Optional[Settings] = None) -> Orchestrator:
    """
    Wire the core from the environment: engine, tables, the sales pipeline and
    an alert channel that forwards to Telegram when a bot is configured.
    """
    settings = settings or Settings.from_env()
    engine = make_engine(settings.database_url)
    create_all(engine)
    alerts = AlertChannel()
    if settings.telegram_bot_token and settings.telegram_chat_id:
        alerts.add_sink(telegram_sink(settings.telegram_bot_token, settings.telegram_chat_id))
    return Orchestrator(engine, build_pipeline(), settings=settings, alerts=alerts)


def _notify(message: str) -> None:
    try:
        send_telegram_message(message)
    except Exception:
        pass  # Suppress Telegram errors to avoid failing the flow


# ─────────────────────────────────────────────────────────────────────────────
@task(name="notify_start", retries=0, retry_delay_seconds=0, log_prints=True)
def notify_start(tick: str):
    """
    Send a “starting” message to Telegram before the tick runs.
    """
    _notify(f"🚀 Starting incremental load for tick {tick}")


# ─────────────────────────────────────────────────────────────────────────────
@task(name="run_tick_task", retries=1, retry_delay_seconds=300, log_prints=True)
def run_tick_task(tick: str):
    """
    Run the task DAG for one tick.  Raises when any task did not succeed, so
    Prefect retries it once after 5 minutes; the orchestrator skips what
    already succeeded for this tick.  Transient failures are already retried
    inside run_tick with backoff, so this retry mostly picks up rejected
    batches fixed upstream and tasks that were leased elsewhere; a BLOCKED
    task stays blocked until someone unblocks it.
    """
    logger = get_run_logger()
    report = build_orchestrator().run_tick(tick)
    for task_id, run in report.runs.items():
        if run is None:
            logger.info("%s: leased by another worker", task_id)
        else:
            logger.info("%s: %s (attempt %d, cursor %s → %s)", task_id, run.status.value,
                        run.attempt, run.cursor_before, run.cursor_after)
    if not report.succeeded:
        failed = ", ".join(report.failures())
        raise RuntimeError(f"tick {tick} did not complete: {failed}")
    return f"Incremental load completed for tick {tick}"


# ─────────────────────────────────────────────────────────────────────────────
@task(name="backfill_task", retries=0, retry_delay_seconds=0, log_prints=True)
def backfill_task(label: str, after_sequence_id: int, upto_sequence_id: Optional[int]):
    report = build_orchestrator().backfill(label, after_sequence_id=after_sequence_id,
                                           upto_sequence_id=upto_sequence_id)
    if not report.succeeded:
        raise RuntimeError(f"backfill {label} did not complete: {', '.join(report.failures())}")
    return f"Backfill {label} completed"


# ─────────────────────────────────────────────────────────────────────────────
@task(name="notify_success", retries=0, retry_delay_seconds=0, log_prints=True)
def notify_success(tick: str):
    _notify(f"✅ Incremental load succeeded for tick {tick}")


# ─────────────────────────────────────────────────────────────────────────────
@task(name="notify_failure", retries=0, retry_delay_seconds=0, log_prints=True)
def notify_failure(tick: str, error_msg: str):
    _notify(f"❌ Incremental load FAILED for tick {tick}\nError: {error_msg}")


# ─────────────────────────────────────────────────────────────────────────────
@flow(name="incremental_load_flow")
def incremental_load_flow(execution_date: Optional[date] = None):
    """
    1) Compute the tick from execution_date (YYYYMMDD).
    2) Send “starting” message to Telegram.
    3) Run the DAG for that tick (with retry).
    4) On success: send “success” message.
    5) On exception: send “failure” message and re‐raise.
    """
    execution_date = execution_date or date.today()
    tick = execution_date.strftime("%Y%m%d")

    notify_start(tick)

    try:
        msg = run_tick_task(tick)
        notify_success(tick)
        print(msg)
    except Exception as e:
        notify_failure(tick, str(e))
        raise


# ─────────────────────────────────────────────────────────────────────────────
@flow(name="backfill_flow")
def backfill_flow(label: str, after_sequence_id: int = 0, upto_sequence_id: Optional[int] = None):
    """
    Re-run the DAG over a historical ledger range without touching the live
    cursors.  Runs are recorded under mode="backfill", tick=label.
    """
    notify_start(f"backfill {label}")
    try:
        msg = backfill_task(label, after_sequence_id, upto_sequence_id)
        notify_success(f"backfill {label}")
        print(msg)
    except Exception as e:
        notify_failure(f"backfill {label}", str(e))
        raise


# ─────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    incremental_load_flow.serve(
        name="incremental-load-every-5m",
        interval=300,            # 300 seconds = 5 minutes
        tags=["bi_project"],
        pause_on_shutdown=False,
    )
