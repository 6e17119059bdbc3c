"""Scheduler エントリポイント: python -m app.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core import clock
from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.redis import write_heartbeat
from app.scheduler.event_purger import purge_event_records
from app.scheduler.plan_change_applier import apply_pending_plan_changes
from app.scheduler.reconciliation_pass import run_reconciliation_pass

setup_logging(debug=settings.DEBUG, service="tenant-billing-scheduler")
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone=settings.TIMEZONE)


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def heartbeat():
    """ヘルスチェック用の生存記録"""
    try:
        write_heartbeat(clock.utcnow())
    except Exception as e:
        logger.error(f"ハートビート記録失敗: {e}")


def main():
    logger.info("Scheduler起動")

    # 毎分: ハートビート
    scheduler.add_job(
        heartbeat,
        CronTrigger(minute="*", timezone=settings.TIMEZONE),
        id="heartbeat",
        max_instances=1,
    )

    # 5分ごと: 照合待ちの解消
    scheduler.add_job(
        run_reconciliation_pass,
        CronTrigger(minute="*/5", timezone=settings.TIMEZONE),
        id="reconciliation_pass",
        max_instances=1,
    )

    # 5分ごと: ダウングレード予約適用
    scheduler.add_job(
        apply_pending_plan_changes,
        CronTrigger(minute="*/5", timezone=settings.TIMEZONE),
        id="plan_change_applier",
        max_instances=1,
    )

    # 03:30: イベント台帳の削除
    scheduler.add_job(
        purge_event_records,
        CronTrigger(hour=3, minute=30, timezone=settings.TIMEZONE),
        id="event_purger",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
