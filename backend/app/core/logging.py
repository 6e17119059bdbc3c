"""構造化ログ (1行1JSON)

購読・イベントの追跡用に business_id / subscription_id 等を
extra で渡すとトップレベルのキーとして出力する。
"""
import json
import logging
import sys
from datetime import datetime, timezone

# extra={...} で直接渡せる追跡用フィールド
CONTEXT_FIELDS = ("business_id", "subscription_id", "stripe_event_id", "marker_id")


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター"""

    def __init__(self, service: str = "tenant-billing"):
        super().__init__()
        self.service = service

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        # logger.error(..., extra={"extra_data": {...}}) で渡された構造化データ
        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, service: str = "tenant-billing"):
    """ロギング設定を初期化 (API・スケジューラ共通)"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # 外部ライブラリの過剰ログを抑制 (Stripeは要求ごとにINFOを出す)
    for name in ("sqlalchemy.engine", "stripe", "apscheduler", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """名前付きロガーを取得"""
    return logging.getLogger(name)
