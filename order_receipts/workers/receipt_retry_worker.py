from __future__ import annotations

import argparse
import time

from order_receipts import create_app
from order_receipts.config import Config
from order_receipts.runtime import current_runtime


class WorkerConfig(Config):
    # This process is the scheduler; the in-process jobs stay off.
    RECEIPT_RETRY_ENABLED = False
    SHIPMENT_BATCH_ENABLED = False
    DB_AUTO_INIT = False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resend pending receipts from the local outbox.")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between sweeps.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    app = create_app(WorkerConfig)

    configured_interval = int(app.config.get("RECEIPT_RETRY_INTERVAL_SECONDS", 60) or 60)
    interval_seconds = max(1, int(args.interval or configured_interval))
    with app.app_context():
        sweeper = current_runtime().retry_sweeper

    while True:
        summary = sweeper.run_once() or {}
        app.logger.info(
            "receipt_retry_worker_batch_completed",
            extra={
                "scanned": summary.get("scanned", 0),
                "sent": summary.get("sent", 0),
                "requeued": summary.get("requeued", 0),
                "failed": summary.get("failed", 0),
            },
        )
        if args.once:
            break
        time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
