"""独立运行对账清理任务，适用于 cron 或单独的 worker 进程。

用法::

    python -m app.packages.drive.scripts.run_sweeper           # 执行一次
    python -m app.packages.drive.scripts.run_sweeper --loop    # 按配置的间隔循环执行
"""

import json
import sys
import time
from typing import Optional

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import get_logger, setup_logging
from app.packages.drive.db.init_db import init_db
from app.packages.drive.services.sweeper import sweeper

logger = get_logger("scripts.run_sweeper")


def main(loop: bool = False, interval: Optional[int] = None) -> int:
    setup_logging()
    init_db()
    interval = interval or get_settings().sweeper_interval_seconds
    while True:
        report = sweeper.run_once()
        print(json.dumps(report.to_dict(), ensure_ascii=False))
        if not loop:
            return 1 if report.failures else 0
        logger.info("Next sweep in %s seconds", interval)
        time.sleep(interval)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Run the upload reconciliation sweeper")
    parser.add_argument("--loop", action="store_true", help="keep running at the configured interval")
    parser.add_argument("--interval", type=int, default=None, help="override the interval in seconds")
    args = parser.parse_args()
    try:
        sys.exit(main(loop=args.loop, interval=args.interval))
    except KeyboardInterrupt:
        logger.info("Sweeper loop interrupted")
