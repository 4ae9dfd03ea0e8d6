"""重新计算所有公司的容量账本。

用法::

    python -m app.packages.drive.scripts.fix_allocations
"""

import json
import sys

from app.packages.drive.core.logger import get_logger, setup_logging
from app.packages.drive.db import session as db_session
from app.packages.drive.db.init_db import init_db
from app.packages.drive.services.quota_ledger import quota_ledger

logger = get_logger("scripts.fix_allocations")


def main() -> int:
    setup_logging()
    init_db()
    with db_session.SessionLocal() as db:
        reports = quota_ledger.fix_all(db)
    for report in reports:
        print(json.dumps(report, ensure_ascii=False, default=str))
    over_allocated = [r["companyId"] for r in reports if r["isOverAllocated"]]
    if over_allocated:
        logger.warning("Companies still over-allocated after fix: %s", over_allocated)
    over_used = [r["companyId"] for r in reports if r["isOverUsed"]]
    if over_used:
        logger.warning("Companies using more than their total storage: %s", over_used)
    logger.info("Recomputed allocations for %s companies", len(reports))
    return 0


if __name__ == "__main__":
    sys.exit(main())
