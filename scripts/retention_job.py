#!/usr/bin/env python3
"""
Retention cleanup job.

Applies each tenant's retention settings: auto-marks stale unread clusters
as read and purges old read clusters and orphan items. Each tenant runs in
its own transaction.

Usage:
    python scripts/retention_job.py

Environment:
    DATABASE_URL - PostgreSQL connection string
"""

import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from wrangler.database import SessionLocal
from wrangler.services.feed_service import list_tenant_ids
from wrangler.services.retention import run_retention_cleanup

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
# Silence verbose SQLAlchemy logging
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def main():
    session = SessionLocal()
    try:
        tenant_ids = list_tenant_ids(session)
    finally:
        session.close()

    totals = {'auto_marked_read': 0, 'purged_clusters': 0, 'purged_items': 0}
    failed = 0

    for tenant_id in tenant_ids:
        try:
            stats = run_retention_cleanup(tenant_id)
        except Exception as e:
            failed += 1
            logger.error(f"Retention cleanup failed for tenant {tenant_id}: {e}")
            continue
        for key in totals:
            totals[key] += stats[key]

    logger.info(
        f"Retention complete for {len(tenant_ids)} tenants: "
        f"{totals['auto_marked_read']} marked read, "
        f"{totals['purged_clusters']} clusters purged, "
        f"{totals['purged_items']} items purged, {failed} failed"
    )
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
