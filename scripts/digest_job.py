#!/usr/bin/env python
"""
Digest Job

Runs on a schedule to build digests for every tenant.

Usage:
    python scripts/digest_job.py            # trigger-gated (backlog / away time)
    python scripts/digest_job.py --force    # generate for the current window

Exit codes:
    0 - Success
    1 - One or more tenants failed
"""

import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from wrangler.database import SessionLocal
from wrangler.services.digest import generate_digest, maybe_generate_digest
from wrangler.services.feed_service import list_tenant_ids

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logger = logging.getLogger('digest_job')


def main():
    """Main entry point for the digest job."""
    force = '--force' in sys.argv[1:]

    logger.info("=" * 60)
    logger.info(f"DIGEST JOB STARTING ({'forced' if force else 'trigger-gated'})")
    logger.info("=" * 60)

    session = SessionLocal()
    try:
        tenant_ids = list_tenant_ids(session)
    finally:
        session.close()

    stats = {'tenants': len(tenant_ids), 'generated': 0, 'skipped': 0, 'failed': 0}

    for tenant_id in tenant_ids:
        try:
            if force:
                digest = generate_digest(tenant_id)
            else:
                digest = maybe_generate_digest(tenant_id)
            if digest is None:
                stats['skipped'] += 1
            else:
                stats['generated'] += 1
                logger.info(f"Tenant {tenant_id}: {digest.title} ({len(digest.entries)} entries)")
        except Exception as e:
            stats['failed'] += 1
            logger.error(f"Digest failed for tenant {tenant_id}: {e}", exc_info=True)

    logger.info("=" * 60)
    logger.info("JOB SUMMARY")
    logger.info(f"Tenants:    {stats['tenants']}")
    logger.info(f"Generated:  {stats['generated']}")
    logger.info(f"Skipped:    {stats['skipped']}")
    logger.info(f"Failed:     {stats['failed']}")
    logger.info("=" * 60)

    return 1 if stats['failed'] else 0


if __name__ == '__main__':
    sys.exit(main())
