#!/usr/bin/env python
"""
Progressive Summary Job

Writes short AI summaries for items that have aged past the fresh window
without one. Tenants with ai_mode "off" or over budget are skipped.

Usage:
    python scripts/summary_job.py

Environment:
    ANTHROPIC_API_KEY - Required
    CLAUDE_SUMMARY_MODEL - Model override
"""

import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from wrangler.database import SessionLocal
from wrangler.services.ai_provider import AnthropicCompletionService
from wrangler.services.feed_service import list_tenant_ids
from wrangler.services.progressive_summary import run_progressive_summary

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logger = logging.getLogger('summary_job')


def main():
    """Main entry point for the summary job."""
    try:
        service = AnthropicCompletionService()
    except ValueError as e:
        logger.error(f"Cannot start summary job: {e}")
        return 1

    session = SessionLocal()
    try:
        tenant_ids = list_tenant_ids(session)
    finally:
        session.close()

    summarized = 0
    failed = 0
    for tenant_id in tenant_ids:
        try:
            stats = run_progressive_summary(tenant_id, completion_service=service)
            summarized += stats['summarized']
        except Exception as e:
            failed += 1
            logger.error(f"Summary job failed for tenant {tenant_id}: {e}", exc_info=True)

    logger.info(f"Summary job complete: {summarized} items summarized across "
                f"{len(tenant_ids)} tenants ({failed} failed)")
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
