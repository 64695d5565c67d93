"""
Admin JSON routes for RSS Wrangler

Operator endpoints only; the reader-facing UI lives elsewhere.
- Health check
- Generate / fetch digests
- Manual cluster merge
- Circuit-breaker reset
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from flask import Blueprint, request, jsonify
from sqlalchemy import select

from wrangler.database import SessionLocal
from wrangler.models import Feed
from wrangler.services.clustering import ClusterMergeError, merge_clusters
from wrangler.services.digest import generate_digest, get_latest_digest
from wrangler.services.feed_service import reset_circuit

logger = logging.getLogger(__name__)

admin = Blueprint('admin', __name__)


def _parse_uuid(value: str):
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _digest_to_dict(digest) -> dict:
    return {
        'id': str(digest.id),
        'tenant_id': str(digest.tenant_id),
        'title': digest.title,
        'window_start': digest.window_start.isoformat(),
        'window_end': digest.window_end.isoformat(),
        'body': digest.body,
        'entries': digest.entries,
        'created_at': digest.created_at.isoformat() if digest.created_at else None,
    }


@admin.route('/health')
def health_check():
    """Health check endpoint."""
    return {'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()}


@admin.route('/admin/tenants/<tenant_id>/digests', methods=['POST'])
def admin_generate_digest(tenant_id: str):
    """Generate a digest for the current window now."""
    tenant_uuid = _parse_uuid(tenant_id)
    if tenant_uuid is None:
        return jsonify({'error': 'Invalid tenant ID'}), 400

    session = SessionLocal()
    try:
        digest = generate_digest(tenant_uuid, session=session)
        session.commit()
        if digest is None:
            return jsonify({'generated': False})
        return jsonify({'generated': True, 'digest': _digest_to_dict(digest)}), 201
    except Exception as e:
        session.rollback()
        logger.error(f"Digest generation failed for tenant {tenant_id}: {e}")
        return jsonify({'error': str(e)}), 500
    finally:
        session.close()


@admin.route('/admin/tenants/<tenant_id>/digests/latest')
def admin_latest_digest(tenant_id: str):
    """Most recent digest for a tenant."""
    tenant_uuid = _parse_uuid(tenant_id)
    if tenant_uuid is None:
        return jsonify({'error': 'Invalid tenant ID'}), 400

    session = SessionLocal()
    try:
        digest = get_latest_digest(session, tenant_uuid)
        if digest is None:
            return jsonify({'error': 'No digest yet'}), 404
        return jsonify(_digest_to_dict(digest))
    finally:
        session.close()


@admin.route('/admin/tenants/<tenant_id>/clusters/<cluster_id>/merge', methods=['POST'])
def admin_merge_clusters(tenant_id: str, cluster_id: str):
    """
    Merge another cluster into this one.

    Body: {"source_cluster_id": "<uuid>"}
    """
    tenant_uuid = _parse_uuid(tenant_id)
    target_uuid = _parse_uuid(cluster_id)
    payload = request.get_json(silent=True) or {}
    source_uuid = _parse_uuid(payload.get('source_cluster_id'))
    if tenant_uuid is None or target_uuid is None or source_uuid is None:
        return jsonify({'error': 'Invalid tenant or cluster ID'}), 400

    session = SessionLocal()
    try:
        cluster = merge_clusters(session, tenant_uuid, target_uuid, source_uuid)
        session.commit()
        logger.info(f"Admin merged cluster {source_uuid} into {target_uuid}")
        return jsonify({
            'success': True,
            'cluster_id': str(cluster.id),
            'size': cluster.size,
            'rep_item_id': str(cluster.rep_item_id),
        })
    except ClusterMergeError as e:
        session.rollback()
        return jsonify({'error': str(e)}), 400
    except LookupError as e:
        session.rollback()
        return jsonify({'error': str(e)}), 404
    except Exception as e:
        session.rollback()
        return jsonify({'error': str(e)}), 500
    finally:
        session.close()


@admin.route('/admin/tenants/<tenant_id>/feeds/<feed_id>/reset-circuit', methods=['POST'])
def admin_reset_circuit(tenant_id: str, feed_id: str):
    """Make a failing or blocked feed eligible for polling again."""
    tenant_uuid = _parse_uuid(tenant_id)
    feed_uuid = _parse_uuid(feed_id)
    if tenant_uuid is None or feed_uuid is None:
        return jsonify({'error': 'Invalid tenant or feed ID'}), 400

    session = SessionLocal()
    try:
        feed = session.execute(
            select(Feed).where(Feed.tenant_id == tenant_uuid, Feed.id == feed_uuid)
        ).scalar_one_or_none()
        if not feed:
            return jsonify({'error': 'Feed not found'}), 404

        reset_circuit(session, feed)
        session.commit()
        return jsonify({'success': True, 'consecutive_failures': 0})
    except Exception as e:
        session.rollback()
        return jsonify({'error': str(e)}), 500
    finally:
        session.close()
