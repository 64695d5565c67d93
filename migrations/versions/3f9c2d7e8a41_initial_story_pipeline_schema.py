"""Initial story pipeline schema

Revision ID: 3f9c2d7e8a41
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9c2d7e8a41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk():
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _tenant_fk():
    return sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False)


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    feed_weight = postgresql.ENUM('prefer', 'neutral', 'deprioritize', name='feed_weight')
    feed_weight.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'tenants',
        _uuid_pk(),
        sa.Column('name', sa.String(200), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'folders',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('name', sa.String(200), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_folders_tenant_name')
    )

    op.create_table(
        'feeds',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('url', sa.String(2000), nullable=False),
        sa.Column('title', sa.String(500), nullable=False, server_default=''),
        sa.Column('site_url', sa.String(2000), nullable=True),
        sa.Column('folder_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('weight', postgresql.ENUM('prefer', 'neutral', 'deprioritize', name='feed_weight', create_type=False),
                  nullable=False, server_default='neutral'),
        sa.Column('muted', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('etag', sa.String(500), nullable=True),
        sa.Column('last_modified', sa.String(100), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('circuit_open_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blocked', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['folder_id'], ['folders.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'url', name='uq_feeds_tenant_url')
    )
    op.create_index('ix_feeds_tenant_last_polled', 'feeds', ['tenant_id', 'last_polled_at'], unique=False)

    op.create_table(
        'items',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('feed_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('guid', sa.String(2000), nullable=True),
        sa.Column('url', sa.String(2000), nullable=False),
        sa.Column('canonical_url', sa.String(2000), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('title', sa.String(1000), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('ai_summary', sa.Text(), nullable=True),
        sa.Column('author', sa.String(500), nullable=True),
        sa.Column('hero_image_url', sa.String(2000), nullable=True),
        sa.Column('simhash', sa.BigInteger(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['feed_id'], ['feeds.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('uq_items_feed_guid', 'items', ['tenant_id', 'feed_id', 'guid'], unique=True,
                    postgresql_where=sa.text('guid IS NOT NULL'))
    op.create_index('uq_items_feed_canonical', 'items',
                    ['tenant_id', 'feed_id', 'canonical_url', 'published_at'], unique=True,
                    postgresql_where=sa.text('guid IS NULL'))
    op.create_index('ix_items_tenant_published', 'items', ['tenant_id', 'published_at'], unique=False)

    op.create_table(
        'clusters',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('rep_item_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rep_item_id'], ['items.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_clusters_tenant_updated', 'clusters', ['tenant_id', 'updated_at'], unique=False)

    op.create_table(
        'cluster_members',
        sa.Column('cluster_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('item_id', postgresql.UUID(as_uuid=True), nullable=False),
        _tenant_fk(),
        sa.Column('added_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['cluster_id'], ['clusters.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['item_id'], ['items.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('cluster_id', 'item_id'),
        sa.UniqueConstraint('item_id', name='uq_cluster_members_item')
    )
    op.create_index('ix_cluster_members_tenant', 'cluster_members', ['tenant_id'], unique=False)

    op.create_table(
        'read_states',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('cluster_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('saved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('not_interested_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['cluster_id'], ['clusters.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('cluster_id')
    )
    op.create_index('ix_read_states_tenant', 'read_states', ['tenant_id'], unique=False)

    op.create_table(
        'digests',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('window_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('entries', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _created_at(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'window_start', name='uq_digests_tenant_window')
    )
    op.create_index('ix_digests_tenant_created', 'digests', ['tenant_id', 'created_at'], unique=False)

    op.create_table(
        'app_settings',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('data', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'key', name='uq_app_settings_tenant_key')
    )

    op.create_table(
        'ai_usage',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('estimated_cost_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('feature', sa.String(50), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ai_usage_tenant_created', 'ai_usage', ['tenant_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_ai_usage_tenant_created', table_name='ai_usage')
    op.drop_table('ai_usage')
    op.drop_table('app_settings')
    op.drop_index('ix_digests_tenant_created', table_name='digests')
    op.drop_table('digests')
    op.drop_index('ix_read_states_tenant', table_name='read_states')
    op.drop_table('read_states')
    op.drop_index('ix_cluster_members_tenant', table_name='cluster_members')
    op.drop_table('cluster_members')
    op.drop_index('ix_clusters_tenant_updated', table_name='clusters')
    op.drop_table('clusters')
    op.drop_index('ix_items_tenant_published', table_name='items')
    op.drop_index('uq_items_feed_canonical', table_name='items')
    op.drop_index('uq_items_feed_guid', table_name='items')
    op.drop_table('items')
    op.drop_index('ix_feeds_tenant_last_polled', table_name='feeds')
    op.drop_table('feeds')
    op.drop_table('folders')
    op.drop_table('tenants')

    sa.Enum(name='feed_weight').drop(op.get_bind(), checkfirst=True)
