"""Create catalog, per-user annotation, exclusion and ranking tables.

Revision ID: 001_create_catalog_core_tables
Revises:
Create Date: 2026-10-17

This migration adds:
- stash_* catalog tables keyed by (id, stash_instance_id)
- junction tables and tag_parents, each carrying instance_id
- scene_ratings, gallery_ratings, watch_history
- user_hidden_entities, user_content_restrictions, user_excluded_entities
- user_entity_rankings
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_create_catalog_core_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JUNCTIONS = [
    ('scene_performers', 'scene_id', 'performer_id'),
    ('scene_tags', 'scene_id', 'tag_id'),
    ('scene_groups', 'scene_id', 'group_id'),
    ('scene_galleries', 'scene_id', 'gallery_id'),
    ('image_galleries', 'image_id', 'gallery_id'),
    ('gallery_performers', 'gallery_id', 'performer_id'),
    ('gallery_tags', 'gallery_id', 'tag_id'),
    ('clip_tags', 'clip_id', 'tag_id'),
    ('performer_tags', 'performer_id', 'tag_id'),
    ('studio_tags', 'studio_id', 'tag_id'),
    ('group_tags', 'group_id', 'tag_id'),
]

PER_USER_KEY = ['user_id', 'entity_type', 'entity_id', 'instance_id']


def _catalog_key():
    return [
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('stash_instance_id', sa.String(64), primary_key=True, server_default=''),
    ]


def _deleted_at():
    return sa.Column('deleted_at', sa.DateTime(timezone=True))


def upgrade() -> None:
    # ---- Catalog ----
    op.create_table(
        'stash_scenes',
        *_catalog_key(),
        sa.Column('title', sa.Text),
        sa.Column('code', sa.String(200)),
        sa.Column('date', sa.String(10)),
        sa.Column('studio_id', sa.String(64)),
        sa.Column('rating100', sa.Integer),
        sa.Column('duration', sa.Float),
        sa.Column('organized', sa.Boolean, server_default='false'),
        sa.Column('details', sa.Text),
        sa.Column('file_path', sa.Text),
        sa.Column('o_counter', sa.Integer, server_default='0'),
        sa.Column('play_count', sa.Integer, server_default='0'),
        sa.Column('play_duration', sa.Float, server_default='0'),
        sa.Column('stash_created_at', sa.DateTime(timezone=True)),
        sa.Column('stash_updated_at', sa.DateTime(timezone=True)),
        _deleted_at(),
    )
    op.create_index('idx_stash_scenes_studio', 'stash_scenes', ['studio_id', 'stash_instance_id'])
    op.create_index('idx_stash_scenes_created', 'stash_scenes', [sa.text('stash_created_at DESC')])
    op.create_index('idx_stash_scenes_deleted', 'stash_scenes', ['deleted_at'])

    op.create_table(
        'stash_performers',
        *_catalog_key(),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('disambiguation', sa.Text),
        sa.Column('gender', sa.String(32)),
        sa.Column('favorite', sa.Boolean, server_default='false'),
        sa.Column('scene_count', sa.Integer, server_default='0'),
        sa.Column('image_count', sa.Integer, server_default='0'),
        _deleted_at(),
    )
    op.create_index('idx_stash_performers_name', 'stash_performers', ['name'])

    op.create_table(
        'stash_studios',
        *_catalog_key(),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('parent_id', sa.String(64)),
        sa.Column('scene_count', sa.Integer, server_default='0'),
        _deleted_at(),
    )
    op.create_index('idx_stash_studios_parent', 'stash_studios', ['parent_id', 'stash_instance_id'])

    op.create_table(
        'stash_tags',
        *_catalog_key(),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('scene_count', sa.Integer, server_default='0'),
        _deleted_at(),
    )
    op.create_index('idx_stash_tags_name', 'stash_tags', ['name'])

    op.create_table(
        'tag_parents',
        sa.Column('tag_id', sa.String(64), primary_key=True),
        sa.Column('parent_id', sa.String(64), primary_key=True),
        sa.Column('instance_id', sa.String(64), primary_key=True, server_default=''),
    )
    op.create_index('idx_tag_parents_parent', 'tag_parents', ['parent_id', 'instance_id'])

    op.create_table(
        'stash_groups',
        *_catalog_key(),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('studio_id', sa.String(64)),
        _deleted_at(),
    )

    op.create_table(
        'stash_galleries',
        *_catalog_key(),
        sa.Column('title', sa.Text),
        sa.Column('details', sa.Text),
        sa.Column('folder_path', sa.Text),
        sa.Column('date', sa.String(10)),
        sa.Column('studio_id', sa.String(64)),
        sa.Column('rating100', sa.Integer),
        sa.Column('image_count', sa.Integer, server_default='0'),
        sa.Column('stash_created_at', sa.DateTime(timezone=True)),
        sa.Column('stash_updated_at', sa.DateTime(timezone=True)),
        _deleted_at(),
    )
    op.create_index('idx_stash_galleries_studio', 'stash_galleries', ['studio_id', 'stash_instance_id'])

    op.create_table(
        'stash_images',
        *_catalog_key(),
        sa.Column('title', sa.Text),
        sa.Column('file_path', sa.Text),
        sa.Column('studio_id', sa.String(64)),
        sa.Column('file_size', sa.BigInteger),
        _deleted_at(),
    )

    op.create_table(
        'stash_clips',
        *_catalog_key(),
        sa.Column('scene_id', sa.String(64), nullable=False),
        sa.Column('title', sa.Text),
        sa.Column('seconds', sa.Float, nullable=False),
        sa.Column('end_seconds', sa.Float),
        sa.Column('primary_tag_id', sa.String(64)),
        sa.Column('is_generated', sa.Boolean, server_default='false'),
        sa.Column('stash_created_at', sa.DateTime(timezone=True)),
        _deleted_at(),
    )
    op.create_index('idx_stash_clips_scene', 'stash_clips', ['scene_id', 'stash_instance_id'])
    op.create_index('idx_stash_clips_primary_tag', 'stash_clips', ['primary_tag_id'])

    for name, left, right in JUNCTIONS:
        extra = [sa.Column('scene_index', sa.Integer)] if name == 'scene_groups' else []
        op.create_table(
            name,
            sa.Column(left, sa.String(64), primary_key=True),
            sa.Column(right, sa.String(64), primary_key=True),
            sa.Column('instance_id', sa.String(64), primary_key=True, server_default=''),
            *extra,
        )
        op.create_index(f'idx_{name}_{right}', name, [right, 'instance_id'])

    # ---- Per-user annotations ----
    for name, entity_col in (('scene_ratings', 'scene_id'), ('gallery_ratings', 'gallery_id')):
        op.create_table(
            name,
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('user_id', sa.Integer, nullable=False),
            sa.Column(entity_col, sa.String(64), nullable=False),
            sa.Column('instance_id', sa.String(64), nullable=False, server_default=''),
            sa.Column('rating', sa.Integer),
            sa.Column('favorite', sa.Boolean, server_default='false'),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint('user_id', entity_col, 'instance_id', name=f'uq_{name}_user_{entity_col[:-3]}'),
        )

    op.create_table(
        'watch_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('scene_id', sa.String(64), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=False, server_default=''),
        sa.Column('play_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('play_duration', sa.Float, nullable=False, server_default='0'),
        sa.Column('o_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('resume_time', sa.Float),
        sa.Column('last_played_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('user_id', 'scene_id', 'instance_id', name='uq_watch_history_user_scene'),
    )
    op.create_index('idx_watch_history_user', 'watch_history', ['user_id'])

    # ---- Visibility ----
    op.create_table(
        'user_hidden_entities',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=False, server_default=''),
        sa.Column('hidden_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(*PER_USER_KEY, name='uq_user_hidden_entities_key'),
    )
    op.create_index('idx_user_hidden_entities_user', 'user_hidden_entities', ['user_id'])

    op.create_table(
        'user_content_restrictions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('mode', sa.String(10), nullable=False),
        sa.Column('entity_ids', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('restrict_empty', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'entity_type', name='uq_user_content_restrictions_type'),
        sa.CheckConstraint("mode IN ('INCLUDE', 'EXCLUDE')", name='ck_user_content_restrictions_mode'),
    )

    op.create_table(
        'user_excluded_entities',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=False, server_default=''),
        sa.Column('reason', sa.String(20), nullable=False),
        sa.UniqueConstraint(*PER_USER_KEY, name='uq_user_excluded_entities_key'),
    )
    op.create_index(
        'idx_user_excluded_lookup', 'user_excluded_entities', ['user_id', 'entity_type', 'entity_id']
    )

    # ---- Rankings ----
    op.create_table(
        'user_entity_rankings',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=False, server_default=''),
        sa.Column('percentile_rank', sa.Integer, nullable=False),
        sa.Column('engagement_score', sa.Float, nullable=False),
        sa.Column('engagement_rate', sa.Float, nullable=False),
        sa.Column('play_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('o_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('library_presence', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(*PER_USER_KEY, name='uq_user_entity_rankings_key'),
    )
    op.create_index(
        'idx_user_entity_rankings_pct', 'user_entity_rankings',
        ['user_id', 'entity_type', sa.text('percentile_rank DESC')],
    )


def downgrade() -> None:
    op.drop_table('user_entity_rankings')
    op.drop_table('user_excluded_entities')
    op.drop_table('user_content_restrictions')
    op.drop_table('user_hidden_entities')
    op.drop_table('watch_history')
    op.drop_table('gallery_ratings')
    op.drop_table('scene_ratings')
    for name, _, _ in reversed(JUNCTIONS):
        op.drop_table(name)
    for name in (
        'stash_clips', 'stash_images', 'stash_galleries', 'stash_groups',
        'tag_parents', 'stash_tags', 'stash_studios', 'stash_performers', 'stash_scenes',
    ):
        op.drop_table(name)
