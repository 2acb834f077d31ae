"""Upload session and media item models migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create upload_sessions table
    op.create_table(
        'upload_sessions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(255), nullable=False),
        sa.Column('chunk_size', sa.Integer(), nullable=False),
        sa.Column('total_chunks', sa.Integer(), nullable=False),
        sa.Column('expected_chunk_hashes', sa.JSON(), nullable=False),
        sa.Column('received_chunks', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('assembled_path', sa.String(1024), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_upload_sessions_owner_id', 'upload_sessions', ['owner_id'])
    op.create_index('ix_upload_sessions_status', 'upload_sessions', ['status'])
    op.create_index('ix_upload_sessions_expires_at', 'upload_sessions', ['expires_at'])

    # Create media_items table
    op.create_table(
        'media_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('upload_session_id', sa.Uuid(), nullable=True),
        sa.Column('source_path', sa.String(1024), nullable=False),
        sa.Column('mime_type', sa.String(255), nullable=False),
        sa.Column('processing_status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('processing_progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('primary_video_url', sa.String(1024), nullable=True),
        sa.Column('adaptive_manifest_url', sa.String(1024), nullable=True),
        sa.Column('thumbnail_url', sa.String(1024), nullable=True),
        sa.Column('video_urls', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_media_items_owner_id', 'media_items', ['owner_id'])
    op.create_index('ix_media_items_upload_session_id', 'media_items', ['upload_session_id'])
    op.create_index('ix_media_items_processing_status', 'media_items', ['processing_status'])
    op.create_index('ix_media_items_failed_at', 'media_items', ['failed_at'])


def downgrade() -> None:
    op.drop_index('ix_media_items_failed_at', table_name='media_items')
    op.drop_index('ix_media_items_processing_status', table_name='media_items')
    op.drop_index('ix_media_items_upload_session_id', table_name='media_items')
    op.drop_index('ix_media_items_owner_id', table_name='media_items')
    op.drop_table('media_items')

    op.drop_index('ix_upload_sessions_expires_at', table_name='upload_sessions')
    op.drop_index('ix_upload_sessions_status', table_name='upload_sessions')
    op.drop_index('ix_upload_sessions_owner_id', table_name='upload_sessions')
    op.drop_table('upload_sessions')
