"""Create batches and images tables

Revision ID: 001_batches_and_images
Revises:
Create Date: 2026-10-19

- batches: upload groups with an optional shared watermark
- images: one row per uploaded image with its processing status
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_batches_and_images'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'batches',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('watermark_key', sa.String(255), nullable=True),
        sa.Column('watermark_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'images',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('batch_id', sa.String(), sa.ForeignKey('batches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('key', sa.String(255), nullable=False),
        sa.Column('original_url', sa.String(), nullable=False),
        sa.Column('processed_url', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_index('ix_batches_created_at', 'batches', ['created_at'])
    op.create_index('ix_images_batch_id', 'images', ['batch_id'])
    op.create_index('ix_images_status', 'images', ['status'])


def downgrade() -> None:
    op.drop_index('ix_images_status', 'images')
    op.drop_index('ix_images_batch_id', 'images')
    op.drop_index('ix_batches_created_at', 'batches')
    op.drop_table('images')
    op.drop_table('batches')
