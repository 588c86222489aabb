"""Create farms, images and coordinates tables

Revision ID: 001_initial_tables
Revises:
Create Date: 2026-10-19

- farms: farm registry, owned by one user
- images: fetched satellite image metadata (insert-only)
- coordinates: submitted points with acquisition status
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_initial_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'farms',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('center_lat', sa.Float(), nullable=False),
        sa.Column('center_lng', sa.Float(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'images',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('bbox', sa.JSON(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'coordinates',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('client_event_id', sa.String(), nullable=False, index=True),
        sa.Column('farm_id', sa.String(), sa.ForeignKey('farms.id'), nullable=False, index=True),
        sa.Column('lat', sa.Float(), nullable=False),
        sa.Column('lng', sa.Float(), nullable=False),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='queued', index=True),
        sa.Column('fetched_image_id', sa.String(), sa.ForeignKey('images.id'), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('farm_id', 'client_event_id', name='uq_coordinates_farm_client_event'),
    )


def downgrade() -> None:
    op.drop_table('coordinates')
    op.drop_table('images')
    op.drop_table('farms')
