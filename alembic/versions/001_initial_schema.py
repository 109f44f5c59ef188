"""Initial schema - dealers, store configs, team members, stock cache and accounting records

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=False), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'dealers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_dealers_user_id', 'dealers', ['user_id'], unique=True)
    op.create_index('ix_dealers_email', 'dealers', ['email'])

    op.create_table(
        'store_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('store_name', sa.String(), nullable=True),
        sa.Column('advertisement_id', sa.Text(), nullable=True),
        sa.Column('additional_advertisement_ids', sa.Text(), nullable=True),
        sa.Column('primary_advertisement_id', sa.String(), nullable=True),
        sa.Column('advertisement_ids', sa.Text(), nullable=True),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('api_secret', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_store_configs_email', 'store_configs', ['email'], unique=True)
    op.create_index('ix_store_configs_user_id', 'store_configs', ['user_id'])

    op.create_table(
        'team_members',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('store_owner_id', sa.String(length=36), sa.ForeignKey('dealers.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_team_members_store_owner_id', 'team_members', ['store_owner_id'])
    op.create_index('ix_team_members_user_id', 'team_members', ['user_id'], unique=True)
    op.create_index('ix_team_members_email', 'team_members', ['email'])

    op.create_table(
        'stock_cache',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('dealer_id', sa.String(length=36), sa.ForeignKey('dealers.id'), nullable=False),
        sa.Column('stock_id', sa.String(), nullable=False),
        sa.Column('advertiser_id', sa.String(), nullable=True),
        sa.Column('vehicle_data', JSON_TYPE, nullable=True),
        sa.Column('adverts_data', JSON_TYPE, nullable=True),
        sa.Column('metadata_raw', JSON_TYPE, nullable=True),
        sa.Column('advertiser_data', JSON_TYPE, nullable=True),
        sa.Column('features_data', JSON_TYPE, nullable=True),
        sa.Column('registration', sa.String(), nullable=True),
        sa.Column('make', sa.String(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('lifecycle_state', sa.String(), nullable=True),
        sa.Column('forecourt_price_gbp', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_price_gbp', sa.Numeric(12, 2), nullable=True),
        sa.Column('last_fetched_at', sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column('missing_upstream', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('dealer_id', 'stock_id', name='uq_stock_cache_dealer_stock'),
    )
    for column in ('dealer_id', 'stock_id', 'advertiser_id', 'registration', 'make', 'lifecycle_state'):
        op.create_index(f'ix_stock_cache_{column}', 'stock_cache', [column])

    op.create_table(
        'stock_sync_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('dealer_id', sa.String(length=36), sa.ForeignKey('dealers.id'), nullable=False),
        sa.Column('advertiser_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('pages_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_upserted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_marked_missing', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=False), nullable=True),
    )
    op.create_index('ix_stock_sync_logs_dealer_id', 'stock_sync_logs', ['dealer_id'])
    op.create_index('ix_stock_sync_logs_status', 'stock_sync_logs', ['status'])

    op.create_table(
        'inventory_details',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('dealer_id', sa.String(length=36), sa.ForeignKey('dealers.id'), nullable=False),
        sa.Column('stock_id', sa.String(), nullable=False),
        sa.Column('registration', sa.String(), nullable=True),
        sa.Column('date_of_purchase', sa.Date(), nullable=True),
        sa.Column('cost_of_purchase', sa.Numeric(12, 2), nullable=True),
        sa.Column('purchase_from', sa.String(), nullable=True),
        sa.Column('vat_scheme', sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('dealer_id', 'stock_id', name='uq_inventory_details_dealer_stock'),
    )
    op.create_index('ix_inventory_details_dealer_id', 'inventory_details', ['dealer_id'])
    op.create_index('ix_inventory_details_stock_id', 'inventory_details', ['stock_id'])

    op.create_table(
        'sale_details',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('dealer_id', sa.String(length=36), sa.ForeignKey('dealers.id'), nullable=False),
        sa.Column('stock_id', sa.String(), nullable=False),
        sa.Column('registration', sa.String(), nullable=True),
        sa.Column('sale_date', sa.Date(), nullable=True),
        sa.Column('sale_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('vat_scheme', sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('dealer_id', 'stock_id', name='uq_sale_details_dealer_stock'),
    )
    op.create_index('ix_sale_details_dealer_id', 'sale_details', ['dealer_id'])
    op.create_index('ix_sale_details_stock_id', 'sale_details', ['stock_id'])


def downgrade() -> None:
    op.drop_table('sale_details')
    op.drop_table('inventory_details')
    op.drop_table('stock_sync_logs')
    op.drop_table('stock_cache')
    op.drop_table('team_members')
    op.drop_table('store_configs')
    op.drop_table('dealers')
