"""Intelligence schema: users, catalog, transactions and scoring tables

Revision ID: intel_001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'intel_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('company_name', sa.String(255), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('is_buyer', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_seller', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('transaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_transaction_value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('last_transaction_date', sa.DateTime(), nullable=True),
        sa.Column('avg_fulfillment_score', sa.Float(), nullable=True),
        sa.Column('notification_prefs', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('price_per_unit', sa.Float(), nullable=True),
        sa.Column('quantity_available', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('marketplace_visible', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('match_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_products_seller_id', 'products', ['seller_id'])
    op.create_index('ix_products_category_visible', 'products', ['category', 'is_active', 'marketplace_visible'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('total_value', sa.Float(), nullable=False),
        sa.Column('transaction_date', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('actual_quantity_delivered', sa.Float(), nullable=True),
        sa.Column('delivery_on_time', sa.Boolean(), nullable=True),
        sa.Column('quality_as_expected', sa.Boolean(), nullable=True),
        sa.Column('outcome_notes', sa.Text(), nullable=True),
        sa.Column('outcome_recorded_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_transactions_buyer_id', 'transactions', ['buyer_id'])
    op.create_index('ix_transactions_seller_id', 'transactions', ['seller_id'])
    op.create_index('ix_transactions_product_id', 'transactions', ['product_id'])
    op.create_index('ix_transactions_buyer_date', 'transactions', ['buyer_id', 'transaction_date'])

    op.create_table(
        'bids',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='submitted'),
        sa.Column('ask_ratio', sa.Float(), nullable=True),
        sa.Column('proximity_score', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bids_buyer_id', 'bids', ['buyer_id'])
    op.create_index('ix_bids_product_id', 'bids', ['product_id'])

    op.create_table(
        'shortlist_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_shortlist_items_buyer_id', 'shortlist_items', ['buyer_id'])

    op.create_table(
        'product_views',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('viewed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_product_views_buyer_id', 'product_views', ['buyer_id'])

    op.create_table(
        'matches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('breakdown', sa.JSON(), nullable=True),
        sa.Column('no_signal', sa.JSON(), nullable=True),
        sa.Column('insights', sa.JSON(), nullable=True),
        sa.Column('weights_version', sa.String(50), nullable=False, server_default='match_v1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('buyer_id', 'product_id', name='uq_matches_buyer_product')
    )
    op.create_index('ix_matches_buyer_id', 'matches', ['buyer_id'])
    op.create_index('ix_matches_product_id', 'matches', ['product_id'])

    op.create_table(
        'predictions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_name', sa.String(100), nullable=False),
        sa.Column('predicted_date', sa.DateTime(), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('based_on_transactions', sa.Integer(), nullable=False),
        sa.Column('avg_interval_days', sa.Integer(), nullable=False),
        sa.Column('last_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('buyer_id', 'category_name', name='uq_predictions_buyer_category')
    )
    op.create_index('ix_predictions_buyer_id', 'predictions', ['buyer_id'])
    op.create_index('ix_predictions_predicted_date', 'predictions', ['predicted_date'])

    op.create_table(
        'propensity_scores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_name', sa.String(100), nullable=False, server_default='_all'),
        sa.Column('overall_score', sa.Float(), nullable=False),
        sa.Column('recency_score', sa.Float(), nullable=False),
        sa.Column('frequency_score', sa.Float(), nullable=False),
        sa.Column('monetary_score', sa.Float(), nullable=False),
        sa.Column('category_affinity', sa.Float(), nullable=False),
        sa.Column('engagement_score', sa.Float(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('buyer_id', 'category_name', name='uq_propensity_buyer_category')
    )
    op.create_index('ix_propensity_scores_buyer_id', 'propensity_scores', ['buyer_id'])
    op.create_index('ix_propensity_scores_expires_at', 'propensity_scores', ['expires_at'])

    op.create_table(
        'seller_scores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('fill_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('quality_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('delivery_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('pricing_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('overall_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('transactions_scored', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_calculated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'churn_signals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_name', sa.String(100), nullable=True),
        sa.Column('days_since_purchase', sa.Integer(), nullable=False),
        sa.Column('avg_interval_days', sa.Integer(), nullable=False),
        sa.Column('risk_level', sa.String(20), nullable=False),
        sa.Column('risk_score', sa.Float(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_reason', sa.String(100), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_churn_signals_buyer_id', 'churn_signals', ['buyer_id'])
    op.create_index('ix_churn_signals_active', 'churn_signals', ['buyer_id', 'category_name', 'is_active'])

    op.create_table(
        'market_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('category_name', sa.String(100), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('avg_price', sa.Float(), nullable=False),
        sa.Column('min_price', sa.Float(), nullable=False),
        sa.Column('max_price', sa.Float(), nullable=False),
        sa.Column('transaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_volume', sa.Float(), nullable=False, server_default='0'),
        sa.Column('rolling_avg_7d', sa.Float(), nullable=True),
        sa.Column('rolling_avg_30d', sa.Float(), nullable=True),
        sa.Column('price_change_7d', sa.Float(), nullable=True),
        sa.Column('price_change_30d', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('category_name', 'period_start', name='uq_market_prices_category_day')
    )
    op.create_index('ix_market_prices_category_name', 'market_prices', ['category_name'])


def downgrade() -> None:
    for table in (
        'market_prices',
        'churn_signals',
        'seller_scores',
        'propensity_scores',
        'predictions',
        'matches',
        'product_views',
        'shortlist_items',
        'bids',
        'transactions',
        'products',
        'notifications',
        'users',
    ):
        op.drop_table(table)
