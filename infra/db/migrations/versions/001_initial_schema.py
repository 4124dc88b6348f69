"""Initial schema for Spendwise

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    # Categories (per user; "Uncategorized" is the user's default)
    op.create_table(
        'categories',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Text, nullable=False, comment='Owner (from the auth proxy)'),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('description', sa.String(500)),
        sa.Column('color', sa.String(20), nullable=False, server_default='#3498db'),
        sa.Column('icon', sa.String(50), nullable=False, server_default='tag'),
        sa.Column('is_default', sa.Boolean, nullable=False, server_default='false', comment='True for "Uncategorized"'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_unique_constraint('uq_categories_user_name', 'categories', ['user_id', 'name'])

    # Expenses
    op.create_table(
        'expenses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Text, nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('description', sa.String(200), nullable=False),
        sa.Column('date', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('category_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('categories.id'), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False, server_default='cash'),
        sa.Column('location', sa.String(100)),
        sa.Column('tags', postgresql.ARRAY(sa.Text), nullable=False, server_default='{}'),
        sa.Column('ml_confidence', sa.Numeric(5, 4), nullable=False, server_default='0', comment='Prediction confidence when auto-categorized'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount >= 0.01', name='ck_expenses_amount_positive'),
        sa.CheckConstraint('ml_confidence >= 0 AND ml_confidence <= 1', name='ck_expenses_ml_confidence_range'),
    )

    # History queries: user's expenses newest first, and per-category counts
    op.create_index('idx_expenses_user_date', 'expenses', ['user_id', sa.text('date DESC')])
    op.create_index('idx_expenses_user_category', 'expenses', ['user_id', 'category_id'])


def downgrade():
    op.drop_index('idx_expenses_user_category', table_name='expenses')
    op.drop_index('idx_expenses_user_date', table_name='expenses')
    op.drop_table('expenses')
    op.drop_constraint('uq_categories_user_name', 'categories', type_='unique')
    op.drop_table('categories')
