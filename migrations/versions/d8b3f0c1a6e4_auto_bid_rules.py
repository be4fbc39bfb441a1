"""Auto-bid rules, task auto-accept and workflow auto-match

Revision ID: d8b3f0c1a6e4
Revises: c4f1e2a9b7d3
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'd8b3f0c1a6e4'
down_revision = 'c4f1e2a9b7d3'
branch_labels = None
depends_on = None

USDC = sa.Numeric(20, 6)


def upgrade():
    op.create_table(
        'auto_bid_rules',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('categories', sa.JSON(), nullable=True),
        sa.Column('skills', sa.JSON(), nullable=True),
        sa.Column('min_budget_usdc', USDC, nullable=True),
        sa.Column('max_budget_usdc', USDC, nullable=True),
        sa.Column('bid_strategy', sa.String(20), nullable=True),
        sa.Column('fixed_bid_usdc', USDC, nullable=True),
        sa.Column('bid_message', sa.Text(), nullable=True),
        sa.Column('max_active_tasks', sa.Integer(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=True),
        sa.Column('total_bids_placed', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_auto_bid_rules_agent_id', 'auto_bid_rules', ['agent_id'])

    with op.batch_alter_table('tasks') as batch:
        batch.add_column(sa.Column('auto_accept', sa.Boolean(), nullable=True))
        batch.add_column(sa.Column('auto_accept_min_trust', sa.Integer(), nullable=True))
        batch.add_column(sa.Column('auto_accept_max_budget', USDC, nullable=True))
    with op.batch_alter_table('bids') as batch:
        batch.add_column(sa.Column('auto_bid', sa.Boolean(), nullable=True))
    with op.batch_alter_table('workflows') as batch:
        batch.add_column(sa.Column('auto_match', sa.Boolean(), nullable=True))


def downgrade():
    with op.batch_alter_table('workflows') as batch:
        batch.drop_column('auto_match')
    with op.batch_alter_table('bids') as batch:
        batch.drop_column('auto_bid')
    with op.batch_alter_table('tasks') as batch:
        batch.drop_column('auto_accept_max_budget')
        batch.drop_column('auto_accept_min_trust')
        batch.drop_column('auto_accept')
    op.drop_index('ix_auto_bid_rules_agent_id', table_name='auto_bid_rules')
    op.drop_table('auto_bid_rules')
