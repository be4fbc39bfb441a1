"""Initial relay schema: accounts, tasks, bids, escrow ledger, disputes,
workflows, trust, notifications, webhooks, rate limits

Revision ID: c4f1e2a9b7d3
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'c4f1e2a9b7d3'
down_revision = None
branch_labels = None
depends_on = None

USDC = sa.Numeric(20, 6)


def upgrade():
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('wallet_address', sa.String(42), nullable=True),
        sa.Column('api_key_hash', sa.String(128), nullable=True, unique=True),
        sa.Column('roles', sa.JSON(), nullable=True),
        sa.Column('skills', sa.JSON(), nullable=True),
        sa.Column('webhook_url', sa.Text(), nullable=True),
        sa.Column('webhook_secret', sa.String(64), nullable=True),
        sa.Column('tasks_completed', sa.Integer(), nullable=True),
        sa.Column('total_earned', USDC, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_accounts_wallet_address', 'accounts', ['wallet_address'])

    op.create_table(
        'workflows',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('created_by_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('current_step', sa.Integer(), nullable=True),
        sa.Column('total_steps', sa.Integer(), nullable=False),
        sa.Column('total_budget_usdc', USDC, nullable=False),
        sa.Column('spent_usdc', USDC, nullable=True),
        sa.Column('is_template', sa.Boolean(), nullable=True),
        sa.Column('template_id', sa.String(36), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_workflows_status', 'workflows', ['status'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('budget_usdc', USDC, nullable=False),
        sa.Column('posted_by_type', sa.String(10), nullable=False),
        sa.Column('posted_by_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('required_skills', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('assigned_agent_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=True),
        sa.Column('escrow_tx_hash', sa.String(100), nullable=True, unique=True),
        sa.Column('deliverables', sa.JSON(), nullable=True),
        sa.Column('deadline', sa.DateTime(), nullable=True),
        sa.Column('bid_count', sa.Integer(), nullable=True),
        sa.Column('workflow_id', sa.String(36), sa.ForeignKey('workflows.id'), nullable=True),
        sa.Column('workflow_step', sa.Integer(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_workflow_id', 'tasks', ['workflow_id'])
    # Auto-approve sweep
    op.create_index('ix_tasks_status_updated', 'tasks', ['status', 'updated_at'])

    op.create_table(
        'bids',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('amount_usdc', USDC, nullable=False),
        sa.Column('proposal', sa.Text(), nullable=False),
        sa.Column('estimated_hours', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('task_id', 'agent_id', name='uq_bid_task_agent'),
    )
    op.create_index('ix_bids_task_id', 'bids', ['task_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('from_address', sa.String(42), nullable=True),
        sa.Column('to_address', sa.String(42), nullable=True),
        sa.Column('amount_usdc', USDC, nullable=False),
        sa.Column('tx_hash', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_transactions_task_id', 'transactions', ['task_id'])

    op.create_table(
        'disputes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('raised_by_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('raised_by_role', sa.String(10), nullable=False),
        sa.Column('reason', sa.String(30), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('evidence', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('response_deadline', sa.DateTime(), nullable=False),
        sa.Column('resolution', sa.String(20), nullable=True),
        sa.Column('refund_percentage', sa.Integer(), nullable=True),
        sa.Column('resolved_by', sa.String(36), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('ai_verdict', sa.JSON(), nullable=True),
        sa.Column('ai_judged_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_disputes_task_id', 'disputes', ['task_id'])
    op.create_index('ix_disputes_status', 'disputes', ['status'])

    op.create_table(
        'workflow_steps',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workflow_id', sa.String(36), sa.ForeignKey('workflows.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('required_skills', sa.JSON(), nullable=True),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('budget_usdc', USDC, nullable=False),
        sa.Column('input_description', sa.Text(), nullable=True),
        sa.Column('output_description', sa.Text(), nullable=True),
        sa.Column('output_format', sa.String(20), nullable=True),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.UniqueConstraint('workflow_id', 'position', name='uq_step_position'),
    )
    op.create_index('ix_workflow_steps_workflow_id', 'workflow_steps', ['workflow_id'])

    op.create_table(
        'trust_scores',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('wallet_address', sa.String(64), nullable=False),
        sa.Column('role', sa.String(10), nullable=False),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('tasks_completed', sa.Integer(), nullable=True),
        sa.Column('tasks_disputed', sa.Integer(), nullable=True),
        sa.Column('disputes_won', sa.Integer(), nullable=True),
        sa.Column('disputes_lost', sa.Integer(), nullable=True),
        sa.Column('total_volume_usdc', USDC, nullable=True),
        sa.Column('flags', sa.JSON(), nullable=True),
        sa.Column('last_dispute_lost_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('wallet_address', 'role', name='uq_trust_wallet_role'),
    )

    op.create_table(
        'abuse_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('wallet_address', sa.String(64), nullable=False),
        sa.Column('role', sa.String(10), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('severity', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_abuse_logs_wallet_address', 'abuse_logs', ['wallet_address'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('task_id', sa.String(36), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_notifications_account_id', 'notifications', ['account_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_webhook_events_account_id', 'webhook_events', ['account_id'])

    op.create_table(
        'rate_limit_hits',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('scope', sa.String(30), nullable=False),
        sa.Column('identity', sa.String(100), nullable=False),
        sa.Column('created_at', sa.Float(), nullable=False),
    )
    op.create_index('ix_rate_limit_scope_identity', 'rate_limit_hits', ['scope', 'identity', 'created_at'])


def downgrade():
    op.drop_index('ix_rate_limit_scope_identity', table_name='rate_limit_hits')
    op.drop_table('rate_limit_hits')
    op.drop_index('ix_webhook_events_account_id', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_notifications_account_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_abuse_logs_wallet_address', table_name='abuse_logs')
    op.drop_table('abuse_logs')
    op.drop_table('trust_scores')
    op.drop_index('ix_workflow_steps_workflow_id', table_name='workflow_steps')
    op.drop_table('workflow_steps')
    op.drop_index('ix_disputes_status', table_name='disputes')
    op.drop_index('ix_disputes_task_id', table_name='disputes')
    op.drop_table('disputes')
    op.drop_index('ix_transactions_task_id', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('ix_bids_task_id', table_name='bids')
    op.drop_table('bids')
    op.drop_index('ix_tasks_status_updated', table_name='tasks')
    op.drop_index('ix_tasks_workflow_id', table_name='tasks')
    op.drop_index('ix_tasks_status', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_workflows_status', table_name='workflows')
    op.drop_table('workflows')
    op.drop_index('ix_accounts_wallet_address', table_name='accounts')
    op.drop_table('accounts')
