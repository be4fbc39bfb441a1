from contextlib import contextmanager
from datetime import datetime
import uuid

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


@contextmanager
def atomic():
    """Run a block as one transaction: commit on success, roll back on any error."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class Account(db.Model):
    __tablename__ = 'accounts'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    kind = db.Column(db.String(10), nullable=False, default='agent')  # agent | client | human
    name = db.Column(db.String(200), nullable=False)
    wallet_address = db.Column(db.String(42), nullable=True, index=True)
    api_key_hash = db.Column(db.String(128), nullable=True, unique=True)
    roles = db.Column(db.JSON, default=lambda: [])
    skills = db.Column(db.JSON, default=lambda: [])
    webhook_url = db.Column(db.Text, nullable=True)
    webhook_secret = db.Column(db.String(64), nullable=True)
    tasks_completed = db.Column(db.Integer, default=0)
    total_earned = db.Column(db.Numeric(20, 6), default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Task(db.Model):
    __tablename__ = 'tasks'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), default='general')
    budget_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    posted_by_type = db.Column(db.String(10), nullable=False)
    posted_by_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False)
    required_skills = db.Column(db.JSON, default=lambda: [])
    # Statuses: open, in_progress, review, disputed, completed, cancelled, refunded
    status = db.Column(db.String(20), default='open', index=True)
    assigned_agent_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=True)
    escrow_tx_hash = db.Column(db.String(100), unique=True, nullable=True)
    deliverables = db.Column(db.JSON, nullable=True)
    deadline = db.Column(db.DateTime, nullable=True)
    bid_count = db.Column(db.Integer, default=0)
    # Accept the first qualifying auto-bid without poster action
    auto_accept = db.Column(db.Boolean, default=False)
    auto_accept_min_trust = db.Column(db.Integer, nullable=True)
    auto_accept_max_budget = db.Column(db.Numeric(20, 6), nullable=True)
    # Workflow back-reference (set when the task materializes a workflow step)
    workflow_id = db.Column(db.String(36), db.ForeignKey('workflows.id'), nullable=True, index=True)
    workflow_step = db.Column(db.Integer, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    bids = db.relationship('Bid', backref='task', lazy=True)

    __table_args__ = (
        db.Index('ix_tasks_status_updated', 'status', 'updated_at'),
    )


class Bid(db.Model):
    __tablename__ = 'bids'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False, index=True)
    agent_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False)
    amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    proposal = db.Column(db.Text, nullable=False)
    estimated_hours = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), default='pending')  # pending | accepted | rejected
    auto_bid = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('task_id', 'agent_id', name='uq_bid_task_agent'),
    )


class AutoBidRule(db.Model):
    """Standing instruction for an agent to bid on matching new tasks."""
    __tablename__ = 'auto_bid_rules'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    agent_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=True)
    categories = db.Column(db.JSON, default=lambda: [])
    skills = db.Column(db.JSON, default=lambda: [])
    min_budget_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    max_budget_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    bid_strategy = db.Column(db.String(20), default='match_budget')  # match_budget | undercut_10 | fixed_rate
    fixed_bid_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    bid_message = db.Column(db.Text, nullable=True)
    max_active_tasks = db.Column(db.Integer, default=3)
    enabled = db.Column(db.Boolean, default=True)
    total_bids_placed = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Transaction(db.Model):
    """Append-only fund movement record."""
    __tablename__ = 'transactions'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False, index=True)
    # escrow_deposit | escrow_release | platform_fee | refund
    type = db.Column(db.String(20), nullable=False)
    from_address = db.Column(db.String(42), nullable=True)
    to_address = db.Column(db.String(42), nullable=True)
    amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    tx_hash = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), default='confirmed')  # pending | confirmed | failed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Dispute(db.Model):
    __tablename__ = 'disputes'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False, index=True)
    raised_by_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False)
    raised_by_role = db.Column(db.String(10), nullable=False)  # poster | agent
    reason = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text, nullable=False)
    # {"poster": [EvidenceEntry...], "agent": [EvidenceEntry...]}
    evidence = db.Column(db.JSON, default=lambda: {"poster": [], "agent": []})
    # Statuses: open, reviewing, resolved, auto_resolved
    status = db.Column(db.String(20), default='open', index=True)
    response_deadline = db.Column(db.DateTime, nullable=False)
    resolution = db.Column(db.String(20), nullable=True)
    refund_percentage = db.Column(db.Integer, nullable=True)
    resolved_by = db.Column(db.String(36), nullable=True)  # account id or "auto"
    resolved_at = db.Column(db.DateTime, nullable=True)
    ai_verdict = db.Column(db.JSON, nullable=True)
    ai_judged_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Workflow(db.Model):
    __tablename__ = 'workflows'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    created_by_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    # Statuses: draft, running, paused, completed, cancelled
    status = db.Column(db.String(20), default='draft', index=True)
    current_step = db.Column(db.Integer, default=0)
    total_steps = db.Column(db.Integer, nullable=False)
    total_budget_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    spent_usdc = db.Column(db.Numeric(20, 6), default=0)
    auto_match = db.Column(db.Boolean, default=False)
    is_template = db.Column(db.Boolean, default=False)
    template_id = db.Column(db.String(36), nullable=True)
    usage_count = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    steps = db.relationship('WorkflowStep', backref='workflow', lazy=True,
                            order_by='WorkflowStep.position')


class WorkflowStep(db.Model):
    __tablename__ = 'workflow_steps'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(db.String(36), db.ForeignKey('workflows.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    title = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=False)
    required_skills = db.Column(db.JSON, default=lambda: [])
    category = db.Column(db.String(50), default='general')
    budget_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    input_description = db.Column(db.Text, nullable=True)
    output_description = db.Column(db.Text, nullable=True)
    output_format = db.Column(db.String(20), default='text')
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=True)
    # Statuses: pending, active, completed, failed, skipped
    status = db.Column(db.String(20), default='pending')
    output = db.Column(db.JSON, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('workflow_id', 'position', name='uq_step_position'),
    )


class TrustScore(db.Model):
    __tablename__ = 'trust_scores'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wallet_address = db.Column(db.String(64), nullable=False)
    role = db.Column(db.String(10), nullable=False)  # buyer | agent
    score = db.Column(db.Integer, default=50)
    tasks_completed = db.Column(db.Integer, default=0)
    tasks_disputed = db.Column(db.Integer, default=0)
    disputes_won = db.Column(db.Integer, default=0)
    disputes_lost = db.Column(db.Integer, default=0)
    total_volume_usdc = db.Column(db.Numeric(20, 6), default=0)
    flags = db.Column(db.JSON, default=lambda: [])
    last_dispute_lost_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('wallet_address', 'role', name='uq_trust_wallet_role'),
    )


class AbuseLog(db.Model):
    __tablename__ = 'abuse_logs'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wallet_address = db.Column(db.String(64), nullable=False, index=True)
    role = db.Column(db.String(10), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    details = db.Column(db.Text, nullable=True)
    severity = db.Column(db.String(10), default='low')  # low | medium | high
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Notification(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    account_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.Text, nullable=False)
    message = db.Column(db.Text, nullable=False)
    task_id = db.Column(db.String(36), nullable=True)
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class WebhookEvent(db.Model):
    """One outbound webhook attempt. Failed rows form the dead-letter log."""
    __tablename__ = 'webhook_events'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    account_id = db.Column(db.String(36), db.ForeignKey('accounts.id'), nullable=False, index=True)
    event_type = db.Column(db.String(30), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), default='pending')  # pending | delivered | failed
    attempts = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    delivered_at = db.Column(db.DateTime, nullable=True)


class RateLimitHit(db.Model):
    __tablename__ = 'rate_limit_hits'
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    scope = db.Column(db.String(30), nullable=False)
    identity = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.Float, nullable=False)  # epoch seconds

    __table_args__ = (
        db.Index('ix_rate_limit_scope_identity', 'scope', 'identity', 'created_at'),
    )
