"""
Task lifecycle: create, deliver/complete, approve, cancel.

    open -> in_progress -> review -> completed
    open | in_progress -> cancelled
    in_progress | review -> disputed -> completed | refunded

Completion listeners (the workflow orchestrator) run inside the completing
transaction and may return follow-up callables, which run after commit.
"""
import logging
from datetime import datetime
from decimal import Decimal

from models import db, atomic, Account, Bid, Task
from core.money import fmt, to_usdc
from core.payloads import Deliverables, TaskSpec, parse_payload
from services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.trust_service import trust_key

logger = logging.getLogger('relay.tasks')

TERMINAL_STATUSES = ('completed', 'cancelled', 'refunded')


class TaskService:
    def __init__(self, escrow, trust, notifier, matcher=None, min_budget='0.1'):
        self.escrow = escrow
        self.trust = trust
        self.notifier = notifier
        self.matcher = matcher
        self.min_budget = to_usdc(min_budget)
        self.completion_listeners = []
        self.failure_listeners = []

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_task(self, caller, data: dict) -> Task:
        spec = parse_payload(TaskSpec, data)
        if spec.budget_usdc < self.min_budget:
            raise ValidationError(f"budget_usdc must be >= {self.min_budget}")
        with atomic():
            task = self.build_task(caller.kind, caller.id, spec.title, spec.description,
                                   spec.budget_usdc, spec.required_skills,
                                   category=spec.category, deadline=spec.deadline,
                                   auto_accept=spec.auto_accept,
                                   auto_accept_min_trust=spec.auto_accept_min_trust,
                                   auto_accept_max_budget=spec.auto_accept_max_budget)
        logger.info("Task %s created by %s (%s USDC%s)", task.id, caller.id, fmt(task.budget_usdc),
                    ", auto-accept" if task.auto_accept else "")
        if self.matcher is not None:
            self.matcher.process_new_task(task)
        return task

    @staticmethod
    def build_task(poster_kind, poster_id, title, description, budget, skills,
                   category='general', deadline=None, workflow_id=None, workflow_step=None,
                   auto_accept=False, auto_accept_min_trust=None, auto_accept_max_budget=None) -> Task:
        """Add a new open task to the session without committing."""
        task = Task(
            title=title,
            description=description,
            category=category or 'general',
            budget_usdc=Decimal(budget),
            posted_by_type=poster_kind,
            posted_by_id=poster_id,
            required_skills=list(skills or []),
            status='open',
            bid_count=0,
            deadline=deadline,
            workflow_id=workflow_id,
            workflow_step=workflow_step,
            auto_accept=bool(auto_accept),
            auto_accept_min_trust=auto_accept_min_trust,
            auto_accept_max_budget=auto_accept_max_budget,
        )
        db.session.add(task)
        db.session.flush()
        return task

    @staticmethod
    def get_task(task_id: str) -> Task:
        task = db.session.get(Task, task_id)
        if not task:
            raise NotFoundError("Task not found")
        return task

    @staticmethod
    def lock_task(task_id: str) -> Task:
        task = db.session.query(Task).filter_by(id=task_id).with_for_update().first()
        if not task:
            raise NotFoundError("Task not found")
        return task

    @staticmethod
    def list_tasks(status=None, skill=None, posted_by=None, assigned_to=None,
                   limit=50, offset=0):
        query = Task.query
        if status:
            query = query.filter(Task.status == status)
        if posted_by:
            query = query.filter(Task.posted_by_id == posted_by)
        if assigned_to:
            query = query.filter(Task.assigned_agent_id == assigned_to)
        tasks = query.order_by(Task.created_at.desc()).limit(5000).all()
        if skill:
            skill = skill.lower()
            tasks = [t for t in tasks if any(skill in s for s in (t.required_skills or []))]
        total = len(tasks)
        limit = min(max(1, limit), 200)
        offset = max(0, offset)
        return tasks[offset:offset + limit], total

    # ------------------------------------------------------------------
    # Agent transitions
    # ------------------------------------------------------------------

    def _check_assignee(self, task, caller):
        if task.assigned_agent_id != caller.id:
            raise ForbiddenError("Only the assigned agent can do this")
        if task.status == 'disputed':
            raise ConflictError("Task has an active dispute")
        if task.status != 'in_progress':
            raise ConflictError(f"Task is {task.status}, expected in_progress")

    def deliver(self, task_id: str, caller, data: dict) -> Task:
        deliverables = parse_payload(Deliverables, data)
        with atomic():
            task = self.lock_task(task_id)
            self._check_assignee(task, caller)
            task.deliverables = deliverables.model_dump(exclude_none=True)
            task.status = 'review'
            task.delivered_at = datetime.utcnow()
        logger.info("Task %s delivered by %s", task_id, caller.id)
        self.notifier.notify(task.posted_by_id, 'task_delivered', task, {"title": task.title})
        return task

    def complete(self, task_id: str, caller) -> Task:
        """Mark work done without a structured deliverable."""
        with atomic():
            task = self.lock_task(task_id)
            self._check_assignee(task, caller)
            task.status = 'review'
            task.delivered_at = datetime.utcnow()
        logger.info("Task %s marked complete by %s", task_id, caller.id)
        self.notifier.notify(task.posted_by_id, 'task_delivered', task, {"title": task.title})
        return task

    # ------------------------------------------------------------------
    # Poster transitions
    # ------------------------------------------------------------------

    def approve(self, task_id: str, caller) -> dict:
        with atomic():
            task = self.lock_task(task_id)
            if task.posted_by_id != caller.id:
                raise ForbiddenError("Only the poster can approve")
            if task.status == 'disputed':
                raise ConflictError("Task has an active dispute")
            if task.status != 'review':
                raise ConflictError(f"Task is {task.status}, expected review")
            result, followups = self.complete_locked(task)
        logger.info("Task %s approved by %s", task_id, caller.id)
        self.after_settlement(task, result, followups)
        return result

    def complete_locked(self, task) -> tuple:
        """Release escrow and mark completed. Caller holds the lock and commits.

        A task that was never funded completes without any payment.
        """
        if task.escrow_tx_hash:
            result = self.escrow.release(task)
            volume = Decimal(task.budget_usdc)
        else:
            result = self.escrow.close_unfunded(task, 0)
            volume = Decimal('0')
        task.status = 'completed'
        self._record_trust(task, volume)
        followups = self._fire(self.completion_listeners, task)
        return result, followups

    def settle_dispute_locked(self, task, refund_percentage: int) -> tuple:
        """Split escrow per a dispute ruling and move the task to its terminal state."""
        if not task.escrow_tx_hash:
            result = self.escrow.close_unfunded(task, refund_percentage)
            agent_share = refund_percentage < 100
        elif refund_percentage == 0:
            result = self.escrow.release(task)
            agent_share = True
        else:
            result = self.escrow.refund(task, refund_percentage)
            agent_share = Decimal(result['payout']) > 0
        if agent_share:
            task.status = 'completed'
            self._record_trust(task, Decimal(result['payout']) + Decimal(result['fee']))
            followups = self._fire(self.completion_listeners, task)
        else:
            task.status = 'refunded'
            followups = self._fire(self.failure_listeners, task)
        return result, followups

    def after_settlement(self, task, result: dict, followups):
        """Post-commit: payment notice plus any listener follow-ups."""
        if task.assigned_agent_id and Decimal(result.get('payout', 0)) > 0:
            self.notifier.notify(task.assigned_agent_id, 'payment_received', task,
                                 {"amount": result['payout']})
        self.run_followups(followups)

    def cancel(self, task_id: str, caller) -> Task:
        with atomic():
            task = self.lock_task(task_id)
            if task.posted_by_id != caller.id:
                raise ForbiddenError("Only the poster can cancel")
            if task.status == 'disputed':
                raise ConflictError("Task has an active dispute")
            if task.status not in ('open', 'in_progress'):
                raise ConflictError(f"Task is {task.status} and cannot be cancelled")
            if task.delivered_at or task.deliverables:
                raise ConflictError("Work has been delivered; raise a dispute instead")
            if task.escrow_tx_hash:
                self.escrow.refund(task, 100)
            Bid.query.filter_by(task_id=task.id, status='pending').update(
                {'status': 'rejected'}, synchronize_session='fetch')
            task.status = 'cancelled'
            followups = self._fire(self.failure_listeners, task)
        logger.info("Task %s cancelled by %s", task_id, caller.id)
        self.run_followups(followups)
        return task

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_trust(self, task, volume: Decimal):
        agent = db.session.get(Account, task.assigned_agent_id)
        poster = db.session.get(Account, task.posted_by_id)
        if agent:
            self.trust.record_completion(trust_key(agent), 'agent', volume)
        if poster:
            self.trust.record_completion(trust_key(poster), 'buyer', volume)

    @staticmethod
    def _fire(listeners, task) -> list:
        followups = []
        for listener in listeners:
            result = listener(task)
            if result:
                followups.extend(result)
        return followups

    @staticmethod
    def run_followups(followups):
        for fn in followups or ():
            try:
                fn()
            except Exception as e:
                db.session.rollback()
                logger.error("Post-commit follow-up failed: %s", e)

    @staticmethod
    def to_dict(task: Task, include_deliverables: bool = True) -> dict:
        d = {
            "task_id": task.id,
            "title": task.title,
            "description": task.description,
            "category": task.category,
            "budget_usdc": fmt(task.budget_usdc),
            "posted_by_type": task.posted_by_type,
            "posted_by_id": task.posted_by_id,
            "required_skills": task.required_skills or [],
            "status": task.status,
            "assigned_agent_id": task.assigned_agent_id,
            "escrow_tx_hash": task.escrow_tx_hash,
            "deadline": task.deadline.isoformat() if task.deadline else None,
            "bid_count": task.bid_count or 0,
            "auto_accept": bool(task.auto_accept),
            "auto_accept_min_trust": task.auto_accept_min_trust,
            "auto_accept_max_budget": fmt(task.auto_accept_max_budget),
            "workflow_id": task.workflow_id,
            "workflow_step": task.workflow_step,
            "delivered_at": task.delivered_at.isoformat() if task.delivered_at else None,
            "created_at": task.created_at.isoformat() if task.created_at else None,
            "updated_at": task.updated_at.isoformat() if task.updated_at else None,
        }
        if include_deliverables:
            d["deliverables"] = task.deliverables
        return d
