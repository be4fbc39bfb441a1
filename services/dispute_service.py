"""
Dispute lifecycle: raise, evidence, resolve, advisory judging.

    open -> reviewing -> resolved
    open | reviewing -> auto_resolved   (deadline sweep)

Raising freezes the task (status ``disputed``). Resolution splits the escrow,
updates both parties' trust, and moves the task to completed or refunded.
"""
import logging
from datetime import datetime, timedelta

from models import db, atomic, Account, Dispute, Task
from core.payloads import (
    DISPUTE_REASONS, RESOLUTIONS, EvidenceEntry, EvidenceInput, parse_payload,
)
from services.errors import (
    ConflictError, DependencyError, ForbiddenError, NotFoundError, RateLimitedError, ValidationError,
)
from services.judge_guard import scan
from services.rate_limiter import enforce
from services.task_service import TaskService
from services.trust_service import trust_key

logger = logging.getLogger('relay.disputes')

ACTIVE_STATUSES = ('open', 'reviewing')
TRUST_ROLE = {'poster': 'buyer', 'agent': 'agent'}


def refund_for(resolution: str, refund_percentage=None) -> int:
    """Validate a resolution and return the poster's refund share."""
    if resolution not in RESOLUTIONS:
        raise ValidationError(f"resolution must be one of {', '.join(RESOLUTIONS)}")
    if resolution == 'full_refund':
        return 100
    if resolution == 'agent_paid':
        return 0
    if isinstance(refund_percentage, bool) or not isinstance(refund_percentage, int) \
            or not 0 <= refund_percentage <= 100:
        raise ValidationError("refund_percentage must be an integer in [0, 100] for partial_refund/split")
    return refund_percentage


class DisputeService:
    def __init__(self, tasks, trust, limiter, notifier, judge, response_hours=48,
                 max_active=3, cooldown_days=7, min_tasks=2):
        self.tasks = tasks
        self.trust = trust
        self.limiter = limiter
        self.notifier = notifier
        self.judge = judge
        self.response_hours = response_hours
        self.max_active = max_active
        self.cooldown_days = cooldown_days
        self.min_tasks = min_tasks

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def get(dispute_id: str) -> Dispute:
        dispute = db.session.get(Dispute, dispute_id)
        if not dispute:
            raise NotFoundError("Dispute not found")
        return dispute

    @staticmethod
    def active_for_task(task_id: str):
        return Dispute.query.filter(
            Dispute.task_id == task_id,
            Dispute.status.in_(ACTIVE_STATUSES),
        ).first()

    @staticmethod
    def party_role(task: Task, caller) -> str:
        if caller.id == task.posted_by_id:
            return 'poster'
        if caller.id == task.assigned_agent_id:
            return 'agent'
        return None

    def get_for_caller(self, dispute_id: str, caller) -> Dispute:
        dispute = self.get(dispute_id)
        task = db.session.get(Task, dispute.task_id)
        if not caller.is_admin and self.party_role(task, caller) is None:
            raise ForbiddenError("Only dispute parties can view this dispute")
        return dispute

    @staticmethod
    def list_for_task(task_id: str) -> list:
        TaskService.get_task(task_id)
        rows = Dispute.query.filter_by(task_id=task_id).order_by(Dispute.created_at.asc()).all()
        return [DisputeService.to_dict(d) for d in rows]

    # ------------------------------------------------------------------
    # Raise
    # ------------------------------------------------------------------

    def _check_abuse(self, raiser: Account):
        active = Dispute.query.filter(
            Dispute.raised_by_id == raiser.id,
            Dispute.status.in_(ACTIVE_STATUSES),
        ).count()
        if active >= self.max_active:
            raise ConflictError(f"You already have {active} active disputes (max {self.max_active})")

        last_loss = self.trust.last_dispute_loss(trust_key(raiser))
        if last_loss is not None:
            cooldown_end = last_loss + timedelta(days=self.cooldown_days)
            remaining = (cooldown_end - datetime.utcnow()).total_seconds()
            if remaining > 0:
                raise RateLimitedError("Dispute cooldown active after a lost dispute", int(remaining) + 1)

        posted_done = Task.query.filter_by(posted_by_id=raiser.id, status='completed').count()
        history = (raiser.tasks_completed or 0) + posted_done
        if history < self.min_tasks:
            raise ForbiddenError(
                f"At least {self.min_tasks} completed tasks are required to raise a dispute")

        enforce(self.limiter, 'dispute', raiser.id)

    def raise_dispute(self, task_id: str, caller, data: dict) -> Dispute:
        reason = data.get('reason')
        if reason not in DISPUTE_REASONS:
            raise ValidationError(f"reason must be one of {', '.join(DISPUTE_REASONS)}")
        description = data.get('description')
        if not isinstance(description, str) or not 10 <= len(description.strip()) <= 5000:
            raise ValidationError("description must be 10-5000 characters")
        evidence = None
        if data.get('evidence') is not None:
            evidence = parse_payload(EvidenceInput, data['evidence'])

        task = TaskService.get_task(task_id)
        role = self.party_role(task, caller)
        if role is None:
            raise ForbiddenError("Only the poster or the assigned agent can raise a dispute")
        if self.active_for_task(task_id):
            raise ConflictError("Task already has an active dispute")
        if task.status not in ('in_progress', 'review'):
            raise ConflictError(f"Task is {task.status}; disputes need in_progress or review")

        raiser = db.session.get(Account, caller.id)
        self._check_abuse(raiser)

        now = datetime.utcnow()
        with atomic():
            locked = TaskService.lock_task(task_id)
            if locked.status not in ('in_progress', 'review') or self.active_for_task(task_id):
                raise ConflictError("Task already has an active dispute")
            entries = {"poster": [], "agent": []}
            if evidence is not None:
                entries[role].append(self._entry(evidence, caller, now))
            dispute = Dispute(
                task_id=task_id,
                raised_by_id=caller.id,
                raised_by_role=role,
                reason=reason,
                description=description.strip(),
                evidence=entries,
                status='open',
                response_deadline=now + timedelta(hours=self.response_hours),
            )
            db.session.add(dispute)
            locked.status = 'disputed'
            self.trust.record_dispute_raised(trust_key(raiser), TRUST_ROLE[role])

        logger.info("Dispute %s raised on task %s by %s (%s): %s",
                    dispute.id, task_id, caller.id, role, reason)
        other = locked.assigned_agent_id if role == 'poster' else locked.posted_by_id
        self.notifier.notify(other, 'dispute_raised', locked, {
            "dispute_id": dispute.id,
            "reason": reason,
            "response_deadline": dispute.response_deadline.isoformat(),
        })
        return dispute

    @staticmethod
    def _entry(evidence: EvidenceInput, caller, now) -> dict:
        return EvidenceEntry(
            text=evidence.text,
            links=evidence.links,
            submitted_by=caller.id,
            submitted_at=now.isoformat(),
        ).model_dump()

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def submit_evidence(self, dispute_id: str, caller, data: dict) -> Dispute:
        evidence = parse_payload(EvidenceInput, data)
        dispute = self.get(dispute_id)
        task = db.session.get(Task, dispute.task_id)
        role = self.party_role(task, caller)
        if role is None:
            raise ForbiddenError("Only dispute parties can submit evidence")

        with atomic():
            locked = db.session.query(Dispute).filter_by(id=dispute_id).with_for_update().first()
            if locked.status not in ACTIVE_STATUSES:
                raise ConflictError(f"Dispute is {locked.status}")
            current = locked.evidence or {}
            updated = {
                "poster": list(current.get('poster') or []),
                "agent": list(current.get('agent') or []),
            }
            updated[role].append(self._entry(evidence, caller, datetime.utcnow()))
            locked.evidence = updated
            locked.status = 'reviewing'

        logger.info("Evidence added to dispute %s by %s (%s)", dispute_id, caller.id, role)
        return locked

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve_dispute(self, dispute_id: str, resolution: str, refund_percentage, resolved_by) -> dict:
        if not resolved_by.is_admin:
            raise ForbiddenError("admin role required to resolve disputes")
        return self.settle(dispute_id, resolution, refund_percentage, resolved_by.id, 'resolved')

    def settle(self, dispute_id: str, resolution: str, refund_percentage, resolved_by_id: str,
               final_status: str, guard=None) -> dict:
        """Apply a resolution. Shared by admin resolution and the deadline sweep.

        ``guard(dispute)`` runs on the locked, freshly read row and may raise
        ConflictError to abandon the settlement.
        """
        refund = refund_for(resolution, refund_percentage)

        with atomic():
            dispute = db.session.query(Dispute).filter_by(id=dispute_id) \
                .with_for_update().populate_existing().first()
            if not dispute:
                raise NotFoundError("Dispute not found")
            if dispute.status not in ACTIVE_STATUSES:
                raise ConflictError(f"Dispute already {dispute.status}")
            if guard is not None:
                guard(dispute)
            task = TaskService.lock_task(dispute.task_id)
            result, followups = self.tasks.settle_dispute_locked(task, refund)

            dispute.status = final_status
            dispute.resolution = resolution
            dispute.refund_percentage = refund
            dispute.resolved_by = resolved_by_id
            dispute.resolved_at = datetime.utcnow()
            self._record_outcome(dispute, task, refund)

        logger.info("Dispute %s %s: resolution=%s refund=%d%% by=%s task=%s->%s",
                    dispute_id, final_status, resolution, refund, resolved_by_id, task.id, task.status)
        payload = {"dispute_id": dispute_id, "resolution": resolution, "refund_percentage": refund}
        for party in (task.posted_by_id, task.assigned_agent_id):
            self.notifier.notify(party, 'dispute_resolved', task, payload)
        self.tasks.after_settlement(task, result, followups)
        return {**self.to_dict(dispute), "settlement": result, "task_status": task.status}

    def _record_outcome(self, dispute, task, refund: int):
        """More than half back to the poster is a poster win, less is an agent win."""
        if refund == 50:
            return
        poster = db.session.get(Account, task.posted_by_id)
        agent = db.session.get(Account, task.assigned_agent_id)
        poster_side = (trust_key(poster), 'buyer')
        agent_side = (trust_key(agent), 'agent')
        if refund > 50:
            self.trust.record_dispute_outcome(poster_side, agent_side, dispute.id)
        else:
            self.trust.record_dispute_outcome(agent_side, poster_side, dispute.id)

    # ------------------------------------------------------------------
    # Judge (advisory)
    # ------------------------------------------------------------------

    def build_judge_context(self, dispute: Dispute) -> dict:
        task = db.session.get(Task, dispute.task_id)
        poster = db.session.get(Account, task.posted_by_id)
        agent = db.session.get(Account, task.assigned_agent_id)
        evidence = dispute.evidence or {}

        texts = [dispute.description or '']
        for entries in evidence.values():
            texts.extend(e.get('text', '') for e in entries or [])
        deliverables = task.deliverables or {}
        texts.extend(str(v) for v in deliverables.values() if v)
        guard_hits = []
        for t in texts:
            guard_hits.extend(scan(t))

        return {
            "task": TaskService.to_dict(task),
            "dispute": self.to_dict(dispute),
            "poster_trust": self.trust.get_score(trust_key(poster), 'buyer'),
            "agent_trust": self.trust.get_score(trust_key(agent), 'agent'),
            "guard_hits": guard_hits,
        }

    def judge_dispute(self, dispute_id: str, caller) -> dict:
        dispute = self.get_for_caller(dispute_id, caller)
        if dispute.status not in ACTIVE_STATUSES:
            raise ConflictError(f"Dispute already {dispute.status}")

        context = self.build_judge_context(dispute)
        try:
            verdict = self.judge.judge(context)
        except Exception as e:
            logger.error("Judge failed for dispute %s: %s", dispute_id, e)
            raise DependencyError(f"Judge unavailable: {e}")

        with atomic():
            locked = db.session.query(Dispute).filter_by(id=dispute_id).with_for_update().first()
            if locked.status not in ACTIVE_STATUSES:
                raise ConflictError(f"Dispute already {locked.status}")
            locked.ai_verdict = verdict.model_dump()
            locked.ai_judged_at = datetime.utcnow()

        logger.info("Advisory verdict for dispute %s: %s refund=%d%% confidence=%d (not applied)",
                    dispute_id, verdict.recommendation, verdict.refund_percentage, verdict.confidence)
        return {"dispute_id": dispute_id, "verdict": verdict.model_dump(), "applied": False}

    def apply_verdict(self, dispute_id: str, caller) -> dict:
        """Explicit admin action: resolve using the stored advisory verdict."""
        if not caller.is_admin:
            raise ForbiddenError("admin role required to apply a verdict")
        dispute = self.get(dispute_id)
        if not dispute.ai_verdict:
            raise ConflictError("Dispute has no judge verdict to apply")
        verdict = dispute.ai_verdict
        logger.warning("Admin %s applying judge verdict to dispute %s: %s refund=%s%%",
                       caller.id, dispute_id, verdict['recommendation'], verdict['refund_percentage'])
        return self.settle(dispute_id, verdict['recommendation'], verdict['refund_percentage'],
                           caller.id, 'resolved')

    @staticmethod
    def to_dict(d: Dispute) -> dict:
        return {
            "dispute_id": d.id,
            "task_id": d.task_id,
            "raised_by_id": d.raised_by_id,
            "raised_by_role": d.raised_by_role,
            "reason": d.reason,
            "description": d.description,
            "evidence": d.evidence or {"poster": [], "agent": []},
            "status": d.status,
            "response_deadline": d.response_deadline.isoformat() if d.response_deadline else None,
            "resolution": d.resolution,
            "refund_percentage": d.refund_percentage,
            "resolved_by": d.resolved_by,
            "resolved_at": d.resolved_at.isoformat() if d.resolved_at else None,
            "ai_verdict": d.ai_verdict,
            "ai_judged_at": d.ai_judged_at.isoformat() if d.ai_judged_at else None,
            "created_at": d.created_at.isoformat() if d.created_at else None,
        }
