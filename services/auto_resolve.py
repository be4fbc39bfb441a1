"""
Deadline sweeps: auto-approve stale reviews and settle unanswered disputes.

Safe to run concurrently or repeatedly. Every entity is re-read under a row
lock and skipped if another run already moved it.
"""
import logging
from datetime import datetime, timedelta

from models import db, atomic, Dispute, Task
from services.dispute_service import ACTIVE_STATUSES
from services.errors import ConflictError, ServiceError
from services.task_service import TaskService

logger = logging.getLogger('relay.auto_resolve')

BOTH_RESPONDED = 'both_parties_responded'


def party_responses(dispute: Dispute) -> tuple:
    """(poster_responded, agent_responded).

    The raiser is on record through the dispute itself; the other party
    responds by filing evidence.
    """
    evidence = dispute.evidence or {}
    poster = dispute.raised_by_role == 'poster' or bool(evidence.get('poster'))
    agent = dispute.raised_by_role == 'agent' or bool(evidence.get('agent'))
    return poster, agent


def default_ruling(poster_responded: bool, agent_responded: bool, no_response_pct: int):
    if poster_responded and not agent_responded:
        return 'full_refund', 100
    if agent_responded and not poster_responded:
        return 'agent_paid', 0
    return 'split', no_response_pct


class AutoResolver:
    def __init__(self, tasks, disputes, auto_approve_hours=72, no_response_refund_percent=50):
        self.tasks = tasks
        self.disputes = disputes
        self.auto_approve_hours = auto_approve_hours
        self.no_response_refund_percent = no_response_refund_percent

    @classmethod
    def from_config(cls, tasks, disputes, config):
        return cls(
            tasks, disputes,
            auto_approve_hours=config.get('AUTO_APPROVE_HOURS', 72),
            no_response_refund_percent=config.get('NO_RESPONSE_REFUND_PERCENT', 50),
        )

    def run_sweep(self, now=None) -> dict:
        now = now or datetime.utcnow()
        summary = {
            "ran_at": now.isoformat(),
            "auto_approved": [],
            "disputes_resolved": [],
            "skipped": [],
            "errors": [],
        }
        self._sweep_reviews(now, summary)
        self._sweep_disputes(now, summary)
        logger.info("Auto-resolve sweep: approved=%d disputes=%d skipped=%d errors=%d",
                    len(summary['auto_approved']), len(summary['disputes_resolved']),
                    len(summary['skipped']), len(summary['errors']))
        return summary

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def _is_stale(self, task, cutoff) -> bool:
        reference = task.delivered_at or task.updated_at
        return reference is not None and reference < cutoff

    def _sweep_reviews(self, now, summary):
        cutoff = now - timedelta(hours=self.auto_approve_hours)
        candidates = Task.query.filter(
            Task.status == 'review',
            Task.escrow_tx_hash.isnot(None),
        ).all()
        ids = [t.id for t in candidates if self._is_stale(t, cutoff)]
        for task_id in ids:
            try:
                self._approve_one(task_id, cutoff, summary)
            except Exception as e:
                db.session.rollback()
                logger.error("Auto-approve failed for task %s: %s", task_id, e)
                summary['errors'].append({"task_id": task_id, "error": str(e)})

    def _approve_one(self, task_id, cutoff, summary):
        with atomic():
            task = TaskService.lock_task(task_id)
            if task.status != 'review' or not self._is_stale(task, cutoff):
                summary['skipped'].append({"task_id": task_id, "status": task.status})
                return
            result, followups = self.tasks.complete_locked(task)
        logger.info("Auto-approved task %s after %dh in review (payout=%s)",
                    task_id, self.auto_approve_hours, result['payout'])
        self.tasks.after_settlement(task, result, followups)
        summary['auto_approved'].append({"task_id": task_id, "payout": result['payout']})

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def _still_unanswered(self, resolution):
        """Re-check, under the dispute lock, that evidence still supports ``resolution``."""
        def check(dispute):
            poster, agent = party_responses(dispute)
            if poster and agent:
                raise ConflictError(BOTH_RESPONDED)
            if default_ruling(poster, agent, self.no_response_refund_percent)[0] != resolution:
                raise ConflictError("Evidence changed during the sweep")
        return check

    def _sweep_disputes(self, now, summary):
        overdue = Dispute.query.filter(
            Dispute.status.in_(ACTIVE_STATUSES),
            Dispute.response_deadline < now,
        ).all()
        for dispute in overdue:
            dispute_id = dispute.id
            poster, agent = party_responses(dispute)
            if poster and agent:
                # Both sides engaged: needs a human ruling.
                summary['skipped'].append({"dispute_id": dispute_id, "reason": BOTH_RESPONDED})
                continue
            resolution, pct = default_ruling(poster, agent, self.no_response_refund_percent)
            try:
                result = self.disputes.settle(dispute_id, resolution, pct, 'auto', 'auto_resolved',
                                              guard=self._still_unanswered(resolution))
            except ConflictError as e:
                db.session.rollback()
                summary['skipped'].append({"dispute_id": dispute_id, "reason": e.message})
                continue
            except ServiceError as e:
                db.session.rollback()
                logger.error("Auto-resolve failed for dispute %s: %s", dispute_id, e.message)
                summary['errors'].append({"dispute_id": dispute_id, "error": e.message})
                continue
            except Exception as e:
                db.session.rollback()
                logger.error("Auto-resolve failed for dispute %s: %s", dispute_id, e)
                summary['errors'].append({"dispute_id": dispute_id, "error": str(e)})
                continue
            logger.info("Auto-resolved dispute %s: %s (%d%% refund)", dispute_id, resolution, pct)
            summary['disputes_resolved'].append({
                "dispute_id": dispute_id,
                "task_id": result['task_id'],
                "resolution": resolution,
                "refund_percentage": pct,
            })
