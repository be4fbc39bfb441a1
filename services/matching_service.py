"""
Skill matching, auto-bidding and notification fan-out (in-app inbox + webhooks).

Everything here runs after the triggering state transition has committed.
Failures are logged and rolled back locally; they never reach the caller.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

from models import db, Account, Notification
from core.money import fmt
from services.auth_service import Caller
from services.auto_bid_service import bid_amount, render_proposal
from services.errors import NotFoundError, ServiceError
from services.trust_service import trust_key

logger = logging.getLogger('relay.notifications')

TITLES = {
    'task_match': "New matching task!",
    'auto_bid_placed': "Auto-bid placed",
    'bid_accepted': "Bid accepted!",
    'bid_rejected': "Bid not accepted",
    'task_assigned': "Task assigned to you",
    'task_delivered': "Work delivered",
    'payment_received': "Payment received!",
    'dispute_raised': "Dispute opened",
    'dispute_resolved': "Dispute resolved",
    'workflow_completed': "Workflow completed",
}


def _message(event_type: str, task, data: dict) -> str:
    title = task.title if task is not None else ''
    budget = fmt(task.budget_usdc) if task is not None else None
    if event_type == 'task_match':
        return f'"{title}" matches your skills: {budget} USDC'
    if event_type == 'auto_bid_placed':
        return f'Your auto-bid rule bid {data.get("bid_amount")} USDC on "{title}"'
    if event_type == 'bid_accepted':
        return f'Your bid on "{title}" was accepted. Time to work.'
    if event_type == 'bid_rejected':
        return f'Your bid on "{title}" was not selected.'
    if event_type == 'task_assigned':
        return f'You have been assigned "{title}": {budget} USDC'
    if event_type == 'task_delivered':
        return f'Work on "{title}" was delivered and awaits your review.'
    if event_type == 'payment_received':
        return f'{data.get("amount", budget)} USDC received for "{title}"'
    if event_type == 'dispute_raised':
        return f'A dispute was opened on "{title}". Respond before {data.get("response_deadline")}.'
    if event_type == 'dispute_resolved':
        return f'The dispute on "{title}" was resolved: {data.get("resolution")}.'
    if event_type == 'workflow_completed':
        return f'Workflow "{data.get("name")}" finished all steps.'
    return f'Update on "{title}"'


def skills_match(task_skills, agent_skills) -> bool:
    """Case-insensitive substring match in either direction. No required skills matches everyone."""
    if not task_skills:
        return True
    agent_skills = [a.lower() for a in (agent_skills or [])]
    for s in task_skills:
        s = s.lower()
        if any(s in a or a in s for a in agent_skills):
            return True
    return False


class Notifier:
    def __init__(self, queue=None):
        self.queue = queue

    def notify(self, account_id: str, event_type: str, task=None, data: dict = None):
        """Create an inbox entry and enqueue a webhook if the account has one."""
        data = data or {}
        try:
            account = db.session.get(Account, account_id)
            if not account:
                logger.warning("Notification %s for unknown account %s dropped", event_type, account_id)
                return
            db.session.add(Notification(
                account_id=account_id,
                type=event_type,
                title=TITLES.get(event_type, "Notification"),
                message=_message(event_type, task, data),
                task_id=task.id if task is not None else None,
            ))
            db.session.commit()

            if account.webhook_url and self.queue is not None:
                payload = {
                    "event": event_type,
                    "task_id": task.id if task is not None else None,
                    "data": data,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
                self.queue.enqueue(account, event_type, payload)
        except Exception as e:
            db.session.rollback()
            logger.error("Notification %s to %s failed: %s", event_type, account_id, e)

    @staticmethod
    def list_notifications(account_id: str, unread_only: bool = False, limit: int = 50) -> list:
        q = Notification.query.filter_by(account_id=account_id)
        if unread_only:
            q = q.filter_by(read=False)
        rows = q.order_by(Notification.created_at.desc()).limit(min(max(limit, 1), 200)).all()
        return [{
            "id": n.id,
            "type": n.type,
            "title": n.title,
            "message": n.message,
            "task_id": n.task_id,
            "read": bool(n.read),
            "created_at": n.created_at.isoformat() if n.created_at else None,
        } for n in rows]

    @staticmethod
    def mark_read(account_id: str, ids=None) -> int:
        """Mark the given notifications (or all, when ids is None) as read."""
        q = Notification.query.filter_by(account_id=account_id, read=False)
        if ids is not None:
            if not ids:
                return 0
            found = Notification.query.filter(Notification.id.in_(ids)).all()
            if any(n.account_id != account_id for n in found):
                raise NotFoundError("Notification not found")
            q = q.filter(Notification.id.in_(ids))
        updated = q.update({'read': True}, synchronize_session=False)
        db.session.commit()
        return updated


class MatchingService:
    """Runs when a task opens: notify matching agents, place their auto-bids
    and, for auto_accept tasks, accept the first qualifying one."""

    def __init__(self, notifier, bids, auto_bids, trust):
        self.notifier = notifier
        self.bids = bids
        self.auto_bids = auto_bids
        self.trust = trust

    def process_new_task(self, task) -> dict:
        summary = {"matched": 0, "auto_bids": 0, "accepted_bid_id": None}
        try:
            candidates = Account.query.filter(
                Account.kind == 'agent',
                Account.id != task.posted_by_id,
            ).order_by(Account.created_at.asc()).all()
        except Exception as e:
            db.session.rollback()
            logger.error("Matching for task %s failed: %s", task.id, e)
            return summary

        matched = [a for a in candidates if skills_match(task.required_skills or [], a.skills or [])]
        summary["matched"] = len(matched)
        for agent in matched:
            data = {
                "title": task.title,
                "budget_usdc": fmt(task.budget_usdc),
                "required_skills": task.required_skills or [],
            }
            bid = None
            if summary["accepted_bid_id"] is None:
                bid = self._auto_bid(agent, task)
            if bid is not None:
                summary["auto_bids"] += 1
                data.update({"auto_bid_placed": True, "bid_id": bid.id, "bid_amount": fmt(bid.amount_usdc)})
                self.notifier.notify(agent.id, 'auto_bid_placed', task, data)
                if task.auto_accept and self._accept_if_qualified(task, agent, bid):
                    summary["accepted_bid_id"] = bid.id
            else:
                self.notifier.notify(agent.id, 'task_match', task, data)
        logger.info("Task %s matched %d agents, %d auto-bids%s", task.id, len(matched), summary["auto_bids"],
                    ", auto-accepted" if summary["accepted_bid_id"] else "")
        return summary

    def _auto_bid(self, agent, task):
        try:
            rule = self.auto_bids.pick_rule(agent, task)
            if rule is None:
                return None
            score = self.trust.get_score(trust_key(agent), 'agent')
            amount = bid_amount(rule, Decimal(task.budget_usdc))
            bid = self.bids.submit_bid(task.id, Caller.from_account(agent), {
                "amount_usdc": str(amount),
                "proposal": render_proposal(rule, task, agent, score),
            }, auto_bid=True)
            self.auto_bids.record_bid(rule.id)
            return bid
        except ServiceError as e:
            logger.info("Auto-bid by %s on task %s skipped: %s", agent.id, task.id, e.message)
        except Exception as e:
            db.session.rollback()
            logger.error("Auto-bid by %s on task %s failed: %s", agent.id, task.id, e)
        return None

    def _accept_if_qualified(self, task, agent, bid) -> bool:
        """Trust only sets the threshold for hands-off acceptance; a bid below it
        stays pending for the poster."""
        if task.auto_accept_min_trust is not None:
            score = self.trust.get_score(trust_key(agent), 'agent')
            if score < task.auto_accept_min_trust:
                logger.info("Auto-accept on task %s passed over %s: trust %d < %d",
                            task.id, agent.id, score, task.auto_accept_min_trust)
                return False
        if task.auto_accept_max_budget is not None and Decimal(bid.amount_usdc) > Decimal(task.auto_accept_max_budget):
            return False
        poster = db.session.get(Account, task.posted_by_id)
        try:
            self.bids.accept_bid(task.id, bid.id, Caller.from_account(poster))
        except ServiceError as e:
            logger.info("Auto-accept of bid %s on task %s skipped: %s", bid.id, task.id, e.message)
            return False
        except Exception as e:
            db.session.rollback()
            logger.error("Auto-accept of bid %s on task %s failed: %s", bid.id, task.id, e)
            return False
        logger.info("Task %s auto-accepted bid %s from %s", task.id, bid.id, agent.id)
        return True
