import logging

from sqlalchemy.exc import IntegrityError

from models import db, atomic, Bid
from core.money import fmt
from core.payloads import BidSpec, parse_payload
from services.errors import ConflictError, ForbiddenError, NotFoundError
from services.rate_limiter import enforce
from services.task_service import TaskService
from services.trust_service import trust_key

logger = logging.getLogger('relay.bids')


class BidService:
    def __init__(self, limiter, trust, notifier, bid_limit: int = 60, low_trust_threshold: int = 30):
        self.limiter = limiter
        self.trust = trust
        self.notifier = notifier
        self.bid_limit = bid_limit
        self.low_trust_threshold = low_trust_threshold

    def _quota_for(self, caller):
        """Low-trust agents get half the bid quota; everyone else the default."""
        score = self.trust.get_score(trust_key(caller), 'agent')
        if score < self.low_trust_threshold:
            return max(1, self.bid_limit // 2)
        return None

    def submit_bid(self, task_id: str, caller, data: dict, auto_bid: bool = False) -> Bid:
        spec = parse_payload(BidSpec, data)
        task = TaskService.get_task(task_id)
        if caller.kind != 'agent':
            raise ForbiddenError("Only agents can bid")
        if task.status != 'open':
            raise ConflictError("Task is not open for bidding")
        if task.posted_by_id == caller.id:
            raise ConflictError("Cannot bid on your own task")
        if Bid.query.filter_by(task_id=task_id, agent_id=caller.id).first():
            raise ConflictError("You have already bid on this task")

        enforce(self.limiter, 'bid', caller.id, max_requests=self._quota_for(caller))
        try:
            bid = self._insert(task_id, caller, spec, auto_bid)
        except ConflictError:
            # Lost a race after the quota check; the bid never existed.
            self.limiter.release_last('bid', caller.id)
            raise

        logger.info("Bid %s on task %s by %s (%s USDC%s)", bid.id, task_id, caller.id,
                    fmt(bid.amount_usdc), ", auto" if auto_bid else "")
        return bid

    @staticmethod
    def _insert(task_id, caller, spec, auto_bid) -> Bid:
        try:
            with atomic():
                locked = TaskService.lock_task(task_id)
                if locked.status != 'open':
                    raise ConflictError("Task is not open for bidding")
                bid = Bid(
                    task_id=task_id,
                    agent_id=caller.id,
                    amount_usdc=spec.amount_usdc,
                    proposal=spec.proposal,
                    estimated_hours=spec.estimated_hours,
                    status='pending',
                    auto_bid=auto_bid,
                )
                db.session.add(bid)
                db.session.flush()
                locked.bid_count = (locked.bid_count or 0) + 1
        except IntegrityError:
            raise ConflictError("You have already bid on this task")
        return bid

    def accept_bid(self, task_id: str, bid_id: str, caller) -> dict:
        with atomic():
            task = TaskService.lock_task(task_id)
            if task.posted_by_id != caller.id:
                raise ForbiddenError("Only the poster can accept bids")
            if task.status != 'open':
                raise ConflictError("Task is no longer open")
            bid = db.session.query(Bid).filter_by(id=bid_id).with_for_update().first()
            if not bid or bid.task_id != task_id:
                raise NotFoundError("Bid not found")
            if bid.status != 'pending':
                raise ConflictError(f"Bid is {bid.status}")

            bid.status = 'accepted'
            siblings = Bid.query.filter(
                Bid.task_id == task_id,
                Bid.id != bid.id,
                Bid.status == 'pending',
            ).all()
            for other in siblings:
                other.status = 'rejected'
            task.status = 'in_progress'
            task.assigned_agent_id = bid.agent_id
            rejected = [(b.id, b.agent_id) for b in siblings]

        logger.info("Task %s: accepted bid %s (agent %s), rejected %d",
                    task_id, bid_id, bid.agent_id, len(rejected))

        self.notifier.notify(bid.agent_id, 'bid_accepted', task, {"bid_id": bid.id, "title": task.title,
                                                                  "budget_usdc": fmt(task.budget_usdc)})
        self.notifier.notify(bid.agent_id, 'task_assigned', task, {"title": task.title,
                                                                   "budget_usdc": fmt(task.budget_usdc)})
        for other_id, agent_id in rejected:
            self.notifier.notify(agent_id, 'bid_rejected', task, {"bid_id": other_id, "title": task.title})

        return {
            "task_id": task_id,
            "status": task.status,
            "assigned_agent_id": task.assigned_agent_id,
            "accepted_bid_id": bid.id,
            "rejected_bid_ids": [r[0] for r in rejected],
        }

    @staticmethod
    def list_bids(task_id: str) -> list:
        TaskService.get_task(task_id)
        bids = Bid.query.filter_by(task_id=task_id).order_by(Bid.created_at.asc()).all()
        return [BidService.to_dict(b) for b in bids]

    @staticmethod
    def to_dict(bid: Bid) -> dict:
        return {
            "bid_id": bid.id,
            "task_id": bid.task_id,
            "agent_id": bid.agent_id,
            "amount_usdc": fmt(bid.amount_usdc),
            "proposal": bid.proposal,
            "estimated_hours": bid.estimated_hours,
            "status": bid.status,
            "auto_bid": bool(bid.auto_bid),
            "created_at": bid.created_at.isoformat() if bid.created_at else None,
        }
