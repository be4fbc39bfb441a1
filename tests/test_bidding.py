"""
Bidding: submission guards, acceptance, sibling rejection, bid quotas.
"""
import os

os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['AUTO_RESOLVE_ENABLED'] = 'false'

from unittest.mock import MagicMock, patch

from server import app
from models import db, Bid, Notification, Task, TrustScore
from services.bid_service import BidService
from services.errors import ConflictError, ForbiddenError, NotFoundError, RateLimitedError, ValidationError
from services.task_service import TaskService
from services.trust_service import trust_key
from tests.helpers.factories import bid_on, caller, make_account, make_services, open_task

import pytest


@pytest.fixture
def ctx():
    app.config['TESTING'] = True
    app.config['DEV_MODE'] = True
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(ctx):
    return make_services(app)


@pytest.fixture
def poster(ctx):
    return make_account(kind='client')[0]


def _agent(**kw):
    return make_account(kind='agent', skills=['writing'], **kw)[0]


class TestSubmitBid:
    def test_bid_is_pending_and_counted(self, services, poster):
        task = open_task(services, poster)
        agent = _agent()
        bid = bid_on(services, task, agent, amount='85.5')
        assert bid.status == 'pending'
        assert str(bid.amount_usdc) in ('85.5', '85.500000')
        assert db.session.get(Task, task.id).bid_count == 1

    def test_duplicate_bid_conflicts(self, services, poster):
        task = open_task(services, poster)
        agent = _agent()
        bid_on(services, task, agent)
        with pytest.raises(ConflictError):
            bid_on(services, task, agent)
        assert Bid.query.filter_by(task_id=task.id).count() == 1
        assert db.session.get(Task, task.id).bid_count == 1

    def test_poster_cannot_bid_on_own_task(self, services):
        agent_poster = _agent()
        task = open_task(services, agent_poster)
        with pytest.raises(ConflictError):
            bid_on(services, task, agent_poster)

    def test_only_agents_bid(self, services, poster):
        task = open_task(services, poster)
        other_client = make_account(kind='client')[0]
        with pytest.raises(ForbiddenError):
            bid_on(services, task, other_client)

    def test_bid_on_assigned_task_conflicts(self, services, poster):
        task = open_task(services, poster)
        a, b = _agent(), _agent()
        bid = bid_on(services, task, a)
        services.bids.accept_bid(task.id, bid.id, caller(poster))
        with pytest.raises(ConflictError):
            bid_on(services, task, b)

    def test_validation(self, services, poster):
        task = open_task(services, poster)
        agent = _agent()
        with pytest.raises(ValidationError):
            services.bids.submit_bid(task.id, caller(agent), {"amount_usdc": "0", "proposal": "long enough text"})
        with pytest.raises(ValidationError):
            services.bids.submit_bid(task.id, caller(agent), {"amount_usdc": "10", "proposal": "short"})
        with pytest.raises(ValidationError):
            services.bids.submit_bid(task.id, caller(agent), {"amount_usdc": "-3", "proposal": "long enough text"})

    def test_unknown_task(self, services):
        agent = _agent()
        with pytest.raises(NotFoundError):
            services.bids.submit_bid('nope', caller(agent), {"amount_usdc": "1", "proposal": "long enough text"})


class TestAcceptBid:
    def test_accept_rejects_siblings(self, services, poster):
        task = open_task(services, poster)
        a, b = _agent(), _agent()
        bid_a = bid_on(services, task, a)
        bid_b = bid_on(services, task, b)

        result = services.bids.accept_bid(task.id, bid_a.id, caller(poster))

        assert result['status'] == 'in_progress'
        assert result['assigned_agent_id'] == a.id
        assert result['rejected_bid_ids'] == [bid_b.id]
        assert db.session.get(Bid, bid_a.id).status == 'accepted'
        assert db.session.get(Bid, bid_b.id).status == 'rejected'
        accepted = Bid.query.filter_by(task_id=task.id, status='accepted').all()
        assert len(accepted) == 1
        assert accepted[0].agent_id == db.session.get(Task, task.id).assigned_agent_id

    def test_notifications_after_accept(self, services, poster):
        task = open_task(services, poster)
        a, b = _agent(), _agent()
        bid_a = bid_on(services, task, a)
        bid_on(services, task, b)
        services.bids.accept_bid(task.id, bid_a.id, caller(poster))

        winner_types = {n.type for n in Notification.query.filter_by(account_id=a.id).all()}
        loser_types = {n.type for n in Notification.query.filter_by(account_id=b.id).all()}
        assert {'bid_accepted', 'task_assigned'} <= winner_types
        assert 'bid_rejected' in loser_types
        assert 'bid_accepted' not in loser_types

    def test_only_poster_accepts(self, services, poster):
        task = open_task(services, poster)
        a = _agent()
        bid = bid_on(services, task, a)
        with pytest.raises(ForbiddenError):
            services.bids.accept_bid(task.id, bid.id, caller(a))
        assert db.session.get(Task, task.id).status == 'open'

    def test_accept_twice_conflicts(self, services, poster):
        task = open_task(services, poster)
        a, b = _agent(), _agent()
        bid_a = bid_on(services, task, a)
        bid_b = bid_on(services, task, b)
        services.bids.accept_bid(task.id, bid_a.id, caller(poster))
        with pytest.raises(ConflictError):
            services.bids.accept_bid(task.id, bid_b.id, caller(poster))
        assert db.session.get(Task, task.id).assigned_agent_id == a.id

    def test_bid_from_other_task(self, services, poster):
        t1 = open_task(services, poster)
        t2 = open_task(services, poster)
        bid = bid_on(services, t2, _agent())
        with pytest.raises(NotFoundError):
            services.bids.accept_bid(t1.id, bid.id, caller(poster))

    def test_list_bids(self, services, poster):
        task = open_task(services, poster)
        bid_on(services, task, _agent())
        bid_on(services, task, _agent())
        bids = BidService.list_bids(task.id)
        assert len(bids) == 2
        assert all(b['status'] == 'pending' for b in bids)


class TestBidQuota:
    def test_quota_exceeded(self, services, poster):
        services.limiter.limits['bid'] = (2, 3600)
        agent = _agent()
        for _ in range(2):
            bid_on(services, open_task(services, poster), agent)
        with pytest.raises(RateLimitedError) as exc:
            bid_on(services, open_task(services, poster), agent)
        assert exc.value.retry_after > 0

    def test_quota_is_per_agent(self, services, poster):
        services.limiter.limits['bid'] = (1, 3600)
        task = open_task(services, poster)
        bid_on(services, task, _agent())
        bid_on(services, task, _agent())
        assert db.session.get(Task, task.id).bid_count == 2

    def test_low_trust_agent_gets_half_quota(self, services, poster):
        services.limiter.limits['bid'] = (4, 3600)
        services.bids.bid_limit = 4
        agent = _agent()
        db.session.add(TrustScore(wallet_address=trust_key(agent), role='agent', score=10,
                                  tasks_completed=0, tasks_disputed=0, disputes_won=0,
                                  disputes_lost=3, flags=['serial_dispute_loser']))
        db.session.commit()

        for _ in range(2):
            bid_on(services, open_task(services, poster), agent)
        with pytest.raises(RateLimitedError):
            bid_on(services, open_task(services, poster), agent)

    def test_normal_trust_keeps_full_quota(self, services, poster):
        services.limiter.limits['bid'] = (4, 3600)
        services.bids.bid_limit = 4
        agent = _agent()
        for _ in range(4):
            bid_on(services, open_task(services, poster), agent)

    def test_bid_lost_to_assignment_keeps_quota(self, services, poster):
        services.limiter.limits['bid'] = (1, 3600)
        agent = _agent()
        task = open_task(services, poster)
        with patch.object(TaskService, 'lock_task', return_value=MagicMock(status='in_progress')):
            with pytest.raises(ConflictError):
                bid_on(services, task, agent)
        assert Bid.query.filter_by(agent_id=agent.id).count() == 0

        bid = bid_on(services, open_task(services, poster), agent)
        assert bid.status == 'pending'

    def test_duplicate_insert_race_keeps_quota(self, services, poster):
        services.limiter.limits['bid'] = (1, 3600)
        agent = _agent()
        with patch.object(BidService, '_insert', side_effect=ConflictError("You have already bid on this task")):
            with pytest.raises(ConflictError):
                bid_on(services, open_task(services, poster), agent)
        bid_on(services, open_task(services, poster), agent)
        with pytest.raises(RateLimitedError):
            bid_on(services, open_task(services, poster), agent)

    def test_rejected_precheck_does_not_touch_quota(self, services, poster):
        services.limiter.limits['bid'] = (1, 3600)
        agent = _agent()
        own = open_task(services, agent)
        with pytest.raises(ConflictError):
            bid_on(services, own, agent)
        bid_on(services, open_task(services, poster), agent)
