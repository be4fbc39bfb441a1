"""
Trust scores and the abuse log.
"""
import os
from decimal import Decimal

os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['AUTO_RESOLVE_ENABLED'] = 'false'

from server import app
from models import db, AbuseLog, TrustScore
from services.trust_service import (
    DEFAULT_SCORE, TrustService, compute_flags, compute_score, trust_key,
)
from tests.helpers.factories import make_account

import pytest


@pytest.fixture
def ctx():
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def trust(ctx):
    return TrustService()


def _ts(**kw):
    base = dict(tasks_completed=0, tasks_disputed=0, disputes_won=0, disputes_lost=0,
                total_volume_usdc=Decimal('0'))
    base.update(kw)
    return TrustScore(wallet_address='0xabc', role='agent', **base)


class TestComputeScore:
    def test_fresh_score_is_default(self):
        assert compute_score(_ts()) == DEFAULT_SCORE

    def test_completions_and_wins_raise_score(self):
        assert compute_score(_ts(tasks_completed=3)) == 56
        assert compute_score(_ts(disputes_won=2)) == 56

    def test_losses_lower_score(self):
        assert compute_score(_ts(disputes_lost=2)) == 40

    def test_volume_bonus_capped(self):
        assert compute_score(_ts(total_volume_usdc=Decimal('250'))) == 53
        assert compute_score(_ts(total_volume_usdc=Decimal('1000000'))) == 60

    def test_clamped_to_range(self):
        assert compute_score(_ts(disputes_lost=20)) == 0
        assert compute_score(_ts(tasks_completed=40, disputes_won=10)) == 100

    def test_high_dispute_rate_penalty(self):
        # 2 disputed of 4 total: 50% > 25%
        ts = _ts(tasks_completed=2, tasks_disputed=2)
        assert compute_score(ts) == 50 + 4 - 15
        assert 'high_dispute_rate' in compute_flags(ts)

    def test_dispute_rate_needs_history(self):
        ts = _ts(tasks_completed=1, tasks_disputed=2)
        assert 'high_dispute_rate' not in compute_flags(ts)

    def test_serial_loser_flag(self):
        assert compute_flags(_ts(disputes_lost=3)) == ['serial_dispute_loser']
        assert compute_flags(_ts(disputes_lost=2)) == []


class TestTrustService:
    def test_unknown_wallet_scores_default(self, trust):
        assert trust.get_score('0xNOBODY', 'agent') == DEFAULT_SCORE

    def test_record_completion(self, trust):
        trust.record_completion('0xABC', 'agent', Decimal('100'))
        db.session.commit()
        ts = TrustScore.query.filter_by(wallet_address='0xabc', role='agent').one()
        assert ts.tasks_completed == 1
        assert ts.score == 53
        assert trust.get_score('0xAbC', 'agent') == 53

    def test_roles_are_separate(self, trust):
        trust.record_completion('0xabc', 'agent', Decimal('10'))
        trust.record_dispute_raised('0xabc', 'buyer')
        db.session.commit()
        rows = {r['role']: r for r in trust.scores_for('0xabc')}
        assert rows['agent']['tasks_completed'] == 1
        assert rows['buyer']['tasks_disputed'] == 1
        assert rows['buyer']['tasks_completed'] == 0

    def test_dispute_outcome(self, trust):
        trust.record_dispute_outcome(('0xwin', 'buyer'), ('0xlose', 'agent'), 'd-1')
        db.session.commit()
        win = TrustScore.query.filter_by(wallet_address='0xwin', role='buyer').one()
        lose = TrustScore.query.filter_by(wallet_address='0xlose', role='agent').one()
        assert win.disputes_won == 1 and win.score == 53
        assert lose.disputes_lost == 1 and lose.score == 45
        assert trust.last_dispute_loss('0xLOSE') == lose.last_dispute_lost_at
        assert trust.last_dispute_loss('0xwin') is None
        log = AbuseLog.query.filter_by(wallet_address='0xlose').one()
        assert log.action == 'lost_dispute'
        assert 'd-1' in log.details

    def test_abuse_severity_escalates(self, trust):
        severities = [trust.log_abuse('0xbad', 'agent', 'spam').severity for _ in range(4)]
        db.session.commit()
        assert severities == ['low', 'medium', 'high', 'high']

    def test_abuse_counts_per_role(self, trust):
        trust.log_abuse('0xbad', 'agent', 'spam')
        db.session.flush()
        assert trust.log_abuse('0xbad', 'buyer', 'spam').severity == 'low'


class TestTrustKey:
    def test_wallet_lowercased(self, ctx):
        account, _ = make_account()
        assert trust_key(account) == account.wallet_address.lower()

    def test_account_without_wallet(self, ctx):
        account, _ = make_account(wallet=False)
        assert trust_key(account) == f'account:{account.id}'
