"""
Escrow custody: deposit verification, release, refund, payment legs.
"""
import os
from decimal import Decimal

os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['AUTO_RESOLVE_ENABLED'] = 'false'

from server import app
from models import db, Task, Transaction
from core.money import split_refund, split_release, to_usdc
from services.errors import ConflictError, DependencyError, ForbiddenError, ValidationError
from tests.helpers.factories import (
    PLATFORM_ADDRESS, assigned_task, caller, delivered_task, make_account, make_services, make_wallet,
)

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
def parties(ctx):
    poster, _ = make_account(kind='client')
    agent, _ = make_account(kind='agent', skills=['writing'])
    return poster, agent


def _txns(task_id, tx_type=None):
    q = Transaction.query.filter_by(task_id=task_id)
    if tx_type:
        q = q.filter_by(type=tx_type)
    return q.all()


# ===================================================================
# Fixed-point arithmetic
# ===================================================================

class TestMoney:
    def test_release_split_100(self):
        payout, fee = split_release(Decimal('100'), 800)
        assert payout == Decimal('92.000000')
        assert fee == Decimal('8.000000')

    def test_fee_rounds_up(self):
        payout, fee = split_release(Decimal('0.000013'), 800)
        # 0.00000104 -> 0.000002
        assert fee == Decimal('0.000002')
        assert payout + fee == Decimal('0.000013')

    def test_refund_split_conserves_budget(self):
        for budget in ('100', '33.333333', '0.1', '7.777777'):
            for pct in (0, 1, 33, 50, 99, 100):
                refund, payout, fee = split_refund(Decimal(budget), pct, 800)
                assert refund + payout + fee == Decimal(budget)
                assert min(refund, payout, fee) >= 0

    def test_refund_rounds_down(self):
        refund, payout, fee = split_refund(Decimal('0.000003'), 50, 800)
        assert refund == Decimal('0.000001')

    def test_to_usdc_rejects_negative_and_nan(self):
        with pytest.raises(ValueError):
            to_usdc('-1')
        with pytest.raises(ValueError):
            to_usdc('NaN')
        with pytest.raises(ValueError):
            to_usdc('abc')


# ===================================================================
# Deposit
# ===================================================================

class TestDeposit:
    def test_dev_mode_deposit_records_transaction(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        result = services.escrow.deposit(task.id, '0xabc', caller(poster))
        assert result['verified'] is True
        assert result['amount'] == '100.000000'
        deposits = _txns(task.id, 'escrow_deposit')
        assert len(deposits) == 1
        assert deposits[0].tx_hash == '0xabc'
        assert deposits[0].status == 'confirmed'
        assert db.session.get(Task, task.id).escrow_tx_hash == '0xabc'

    def test_same_hash_is_idempotent(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        services.escrow.deposit(task.id, '0xabc', caller(poster))
        again = services.escrow.deposit(task.id, '0xabc', caller(poster))
        assert again['verified'] is True
        assert len(_txns(task.id, 'escrow_deposit')) == 1

    def test_different_hash_conflicts(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        services.escrow.deposit(task.id, '0xabc', caller(poster))
        with pytest.raises(ConflictError):
            services.escrow.deposit(task.id, '0xdef', caller(poster))
        assert db.session.get(Task, task.id).escrow_tx_hash == '0xabc'

    def test_hash_reused_on_other_task_conflicts(self, services, parties):
        poster, agent = parties
        t1 = assigned_task(services, poster, agent, funded=False)
        t2 = assigned_task(services, poster, agent, funded=False)
        services.escrow.deposit(t1.id, '0xshared', caller(poster))
        with pytest.raises(ConflictError):
            services.escrow.deposit(t2.id, '0xshared', caller(poster))
        assert db.session.get(Task, t2.id).escrow_tx_hash is None

    def test_only_poster_can_deposit(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        with pytest.raises(ForbiddenError):
            services.escrow.deposit(task.id, '0xabc', caller(agent))

    def test_deposit_requires_in_progress(self, services, parties):
        poster, _ = parties
        task = services.tasks.create_task(caller(poster), {
            "title": "t", "description": "d", "budget_usdc": "5",
        })
        with pytest.raises(ConflictError):
            services.escrow.deposit(task.id, '0xabc', caller(poster))

    def test_missing_hash_rejected(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        with pytest.raises(ValidationError):
            services.escrow.deposit(task.id, '', caller(poster))

    def test_chain_verification_arguments(self, ctx, parties):
        wallet = make_wallet(connected=True)
        services = make_services(app, wallet=wallet)
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False, budget='25')
        services.escrow.deposit(task.id, '0xchain', caller(poster))
        wallet.verify_transfer.assert_called_once_with(
            '0xchain', poster.wallet_address, PLATFORM_ADDRESS, Decimal('25'))

    def test_unverified_is_retryable_not_error(self, ctx, parties):
        services = make_services(app, wallet=make_wallet(connected=True, verified=False))
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        result = services.escrow.deposit(task.id, '0xpending', caller(poster))
        assert result['verified'] is False
        assert result['retryable'] is True
        assert 'confirmations' in result['reason']
        assert db.session.get(Task, task.id).escrow_tx_hash is None
        assert _txns(task.id) == []

    def test_disconnected_without_dev_mode_not_verified(self, services, parties):
        services.escrow.dev_mode = False
        poster, agent = parties
        task = assigned_task(services, poster, agent, funded=False)
        result = services.escrow.deposit(task.id, '0xabc', caller(poster))
        assert result['verified'] is False
        assert result['reason'] == 'Chain not connected'


# ===================================================================
# Release / refund
# ===================================================================

class TestRelease:
    def test_approve_releases_budget_minus_fee(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        result = services.tasks.approve(task.id, caller(poster))
        assert result['payout'] == '92.000000'
        assert result['fee'] == '8.000000'
        release = _txns(task.id, 'escrow_release')
        fee = _txns(task.id, 'platform_fee')
        assert len(release) == 1 and release[0].amount_usdc == Decimal('92')
        assert release[0].to_address == agent.wallet_address
        assert release[0].tx_hash is None  # off-chain ledger event in DEV_MODE
        assert len(fee) == 1 and fee[0].amount_usdc == Decimal('8')

    def test_release_credits_agent(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        services.tasks.approve(task.id, caller(poster))
        db.session.refresh(agent)
        assert agent.tasks_completed == 1
        assert agent.total_earned == Decimal('92')

    def test_release_requires_deposit(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent, funded=False)
        locked = db.session.get(Task, task.id)
        with pytest.raises(ConflictError):
            services.escrow.release(locked)
        with pytest.raises(ConflictError):
            services.escrow.refund(locked, 50)
        db.session.rollback()
        assert db.session.get(Task, task.id).status == 'review'

    def test_approving_unfunded_delivery_completes_without_payment(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent, funded=False)

        result = services.tasks.approve(task.id, caller(poster))

        assert result['funded'] is False
        assert result['transactions'] == []
        assert db.session.get(Task, task.id).status == 'completed'
        assert Transaction.query.filter_by(task_id=task.id).count() == 0
        db.session.refresh(agent)
        assert agent.tasks_completed == 0

    def test_release_twice_conflicts(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        services.tasks.approve(task.id, caller(poster))
        locked = db.session.get(Task, task.id)
        with pytest.raises(ConflictError):
            services.escrow.release(locked)
        db.session.rollback()

    def test_on_chain_release_uses_wallet(self, ctx, parties):
        wallet = make_wallet(connected=True)
        services = make_services(app, wallet=wallet)
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        services.tasks.approve(task.id, caller(poster))
        wallet.send_payment.assert_called_once_with(agent.wallet_address, Decimal('92.000000'))
        assert _txns(task.id, 'escrow_release')[0].tx_hash == '0xpay0001'

    def test_first_leg_failure_moves_nothing(self, ctx, parties):
        wallet = make_wallet(connected=True)
        wallet.send_payment.side_effect = RuntimeError("nonce too low")
        services = make_services(app, wallet=wallet)
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        with pytest.raises(DependencyError):
            services.tasks.approve(task.id, caller(poster))
        assert db.session.get(Task, task.id).status == 'review'
        assert _txns(task.id, 'escrow_release') == []

    def test_later_leg_failure_recorded(self, ctx, parties):
        wallet = make_wallet(connected=True)
        wallet.send_payment.side_effect = ['0xrefund', RuntimeError("gas spike")]
        services = make_services(app, wallet=wallet)
        poster, agent = parties
        task = assigned_task(services, poster, agent)
        locked = db.session.get(Task, task.id)
        result = services.escrow.refund(locked, 50)
        db.session.commit()
        statuses = {t['type']: t['status'] for t in result['transactions']}
        assert statuses['refund'] == 'confirmed'
        assert statuses['escrow_release'] == 'failed'
        assert _txns(task.id, 'escrow_release')[0].status == 'failed'

    def test_agent_without_wallet_left_pending(self, services, ctx):
        poster, _ = make_account(kind='client')
        agent, _ = make_account(kind='agent', wallet=False, skills=['writing'])
        task = delivered_task(services, poster, agent)
        result = services.tasks.approve(task.id, caller(poster))
        release = [t for t in result['transactions'] if t['type'] == 'escrow_release'][0]
        assert release['status'] == 'pending'


class TestRefund:
    def test_full_refund_on_cancel(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent)
        services.tasks.cancel(task.id, caller(poster))
        refunds = _txns(task.id, 'refund')
        assert len(refunds) == 1
        assert refunds[0].amount_usdc == Decimal('100')
        assert refunds[0].to_address == poster.wallet_address
        assert _txns(task.id, 'escrow_release') == []
        assert _txns(task.id, 'platform_fee') == []

    def test_partial_refund_amounts(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent)
        locked = db.session.get(Task, task.id)
        result = services.escrow.refund(locked, 30)
        db.session.commit()
        assert result['refund'] == '30.000000'
        assert result['fee'] == '5.600000'
        assert result['payout'] == '64.400000'
        total = sum(t.amount_usdc for t in _txns(task.id) if t.type != 'escrow_deposit')
        assert total == Decimal('100')

    def test_refund_percentage_validated(self, services, parties):
        poster, agent = parties
        task = assigned_task(services, poster, agent)
        with pytest.raises(ValidationError):
            services.escrow.refund(db.session.get(Task, task.id), 101)

    def test_list_transactions(self, services, parties):
        poster, agent = parties
        task = delivered_task(services, poster, agent)
        services.tasks.approve(task.id, caller(poster))
        from services.escrow_service import EscrowService
        types = [t['type'] for t in EscrowService.list_transactions(task.id)]
        assert sorted(types) == ['escrow_deposit', 'escrow_release', 'platform_fee']
