"""
Escrow custody: deposit verification, fee-deducted release, percentage refund.

release() and refund() run inside the caller's transaction while it holds
the task row lock; they only add Transaction rows and never commit.
"""
import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from models import db, atomic, Account, Task, Transaction
from core.money import fmt, split_refund, split_release
from services.errors import ConflictError, DependencyError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger('relay.escrow')

SETTLEMENT_TYPES = ('escrow_release', 'refund')


class EscrowService:
    def __init__(self, wallet, fee_bps: int = 800, fee_wallet: str = '', dev_mode: bool = False):
        self.wallet = wallet
        self.fee_bps = fee_bps
        self.fee_wallet = fee_wallet
        self.dev_mode = dev_mode

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    def deposit(self, task_id: str, tx_hash: str, caller) -> dict:
        if not tx_hash or not isinstance(tx_hash, str) or len(tx_hash) > 100:
            raise ValidationError("tx_hash is required")

        task = db.session.get(Task, task_id)
        if not task:
            raise NotFoundError("Task not found")
        if task.posted_by_id != caller.id:
            raise ForbiddenError("Only the poster can deposit escrow")
        if task.escrow_tx_hash:
            return self._existing_deposit(task, tx_hash)
        if task.status != 'in_progress':
            raise ConflictError(f"Task is {task.status}, escrow requires in_progress")

        budget = Decimal(task.budget_usdc)
        poster = db.session.get(Account, task.posted_by_id)
        platform_address = self.wallet.get_platform_address()

        # Oracle call happens outside any row lock; state is re-checked below.
        if self.wallet.is_connected():
            check = self.wallet.verify_transfer(tx_hash, poster.wallet_address, platform_address, budget)
        elif self.dev_mode:
            logger.warning("DEV_MODE: accepting unverified deposit %s for task %s", tx_hash, task_id)
            check = {"verified": True, "amount": budget}
        else:
            check = {"verified": False, "reason": "Chain not connected"}

        if not check.get('verified'):
            logger.info("Deposit %s for task %s not yet verified: %s", tx_hash, task_id, check.get('reason'))
            return {
                "task_id": task_id,
                "verified": False,
                "retryable": True,
                "reason": check.get('reason') or "Transfer not verified",
            }

        try:
            with atomic():
                locked = db.session.query(Task).filter_by(id=task_id).with_for_update().first()
                if locked.escrow_tx_hash:
                    if locked.escrow_tx_hash == tx_hash:
                        return self._deposit_result(locked)
                    raise ConflictError("Escrow already deposited for this task")
                if locked.status != 'in_progress':
                    raise ConflictError(f"Task is {locked.status}, escrow requires in_progress")
                locked.escrow_tx_hash = tx_hash
                db.session.add(Transaction(
                    task_id=task_id,
                    type='escrow_deposit',
                    from_address=poster.wallet_address,
                    to_address=platform_address or None,
                    amount_usdc=budget,
                    tx_hash=tx_hash,
                    status='confirmed',
                ))
        except IntegrityError:
            raise ConflictError("Transaction hash already used for another task")

        logger.info("Escrow deposited: task=%s tx=%s amount=%s", task_id, tx_hash, budget)
        return self._deposit_result(task)

    def _existing_deposit(self, task, tx_hash):
        if task.escrow_tx_hash != tx_hash:
            raise ConflictError("Escrow already deposited for this task")
        return self._deposit_result(task)

    def _deposit_result(self, task) -> dict:
        return {
            "task_id": task.id,
            "verified": True,
            "escrow_tx_hash": task.escrow_tx_hash,
            "amount": fmt(task.budget_usdc),
        }

    # ------------------------------------------------------------------
    # Release / refund
    # ------------------------------------------------------------------

    def is_settled(self, task_id: str) -> bool:
        return Transaction.query.filter(
            Transaction.task_id == task_id,
            Transaction.type.in_(SETTLEMENT_TYPES),
        ).first() is not None

    def _check_releasable(self, task):
        if not task.escrow_tx_hash:
            raise ConflictError("Escrow has not been deposited for this task")
        if self.is_settled(task.id):
            raise ConflictError("Escrow already settled for this task")

    def release(self, task) -> dict:
        """Pay budget - fee to the assigned agent and credit their stats."""
        self._check_releasable(task)
        budget = Decimal(task.budget_usdc)
        payout, fee = split_release(budget, self.fee_bps)
        agent = db.session.get(Account, task.assigned_agent_id)

        legs = self._pay_legs(task, [
            ('escrow_release', agent.wallet_address, payout),
            ('platform_fee', self.fee_wallet or None, fee),
        ])
        agent.tasks_completed = (agent.tasks_completed or 0) + 1
        agent.total_earned = Decimal(agent.total_earned or 0) + payout

        logger.info("Escrow released: task=%s agent=%s payout=%s fee=%s",
                    task.id, agent.id, payout, fee)
        return {
            "task_id": task.id,
            "payout": fmt(payout),
            "fee": fmt(fee),
            "refund": fmt(0),
            "transactions": legs,
        }

    def refund(self, task, percentage: int) -> dict:
        """Return ``percentage``% of the budget to the poster; the rest goes to
        the agent with the platform fee deducted."""
        if not isinstance(percentage, int) or not 0 <= percentage <= 100:
            raise ValidationError("refund percentage must be an integer in [0, 100]")
        self._check_releasable(task)
        budget = Decimal(task.budget_usdc)
        refund, payout, fee = split_refund(budget, percentage, self.fee_bps)
        poster = db.session.get(Account, task.posted_by_id)
        agent = db.session.get(Account, task.assigned_agent_id)

        legs = self._pay_legs(task, [
            ('refund', poster.wallet_address, refund),
            ('escrow_release', agent.wallet_address, payout),
            ('platform_fee', self.fee_wallet or None, fee),
        ])
        if payout > 0:
            agent.total_earned = Decimal(agent.total_earned or 0) + payout

        logger.info("Escrow refunded: task=%s pct=%d refund=%s payout=%s fee=%s",
                    task.id, percentage, refund, payout, fee)
        return {
            "task_id": task.id,
            "refund": fmt(refund),
            "payout": fmt(payout),
            "fee": fmt(fee),
            "transactions": legs,
        }

    def close_unfunded(self, task, percentage: int) -> dict:
        """Settlement for a task that never received a deposit: nothing moves."""
        if self.is_settled(task.id):
            raise ConflictError("Escrow already settled for this task")
        logger.warning("Task %s closed without escrow (ruling %d%% refund); no payment made",
                       task.id, percentage)
        return {
            "task_id": task.id,
            "funded": False,
            "refund": fmt(0),
            "payout": fmt(0),
            "fee": fmt(0),
            "transactions": [],
        }

    def _pay_legs(self, task, legs) -> list:
        """Execute payment legs in order and record one Transaction per leg.

        A failure on the first executed leg moves no money and aborts the
        whole operation. A later failure cannot be undone on-chain, so it is
        recorded as a failed Transaction for operator follow-up.
        """
        platform_address = self.wallet.get_platform_address() or None
        recorded = []
        first = True
        for tx_type, to_address, amount in legs:
            if amount <= 0:
                continue
            tx_hash = None
            status = 'confirmed'
            if tx_type == 'platform_fee' and to_address is None:
                # Fee stays in the platform wallet: ledger entry only.
                pass
            elif to_address is None:
                status = 'pending'
                logger.warning("No wallet on file for %s leg of task %s; payment left pending",
                               tx_type, task.id)
            else:
                try:
                    tx_hash = self._send(to_address, amount)
                except Exception as e:
                    if first:
                        logger.error("Payment failed for task %s (%s): %s", task.id, tx_type, e)
                        raise DependencyError(f"Payment failed: {e}")
                    logger.error("Partial settlement for task %s: %s leg failed: %s",
                                 task.id, tx_type, e)
                    status = 'failed'
            txn = Transaction(
                task_id=task.id,
                type=tx_type,
                from_address=platform_address,
                to_address=to_address,
                amount_usdc=amount,
                tx_hash=tx_hash,
                status=status,
            )
            db.session.add(txn)
            recorded.append({"type": tx_type, "amount": fmt(amount), "tx_hash": tx_hash, "status": status})
            first = False
        return recorded

    def _send(self, to_address: str, amount: Decimal):
        if self.wallet.is_connected():
            return self.wallet.send_payment(to_address, amount)
        if self.dev_mode:
            logger.info("DEV_MODE: off-chain ledger payment of %s to %s", amount, to_address)
            return None
        raise RuntimeError("Chain not connected")

    @staticmethod
    def list_transactions(task_id: str) -> list:
        txns = Transaction.query.filter_by(task_id=task_id).order_by(Transaction.created_at.asc()).all()
        return [{
            "id": t.id,
            "type": t.type,
            "from_address": t.from_address,
            "to_address": t.to_address,
            "amount": fmt(t.amount_usdc),
            "tx_hash": t.tx_hash,
            "status": t.status,
            "created_at": t.created_at.isoformat() if t.created_at else None,
        } for t in txns]
