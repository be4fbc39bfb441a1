"""
Trust scores per (wallet, role) and the abuse log.

Scores are a weighting signal for bid throttling and judge context only;
nothing in the system refuses an action purely because of a score.
"""
import logging
from datetime import datetime
from decimal import Decimal

from models import db, AbuseLog, TrustScore

logger = logging.getLogger('relay.trust')

DEFAULT_SCORE = 50
WEIGHT_COMPLETION = 2
WEIGHT_DISPUTE_WIN = 3
WEIGHT_DISPUTE_LOSS = -5
VOLUME_PER_USDC = Decimal('0.01')
VOLUME_BONUS_CAP = 10
HIGH_DISPUTE_RATE = Decimal('0.25')
HIGH_DISPUTE_MIN_TASKS = 4
HIGH_DISPUTE_PENALTY = -15
SERIAL_LOSER_THRESHOLD = 3

SEVERITY_BY_OFFENSE = {1: 'low', 2: 'medium'}


def trust_key(account) -> str:
    """Trust is keyed by wallet; accounts without one fall back to their id."""
    return (account.wallet_address or f'account:{account.id}').lower()


def compute_score(ts: TrustScore) -> int:
    score = Decimal(DEFAULT_SCORE)
    score += WEIGHT_COMPLETION * (ts.tasks_completed or 0)
    score += WEIGHT_DISPUTE_WIN * (ts.disputes_won or 0)
    score += WEIGHT_DISPUTE_LOSS * (ts.disputes_lost or 0)
    score += min(Decimal(ts.total_volume_usdc or 0) * VOLUME_PER_USDC, Decimal(VOLUME_BONUS_CAP))

    total = (ts.tasks_completed or 0) + (ts.tasks_disputed or 0)
    if total >= HIGH_DISPUTE_MIN_TASKS and Decimal(ts.tasks_disputed or 0) / total > HIGH_DISPUTE_RATE:
        score += HIGH_DISPUTE_PENALTY

    return int(max(Decimal(0), min(Decimal(100), score)).to_integral_value())


def compute_flags(ts: TrustScore) -> list:
    flags = []
    total = (ts.tasks_completed or 0) + (ts.tasks_disputed or 0)
    if total >= HIGH_DISPUTE_MIN_TASKS and Decimal(ts.tasks_disputed or 0) / total > HIGH_DISPUTE_RATE:
        flags.append('high_dispute_rate')
    if (ts.disputes_lost or 0) >= SERIAL_LOSER_THRESHOLD:
        flags.append('serial_dispute_loser')
    return flags


class TrustService:
    """All methods flush into the caller's transaction; none of them commit."""

    def get_or_create(self, wallet: str, role: str) -> TrustScore:
        wallet = wallet.lower()
        ts = TrustScore.query.filter_by(wallet_address=wallet, role=role).first()
        if ts:
            return ts
        ts = TrustScore(wallet_address=wallet, role=role, score=DEFAULT_SCORE,
                        tasks_completed=0, tasks_disputed=0, disputes_won=0,
                        disputes_lost=0, total_volume_usdc=Decimal('0'), flags=[])
        # A concurrent first insert for the same pair fails the unique
        # constraint and rolls back the caller's transaction.
        db.session.add(ts)
        return ts

    def get_score(self, wallet: str, role: str) -> int:
        ts = TrustScore.query.filter_by(wallet_address=wallet.lower(), role=role).first()
        return ts.score if ts else DEFAULT_SCORE

    def recalculate(self, ts: TrustScore):
        ts.score = compute_score(ts)
        ts.flags = compute_flags(ts)
        ts.updated_at = datetime.utcnow()

    def record_completion(self, wallet: str, role: str, volume: Decimal):
        ts = self.get_or_create(wallet, role)
        ts.tasks_completed = (ts.tasks_completed or 0) + 1
        ts.total_volume_usdc = Decimal(ts.total_volume_usdc or 0) + Decimal(volume)
        self.recalculate(ts)
        return ts

    def record_dispute_raised(self, wallet: str, role: str):
        ts = self.get_or_create(wallet, role)
        ts.tasks_disputed = (ts.tasks_disputed or 0) + 1
        self.recalculate(ts)
        return ts

    def record_dispute_outcome(self, winner: tuple, loser: tuple, dispute_id: str):
        """winner / loser are (wallet, role) pairs."""
        win = self.get_or_create(*winner)
        win.disputes_won = (win.disputes_won or 0) + 1
        self.recalculate(win)

        lose = self.get_or_create(*loser)
        lose.disputes_lost = (lose.disputes_lost or 0) + 1
        lose.last_dispute_lost_at = datetime.utcnow()
        self.recalculate(lose)

        self.log_abuse(loser[0], loser[1], 'lost_dispute', f"Lost dispute {dispute_id}")
        logger.info("Dispute %s outcome: winner=%s/%s score=%d loser=%s/%s score=%d",
                    dispute_id, winner[0], winner[1], win.score, loser[0], loser[1], lose.score)

    def log_abuse(self, wallet: str, role: str, action: str, details: str = None) -> AbuseLog:
        """Append an abuse entry; severity escalates with repeat offenses."""
        wallet = wallet.lower()
        prior = AbuseLog.query.filter_by(wallet_address=wallet, role=role).count()
        severity = SEVERITY_BY_OFFENSE.get(prior + 1, 'high')
        entry = AbuseLog(wallet_address=wallet, role=role, action=action,
                         details=details, severity=severity)
        db.session.add(entry)
        if severity == 'high':
            logger.warning("Repeat abuse: wallet=%s role=%s action=%s offenses=%d",
                           wallet, role, action, prior + 1)
        return entry

    def last_dispute_loss(self, wallet: str):
        """Most recent loss across both roles, or None."""
        rows = TrustScore.query.filter(
            TrustScore.wallet_address == wallet.lower(),
            TrustScore.last_dispute_lost_at.isnot(None),
        ).all()
        losses = [r.last_dispute_lost_at for r in rows]
        return max(losses) if losses else None

    @staticmethod
    def to_dict(ts: TrustScore) -> dict:
        return {
            "wallet_address": ts.wallet_address,
            "role": ts.role,
            "score": ts.score,
            "tasks_completed": ts.tasks_completed or 0,
            "tasks_disputed": ts.tasks_disputed or 0,
            "disputes_won": ts.disputes_won or 0,
            "disputes_lost": ts.disputes_lost or 0,
            "total_volume_usdc": str(Decimal(ts.total_volume_usdc or 0)),
            "flags": ts.flags or [],
            "last_dispute_lost_at": ts.last_dispute_lost_at.isoformat() if ts.last_dispute_lost_at else None,
        }

    def scores_for(self, wallet: str) -> list:
        rows = TrustScore.query.filter_by(wallet_address=wallet.lower()).all()
        return [self.to_dict(r) for r in rows]
