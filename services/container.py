"""
Builds the per-app service graph and stores it in app.extensions['hireloop'].

Oracles (wallet, judge) and the rate limiter can be injected, which is how
tests swap in fakes.
"""
from dataclasses import dataclass

from services.auto_bid_service import AutoBidService
from services.auto_resolve import AutoResolver
from services.bid_service import BidService
from services.dispute_service import DisputeService
from services.escrow_service import EscrowService
from services.judge_service import JudgeService
from services.matching_service import MatchingService, Notifier
from services.rate_limiter import build_rate_limiter
from services.task_service import TaskService
from services.trust_service import TrustService
from services.wallet_service import WalletService
from services.webhook_service import OutboundQueue
from services.workflow_service import WorkflowService


@dataclass
class ServiceContainer:
    wallet: object
    judge: object
    limiter: object
    queue: OutboundQueue
    notifier: Notifier
    auto_bids: AutoBidService
    matching: MatchingService
    trust: TrustService
    escrow: EscrowService
    tasks: TaskService
    bids: BidService
    disputes: DisputeService
    workflows: WorkflowService
    auto_resolver: AutoResolver


def build_services(app, wallet=None, judge=None, limiter=None, queue=None) -> ServiceContainer:
    config = app.config
    wallet = wallet if wallet is not None else WalletService.from_config(config)
    judge = judge if judge is not None else JudgeService.from_config(config)
    limiter = limiter if limiter is not None else build_rate_limiter(config)
    queue = queue if queue is not None else OutboundQueue(
        app, max_workers=config['WEBHOOK_WORKERS'], timeout=config['WEBHOOK_TIMEOUT_SECONDS'])

    notifier = Notifier(queue)
    trust = TrustService()
    escrow = EscrowService(wallet, fee_bps=config['PLATFORM_FEE_BPS'],
                           fee_wallet=config.get('FEE_WALLET_ADDRESS', ''),
                           dev_mode=config.get('DEV_MODE', False))
    bids = BidService(limiter, trust, notifier, bid_limit=config['BID_RATE_LIMIT'],
                      low_trust_threshold=config['LOW_TRUST_THRESHOLD'])
    auto_bids = AutoBidService()
    matching = MatchingService(notifier, bids, auto_bids, trust)
    tasks = TaskService(escrow, trust, notifier, matching, min_budget=config['MIN_TASK_BUDGET'])
    disputes = DisputeService(
        tasks, trust, limiter, notifier, judge,
        response_hours=config['DISPUTE_RESPONSE_HOURS'],
        max_active=config['MAX_ACTIVE_DISPUTES'],
        cooldown_days=config['DISPUTE_COOLDOWN_DAYS'],
        min_tasks=config['MIN_TASKS_FOR_DISPUTE'],
    )
    workflows = WorkflowService(tasks, notifier, matching)
    tasks.completion_listeners.append(workflows.on_task_completed)
    tasks.failure_listeners.append(workflows.on_task_failed)
    auto_resolver = AutoResolver.from_config(tasks, disputes, config)

    services = ServiceContainer(
        wallet=wallet, judge=judge, limiter=limiter, queue=queue, notifier=notifier,
        auto_bids=auto_bids, matching=matching,
        trust=trust, escrow=escrow, tasks=tasks, bids=bids, disputes=disputes,
        workflows=workflows, auto_resolver=auto_resolver,
    )
    app.extensions['hireloop'] = services
    return services
