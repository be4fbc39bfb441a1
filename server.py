"""
HireLoop Relay: Flask server.

Task statuses:     open -> in_progress -> review -> completed
                   open | in_progress -> cancelled
                   in_progress | review -> disputed -> completed | refunded
Dispute statuses:  open -> reviewing -> resolved | auto_resolved
Workflow statuses: draft -> running <-> paused -> completed | cancelled
"""
from dotenv import load_dotenv

load_dotenv()

from flask import Flask, request, jsonify, g  # noqa: E402
from models import db, WebhookEvent  # noqa: E402
from config import Config  # noqa: E402
from services.auth_service import require_auth, require_role, verify_api_key, Caller  # noqa: E402
from services.account_service import AccountService  # noqa: E402
from services.auto_bid_service import AutoBidService  # noqa: E402
from services.bid_service import BidService  # noqa: E402
from services.container import build_services  # noqa: E402
from services.dispute_service import DisputeService  # noqa: E402
from services.errors import ForbiddenError, NotFoundError, ServiceError, ValidationError  # noqa: E402
from services.escrow_service import EscrowService  # noqa: E402
from services.matching_service import Notifier  # noqa: E402
from services.rate_limiter import rate_limit, EvictionTimer  # noqa: E402
from services.task_service import TaskService  # noqa: E402
from services.trust_service import DEFAULT_SCORE  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402

import atexit  # noqa: E402
import json  # noqa: E402
import logging  # noqa: E402
import os  # noqa: E402
import threading  # noqa: E402
import uuid  # noqa: E402

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; request_id is attached inside a request."""
    def format(self, record):
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('relay')

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

from sqlalchemy import event as sa_event  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402


@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


logger.info("Starting HireLoop Relay")
if 'sqlite' in Config.SQLALCHEMY_DATABASE_URI:
    logger.warning("SQLite detected: row-level locking (with_for_update) is NOT supported. "
                   "Use PostgreSQL for production deployments.")

Config.validate_production()

if not Config.JUDGE_LLM_API_KEY:
    logger.warning("Dispute judge not configured. Set JUDGE_LLM_BASE_URL and JUDGE_LLM_API_KEY "
                   "to enable advisory verdicts.")

with app.app_context():
    db.create_all()
    logger.info("Database tables created / verified")

build_services(app)


def _services():
    return app.extensions['hireloop']


@app.before_request
def _attach_request_id():
    g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())


@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


@app.errorhandler(ServiceError)
def _service_error(e):
    response = jsonify(e.to_dict())
    response.status_code = e.status
    if getattr(e, 'retry_after', None):
        response.headers['Retry-After'] = str(e.retry_after)
    return response


@app.errorhandler(404)
def _not_found(e):
    return jsonify({"error": "Not found", "kind": "not_found"}), 404


@app.errorhandler(405)
def _method_not_allowed(e):
    return jsonify({"error": "Method not allowed", "kind": "validation"}), 405


# ---------------------------------------------------------------------------
# Background workers: auto-resolve sweep + limiter eviction
# ---------------------------------------------------------------------------

_shutdown_event = threading.Event()


def _auto_resolve_loop():
    """Run the deadline sweep every AUTO_RESOLVE_INTERVAL_SECONDS."""
    interval = app.config['AUTO_RESOLVE_INTERVAL_SECONDS']
    consecutive_errors = 0
    while not _shutdown_event.is_set():
        # Back off on consecutive errors (60s, 120s, 240s...) but never past the interval
        if consecutive_errors:
            sleep_time = min(60 * (2 ** (consecutive_errors - 1)), interval)
        else:
            sleep_time = interval
        if _shutdown_event.wait(timeout=sleep_time):
            break
        try:
            with app.app_context():
                try:
                    _services().auto_resolver.run_sweep()
                finally:
                    db.session.remove()
            consecutive_errors = 0
        except Exception as e:
            consecutive_errors += 1
            logger.error("Auto-resolve loop error (consecutive=%d): %s", consecutive_errors, e)


if app.config['AUTO_RESOLVE_ENABLED']:
    _auto_resolve_thread = threading.Thread(target=_auto_resolve_loop, daemon=True, name='auto-resolve')
    _auto_resolve_thread.start()

_evictor = EvictionTimer(_services().limiter, interval_seconds=300, app=app)
_evictor.start()


def _atexit_shutdown():
    _shutdown_event.set()
    _evictor.stop()
    _services().queue.shutdown(wait=False)


atexit.register(_atexit_shutdown)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _int_arg(name, default, lo=None, hi=None):
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if lo is not None:
        value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


def _optional_caller():
    """Resolve the caller if an API key is present; anonymous reads are allowed."""
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    account = verify_api_key(header[7:])
    return Caller.from_account(account) if account else None


def _is_party(task, caller) -> bool:
    return caller is not None and (
        caller.id in (task.posted_by_id, task.assigned_agent_id) or caller.is_admin
    )


# ===================================================================
# Health
# ===================================================================


@app.route('/health', methods=['GET'])
def health():
    services = _services()
    return jsonify({
        "status": "healthy",
        "service": "hireloop-relay",
        "chain_connected": bool(services.wallet.is_connected()),
        "judge_configured": bool(services.judge.is_configured()),
    }), 200


# ===================================================================
# Accounts
# ===================================================================


@app.route('/accounts', methods=['POST'])
@rate_limit()
def register_account():
    data = _body()
    result = AccountService.register(
        kind=data.get('kind', 'agent'),
        name=data.get('name'),
        wallet_address=data.get('wallet_address'),
        skills=data.get('skills'),
        webhook_url=data.get('webhook_url'),
    )
    if not result.get('wallet_address'):
        result["warnings"] = ["wallet_address not set: payouts and refunds will be left pending"]
    return jsonify(result), 201


@app.route('/accounts/<account_id>', methods=['GET'])
def get_account(account_id):
    return jsonify(AccountService.get_profile(account_id)), 200


@app.route('/accounts/<account_id>', methods=['PATCH'])
@require_auth
def update_account(account_id):
    return jsonify(AccountService.update_profile(g.caller, account_id, _body())), 200


@app.route('/accounts/<account_id>/rotate-key', methods=['POST'])
@require_auth
def rotate_key(account_id):
    if g.caller.id != account_id:
        raise ForbiddenError("Cannot rotate another account's API key")
    return jsonify(AccountService.rotate_api_key(account_id)), 200


# ===================================================================
# Tasks
# ===================================================================


@app.route('/tasks', methods=['POST'])
@require_auth
@rate_limit()
def create_task():
    task = _services().tasks.create_task(g.caller, _body())
    return jsonify(TaskService.to_dict(task)), 201


@app.route('/tasks', methods=['GET'])
def list_tasks():
    tasks, total = TaskService.list_tasks(
        status=request.args.get('status'),
        skill=request.args.get('skill'),
        posted_by=request.args.get('posted_by'),
        assigned_to=request.args.get('assigned_to'),
        limit=_int_arg('limit', 50, 1, 200),
        offset=_int_arg('offset', 0, 0),
    )
    return jsonify({
        "tasks": [TaskService.to_dict(t, include_deliverables=False) for t in tasks],
        "total": total,
    }), 200


@app.route('/tasks/<task_id>', methods=['GET'])
def get_task(task_id):
    task = TaskService.get_task(task_id)
    return jsonify(TaskService.to_dict(task, include_deliverables=_is_party(task, _optional_caller()))), 200


@app.route('/tasks/<task_id>/bids', methods=['POST'])
@require_auth
def submit_bid(task_id):
    bid = _services().bids.submit_bid(task_id, g.caller, _body())
    return jsonify(BidService.to_dict(bid)), 201


@app.route('/tasks/<task_id>/bids', methods=['GET'])
@require_auth
def list_bids(task_id):
    task = TaskService.get_task(task_id)
    bids = BidService.list_bids(task_id)
    if task.posted_by_id != g.caller.id and not g.caller.is_admin:
        bids = [b for b in bids if b['agent_id'] == g.caller.id]
    return jsonify({"task_id": task_id, "bids": bids}), 200


@app.route('/tasks/<task_id>/bids/<bid_id>/accept', methods=['POST'])
@require_auth
def accept_bid(task_id, bid_id):
    return jsonify(_services().bids.accept_bid(task_id, bid_id, g.caller)), 200


@app.route('/auto-bid-rules', methods=['GET'])
@require_auth
def list_auto_bid_rules():
    return jsonify({"rules": AutoBidService.list_rules(g.caller.id)}), 200


@app.route('/auto-bid-rules', methods=['POST'])
@require_auth
def create_auto_bid_rule():
    rule = _services().auto_bids.create_rule(g.caller, _body())
    return jsonify(AutoBidService.to_dict(rule)), 201


@app.route('/auto-bid-rules/<rule_id>', methods=['PATCH'])
@require_auth
def update_auto_bid_rule(rule_id):
    rule = _services().auto_bids.update_rule(rule_id, g.caller, _body())
    return jsonify(AutoBidService.to_dict(rule)), 200


@app.route('/auto-bid-rules/<rule_id>', methods=['DELETE'])
@require_auth
def delete_auto_bid_rule(rule_id):
    _services().auto_bids.delete_rule(rule_id, g.caller)
    return jsonify({"deleted": rule_id}), 200


@app.route('/tasks/<task_id>/escrow', methods=['POST'])
@require_auth
@rate_limit()
def deposit_escrow(task_id):
    result = _services().escrow.deposit(task_id, _body().get('tx_hash'), g.caller)
    return jsonify(result), 200 if result.get('verified') else 202


@app.route('/tasks/<task_id>/escrow', methods=['GET'])
@require_auth
def escrow_ledger(task_id):
    task = TaskService.get_task(task_id)
    if not _is_party(task, g.caller):
        raise ForbiddenError("Only task parties can view the escrow ledger")
    return jsonify({
        "task_id": task_id,
        "escrow_tx_hash": task.escrow_tx_hash,
        "transactions": EscrowService.list_transactions(task_id),
    }), 200


@app.route('/tasks/<task_id>/deliver', methods=['POST'])
@require_auth
def deliver_task(task_id):
    task = _services().tasks.deliver(task_id, g.caller, _body())
    return jsonify(TaskService.to_dict(task)), 200


@app.route('/tasks/<task_id>/complete', methods=['POST'])
@require_auth
def complete_task(task_id):
    task = _services().tasks.complete(task_id, g.caller)
    return jsonify(TaskService.to_dict(task)), 200


@app.route('/tasks/<task_id>/approve', methods=['POST'])
@require_auth
def approve_task(task_id):
    result = _services().tasks.approve(task_id, g.caller)
    return jsonify({"status": "completed", **result}), 200


@app.route('/tasks/<task_id>/cancel', methods=['POST'])
@require_auth
def cancel_task(task_id):
    task = _services().tasks.cancel(task_id, g.caller)
    return jsonify(TaskService.to_dict(task, include_deliverables=False)), 200


# ===================================================================
# Disputes
# ===================================================================


@app.route('/tasks/<task_id>/disputes', methods=['POST'])
@require_auth
def raise_dispute(task_id):
    dispute = _services().disputes.raise_dispute(task_id, g.caller, _body())
    return jsonify(DisputeService.to_dict(dispute)), 201


@app.route('/tasks/<task_id>/disputes', methods=['GET'])
@require_auth
def list_task_disputes(task_id):
    task = TaskService.get_task(task_id)
    if not _is_party(task, g.caller):
        raise ForbiddenError("Only task parties can view disputes")
    return jsonify({"task_id": task_id, "disputes": DisputeService.list_for_task(task_id)}), 200


@app.route('/disputes/<dispute_id>', methods=['GET'])
@require_auth
def get_dispute(dispute_id):
    dispute = _services().disputes.get_for_caller(dispute_id, g.caller)
    return jsonify(DisputeService.to_dict(dispute)), 200


@app.route('/disputes/<dispute_id>/evidence', methods=['POST'])
@require_auth
def submit_evidence(dispute_id):
    dispute = _services().disputes.submit_evidence(dispute_id, g.caller, _body())
    return jsonify(DisputeService.to_dict(dispute)), 200


@app.route('/disputes/<dispute_id>/resolve', methods=['POST'])
@require_auth
@require_role('admin')
def resolve_dispute(dispute_id):
    data = _body()
    result = _services().disputes.resolve_dispute(
        dispute_id, data.get('resolution'), data.get('refund_percentage'), g.caller)
    return jsonify(result), 200


@app.route('/disputes/<dispute_id>/judge', methods=['POST'])
@require_auth
def judge_dispute(dispute_id):
    return jsonify(_services().disputes.judge_dispute(dispute_id, g.caller)), 200


@app.route('/disputes/<dispute_id>/apply-verdict', methods=['POST'])
@require_auth
@require_role('admin')
def apply_verdict(dispute_id):
    return jsonify(_services().disputes.apply_verdict(dispute_id, g.caller)), 200


# ===================================================================
# Workflows
# ===================================================================


@app.route('/workflows', methods=['POST'])
@require_auth
@rate_limit()
def create_workflow():
    workflow = _services().workflows.create_workflow(g.caller, _body())
    return jsonify(WorkflowService.to_dict(workflow)), 201


@app.route('/workflows/templates', methods=['GET'])
def list_workflow_templates():
    return jsonify({"templates": WorkflowService.list_templates()}), 200


@app.route('/workflows/templates/<template_id>/instantiate', methods=['POST'])
@require_auth
def instantiate_template(template_id):
    workflow = _services().workflows.create_from_template(template_id, g.caller, _body().get('name'))
    return jsonify(WorkflowService.to_dict(workflow)), 201


@app.route('/workflows/<workflow_id>', methods=['GET'])
@require_auth
def get_workflow(workflow_id):
    return jsonify(_services().workflows.get_workflow(workflow_id, g.caller)), 200


@app.route('/workflows/<workflow_id>/<action>', methods=['POST'])
@require_auth
def workflow_action(workflow_id, action):
    workflows = _services().workflows
    handlers = {
        'start': workflows.start_workflow,
        'pause': workflows.pause_workflow,
        'resume': workflows.resume_workflow,
        'cancel': workflows.cancel_workflow,
    }
    if action not in handlers:
        raise NotFoundError(f"Unknown workflow action: {action}")
    workflow = handlers[action](workflow_id, g.caller)
    return jsonify(WorkflowService.to_dict(workflow)), 200


# ===================================================================
# Notifications & trust
# ===================================================================


@app.route('/notifications', methods=['GET'])
@require_auth
def list_notifications():
    unread_only = request.args.get('unread', 'false').lower() in ('true', '1')
    items = Notifier.list_notifications(g.caller.id, unread_only=unread_only,
                                        limit=_int_arg('limit', 50, 1, 200))
    return jsonify({"notifications": items}), 200


@app.route('/notifications/read', methods=['POST'])
@require_auth
def mark_notifications_read():
    ids = _body().get('ids')
    if ids is not None and (not isinstance(ids, list) or not all(isinstance(i, str) for i in ids)):
        raise ValidationError("ids must be a list of notification ids")
    return jsonify({"marked": Notifier.mark_read(g.caller.id, ids)}), 200


@app.route('/trust/<wallet>', methods=['GET'])
def get_trust(wallet):
    scores = _services().trust.scores_for(wallet)
    if not scores:
        scores = [{"wallet_address": wallet.lower(), "role": role, "score": DEFAULT_SCORE}
                  for role in ('buyer', 'agent')]
    return jsonify({"wallet_address": wallet.lower(), "scores": scores}), 200


# ===================================================================
# Admin
# ===================================================================


@app.route('/admin/auto-resolve', methods=['POST'])
@require_auth
@require_role('admin')
def admin_auto_resolve():
    logger.info("Manual auto-resolve sweep triggered by %s", g.caller.id)
    return jsonify(_services().auto_resolver.run_sweep()), 200


@app.route('/admin/webhooks/failed', methods=['GET'])
@require_auth
@require_role('admin')
def admin_failed_webhooks():
    rows = WebhookEvent.query.filter_by(status='failed').order_by(
        WebhookEvent.created_at.desc()).limit(_int_arg('limit', 50, 1, 200)).all()
    return jsonify({
        "events": [{
            "id": e.id,
            "account_id": e.account_id,
            "event_type": e.event_type,
            "attempts": e.attempts,
            "last_error": e.last_error,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        } for e in rows],
        "recent_dead_letters": _services().queue.dead_letters,
    }), 200


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    app.run(port=5005, debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'))
