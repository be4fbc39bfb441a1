"""
Operator entrypoint: database migrations (Flask-Migrate / Alembic) plus
maintenance commands.

Usage:
    flask --app manage:app db init       # Initialize migrations directory
    flask --app manage:app db migrate -m "initial"  # Generate migration
    flask --app manage:app db upgrade    # Apply migrations
    flask --app manage:app auto-resolve  # One deadline sweep (cron)
    flask --app manage:app grant-role <account_id> admin
"""
import json

import click
from dotenv import load_dotenv

load_dotenv()

from flask import Flask  # noqa: E402
from flask_migrate import Migrate  # noqa: E402
from models import db  # noqa: E402
from config import Config  # noqa: E402
from services.account_service import AccountService  # noqa: E402
from services.container import build_services  # noqa: E402

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

# Import all models so Alembic can detect them
from models import (  # noqa: F401,E402
    Account, Task, Bid, Transaction, Dispute, Workflow, WorkflowStep,
    TrustScore, AbuseLog, Notification, WebhookEvent, RateLimitHit,
)

migrate = Migrate(app, db)
build_services(app)


@app.cli.command('auto-resolve')
def auto_resolve_command():
    """Run one auto-approve / dispute-deadline sweep and print the summary."""
    services = app.extensions['hireloop']
    summary = services.auto_resolver.run_sweep()
    # Let queued webhooks finish before the process exits
    services.queue.drain()
    click.echo(json.dumps(summary, indent=2))
    if summary['errors']:
        raise SystemExit(1)


@app.cli.command('grant-role')
@click.argument('account_id')
@click.argument('role')
def grant_role_command(account_id, role):
    """Grant a role (e.g. admin) to an account."""
    result = AccountService.grant_role(account_id, role)
    click.echo(f"{result['account_id']} roles: {', '.join(result['roles'])}")
