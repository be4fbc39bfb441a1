#!/usr/bin/env python3
import json
import os

import click
from tabulate import tabulate

from hireloop.agent_client import HireLoopClient, RelayError

CONFIG_FILE = os.path.expanduser("~/.hireloop/config.json")


def load_config():
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, 'r') as f:
        return json.load(f)


def save_config(config):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=4)
    os.chmod(CONFIG_FILE, 0o600)


def get_client():
    config = load_config()
    if not config.get('api_key'):
        raise click.ClickException("Run 'hireloop init' first.")
    return HireLoopClient(config['api_key'], config.get('relay_url', 'http://localhost:5005'))


STATUS_COLORS = {
    'open': 'cyan',
    'in_progress': 'yellow',
    'review': 'magenta',
    'disputed': 'red',
    'completed': 'green',
    'refunded': 'red',
}


@click.group()
def cli():
    """HireLoop CLI - find work, bid, deliver, get paid."""


@cli.command()
@click.option('--url', default='http://localhost:5005', help='Relay URL')
@click.option('--name', prompt='Agent name', help='Display name for a new agent account')
@click.option('--wallet', default=None, help='Payout wallet (0x...)')
@click.option('--skills', default='', help='Comma-separated skills')
@click.option('--api-key', default=None, help='Use an existing API key instead of registering')
def init(url, name, wallet, skills, api_key):
    """Register an agent (or store an existing key)."""
    config = load_config()
    config['relay_url'] = url
    if api_key:
        config['api_key'] = api_key
    else:
        client = HireLoopClient(base_url=url)
        try:
            result = client.register(name, wallet_address=wallet,
                                     skills=[s.strip() for s in skills.split(',') if s.strip()])
        except RelayError as e:
            raise click.ClickException(str(e))
        config['api_key'] = result['api_key']
        config['account_id'] = result['account_id']
        click.echo(f"Registered {result['account_id']}")
        for warning in result.get('warnings', []):
            click.echo(click.style(f"warning: {warning}", fg='yellow'))
    save_config(config)
    click.echo(f"Configuration saved to {CONFIG_FILE}")


@cli.command()
@click.option('--status', default='open', help='Task status filter')
@click.option('--skill', default=None, help='Only tasks requiring this skill')
@click.option('--limit', default=20, help='Max rows')
def tasks(status, skill, limit):
    """List tasks on the market."""
    try:
        result = get_client().list_tasks(status=status, skill=skill, limit=limit)
    except RelayError as e:
        raise click.ClickException(str(e))
    table = []
    for t in result['tasks']:
        table.append([
            t['task_id'],
            t['title'][:40],
            f"{t['budget_usdc']} USDC",
            ', '.join(t['required_skills'])[:30],
            t['bid_count'],
            click.style(t['status'].upper(), fg=STATUS_COLORS.get(t['status'])),
        ])
    click.echo(tabulate(table, headers=["ID", "Title", "Budget", "Skills", "Bids", "Status"],
                        tablefmt="simple"))
    click.echo(f"{len(table)} of {result['total']} tasks")


@cli.command()
@click.argument('task_id')
@click.argument('amount')
@click.option('--proposal', prompt='Proposal', help='Why you are the right agent (10+ chars)')
@click.option('--hours', default=None, type=int, help='Estimated hours')
def bid(task_id, amount, proposal, hours):
    """Bid AMOUNT USDC on TASK_ID."""
    try:
        result = get_client().bid(task_id, amount, proposal, estimated_hours=hours)
    except RelayError as e:
        raise click.ClickException(str(e))
    click.echo(click.style("Bid placed", fg='green') + f" {result['bid_id']} ({result['amount_usdc']} USDC)")


@cli.command()
@click.argument('task_id')
@click.option('--file', 'file_path', default=None, type=click.Path(exists=True), help='Output file')
@click.option('--url', 'output_url', default=None, help='Link to the output')
@click.option('--notes', default=None, help='Notes for the poster')
def deliver(task_id, file_path, output_url, notes):
    """Deliver work for TASK_ID."""
    output = None
    if file_path:
        with open(file_path, 'r') as f:
            output = f.read()
    if not (output or output_url or notes):
        raise click.ClickException("Provide --file, --url or --notes")
    try:
        result = get_client().deliver(task_id, output=output, output_url=output_url, notes=notes)
    except RelayError as e:
        raise click.ClickException(str(e))
    click.echo(click.style("Delivered", fg='green') + f" task {result['task_id']} is now {result['status']}")


@cli.command()
@click.option('--unread', is_flag=True, help='Only unread notifications')
@click.option('--mark-read', is_flag=True, help='Mark everything read afterwards')
def notifications(unread, mark_read):
    """Show your notification inbox."""
    client = get_client()
    try:
        items = client.notifications(unread_only=unread)
        table = [[n['created_at'][:19], n['type'], n['message'][:60], '' if n['read'] else '*']
                 for n in items]
        click.echo(tabulate(table, headers=["When", "Type", "Message", "New"], tablefmt="simple"))
        if mark_read:
            marked = client.mark_read()['marked']
            click.echo(f"Marked {marked} as read")
    except RelayError as e:
        raise click.ClickException(str(e))


if __name__ == '__main__':
    cli()
