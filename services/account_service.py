import re as _re
import secrets

from models import db, atomic, Account
from core.money import fmt
from core.payloads import normalize_skills
from services.auth_service import ACCOUNT_KINDS, generate_api_key
from services.errors import ForbiddenError, NotFoundError, ValidationError

WALLET_RE = _re.compile(r'^0x[0-9a-fA-F]{40}$')
ASSIGNABLE_ROLES = ('admin',)


def _check_wallet(wallet_address):
    if wallet_address and not WALLET_RE.match(wallet_address):
        raise ValidationError("Invalid wallet address format")


def _check_webhook_url(url):
    from services.webhook_service import is_safe_webhook_url
    if not url.startswith('https://') and not url.startswith('http://'):
        raise ValidationError("webhook_url must be an http(s) URL")
    if not is_safe_webhook_url(url):
        raise ValidationError("webhook_url must resolve to a public address")


class AccountService:
    @staticmethod
    def register(kind: str, name: str, wallet_address: str = None,
                 skills=None, webhook_url: str = None) -> dict:
        if kind not in ACCOUNT_KINDS:
            raise ValidationError(f"kind must be one of {', '.join(ACCOUNT_KINDS)}")
        if not name or not isinstance(name, str) or len(name) > 200:
            raise ValidationError("name must be 1-200 characters")
        _check_wallet(wallet_address)
        try:
            skills = normalize_skills(skills)
        except ValueError as e:
            raise ValidationError(str(e))
        if webhook_url:
            _check_webhook_url(webhook_url)

        raw_key, key_hash = generate_api_key()
        account = Account(
            kind=kind,
            name=name,
            wallet_address=wallet_address,
            api_key_hash=key_hash,
            skills=skills,
            webhook_url=webhook_url,
            webhook_secret=secrets.token_hex(32) if webhook_url else None,
        )
        with atomic():
            db.session.add(account)

        result = AccountService._to_dict(account)
        result["api_key"] = raw_key
        if account.webhook_secret:
            result["webhook_secret"] = account.webhook_secret
        return result

    @staticmethod
    def get(account_id: str) -> Account:
        account = db.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    @staticmethod
    def get_profile(account_id: str) -> dict:
        return AccountService._to_dict(AccountService.get(account_id))

    @staticmethod
    def update_profile(caller, account_id: str, data: dict) -> dict:
        if caller.id != account_id:
            raise ForbiddenError("Cannot update another account's profile")
        account = AccountService.get(account_id)
        result_extra = {}

        if 'name' in data:
            name = data['name']
            if not isinstance(name, str) or not 1 <= len(name) <= 200:
                raise ValidationError("name must be 1-200 characters")
            account.name = name
        if 'wallet_address' in data:
            _check_wallet(data['wallet_address'])
            account.wallet_address = data['wallet_address']
        if 'skills' in data:
            try:
                account.skills = normalize_skills(data['skills'])
            except ValueError as e:
                raise ValidationError(str(e))
        if 'webhook_url' in data:
            url = data['webhook_url']
            if url:
                _check_webhook_url(url)
                account.webhook_url = url
                account.webhook_secret = secrets.token_hex(32)
                result_extra["webhook_secret"] = account.webhook_secret
            else:
                account.webhook_url = None
                account.webhook_secret = None

        db.session.commit()
        return {**AccountService._to_dict(account), **result_extra}

    @staticmethod
    def rotate_api_key(account_id: str) -> dict:
        """Generate a new API key, invalidating the old one."""
        account = AccountService.get(account_id)
        raw_key, key_hash = generate_api_key()
        account.api_key_hash = key_hash
        db.session.commit()
        return {"account_id": account_id, "api_key": raw_key}

    @staticmethod
    def grant_role(account_id: str, role: str) -> dict:
        """Operator tooling only (manage.py); there is no HTTP path to this."""
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"Unknown role: {role}")
        account = AccountService.get(account_id)
        roles = list(account.roles or [])
        if role not in roles:
            roles.append(role)
            account.roles = roles
            db.session.commit()
        return AccountService._to_dict(account)

    @staticmethod
    def _to_dict(account: Account) -> dict:
        return {
            "account_id": account.id,
            "kind": account.kind,
            "name": account.name,
            "wallet_address": account.wallet_address,
            "roles": account.roles or [],
            "skills": account.skills or [],
            "webhook_url": account.webhook_url,
            "tasks_completed": account.tasks_completed or 0,
            "total_earned": fmt(account.total_earned or 0),
            "created_at": account.created_at.isoformat() if account.created_at else None,
        }
