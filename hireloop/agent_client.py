import requests

from services.webhook_service import verify_signature, SIGNATURE_HEADER

RELAY_URL = "http://localhost:5005"


class RelayError(Exception):
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.payload = payload if isinstance(payload, dict) else {"error": str(payload)}
        self.kind = self.payload.get('kind')
        super().__init__(f"{status_code} {self.kind}: {self.payload.get('error')}")


class HireLoopClient:
    """Thin HTTP client for agents and posters talking to a relay."""

    def __init__(self, api_key=None, base_url=RELAY_URL, timeout=30):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method, path, json=None, params=None):
        headers = {}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        resp = self.session.request(method, f"{self.base_url}{path}", json=json, params=params,
                                    headers=headers, timeout=self.timeout)
        try:
            payload = resp.json()
        except ValueError:
            payload = {"error": resp.text}
        if resp.status_code >= 400:
            raise RelayError(resp.status_code, payload)
        return payload

    # -- accounts --------------------------------------------------------

    def register(self, name, kind='agent', wallet_address=None, skills=None, webhook_url=None):
        """Register and keep the returned API key on this client."""
        result = self._request('POST', '/accounts', json={
            "kind": kind, "name": name, "wallet_address": wallet_address,
            "skills": skills or [], "webhook_url": webhook_url,
        })
        self.api_key = result['api_key']
        return result

    def get_account(self, account_id):
        return self._request('GET', f'/accounts/{account_id}')

    def update_account(self, account_id, **fields):
        return self._request('PATCH', f'/accounts/{account_id}', json=fields)

    # -- tasks -----------------------------------------------------------

    def post_task(self, title, description, budget_usdc, required_skills=None, category='general'):
        return self._request('POST', '/tasks', json={
            "title": title, "description": description, "budget_usdc": str(budget_usdc),
            "required_skills": required_skills or [], "category": category,
        })

    def list_tasks(self, status='open', skill=None, limit=50, offset=0):
        params = {"status": status, "limit": limit, "offset": offset}
        if skill:
            params["skill"] = skill
        return self._request('GET', '/tasks', params=params)

    def get_task(self, task_id):
        return self._request('GET', f'/tasks/{task_id}')

    def bid(self, task_id, amount_usdc, proposal, estimated_hours=None):
        body = {"amount_usdc": str(amount_usdc), "proposal": proposal}
        if estimated_hours is not None:
            body["estimated_hours"] = estimated_hours
        return self._request('POST', f'/tasks/{task_id}/bids', json=body)

    def list_bids(self, task_id):
        return self._request('GET', f'/tasks/{task_id}/bids')['bids']

    def accept_bid(self, task_id, bid_id):
        return self._request('POST', f'/tasks/{task_id}/bids/{bid_id}/accept')

    def list_auto_bid_rules(self):
        return self._request('GET', '/auto-bid-rules')['rules']

    def create_auto_bid_rule(self, **rule):
        return self._request('POST', '/auto-bid-rules', json=rule)

    def update_auto_bid_rule(self, rule_id, **changes):
        return self._request('PATCH', f'/auto-bid-rules/{rule_id}', json=changes)

    def delete_auto_bid_rule(self, rule_id):
        return self._request('DELETE', f'/auto-bid-rules/{rule_id}')

    def deposit_escrow(self, task_id, tx_hash):
        return self._request('POST', f'/tasks/{task_id}/escrow', json={"tx_hash": tx_hash})

    def deliver(self, task_id, output=None, output_url=None, notes=None):
        body = {k: v for k, v in (("output", output), ("output_url", output_url), ("notes", notes))
                if v is not None}
        return self._request('POST', f'/tasks/{task_id}/deliver', json=body)

    def approve(self, task_id):
        return self._request('POST', f'/tasks/{task_id}/approve')

    def cancel(self, task_id):
        return self._request('POST', f'/tasks/{task_id}/cancel')

    # -- disputes --------------------------------------------------------

    def raise_dispute(self, task_id, reason, description, evidence=None):
        body = {"reason": reason, "description": description}
        if evidence:
            body["evidence"] = evidence
        return self._request('POST', f'/tasks/{task_id}/disputes', json=body)

    def submit_evidence(self, dispute_id, text, links=None):
        return self._request('POST', f'/disputes/{dispute_id}/evidence',
                             json={"text": text, "links": links or []})

    def get_dispute(self, dispute_id):
        return self._request('GET', f'/disputes/{dispute_id}')

    # -- notifications / trust -------------------------------------------

    def notifications(self, unread_only=False, limit=50):
        params = {"unread": 'true' if unread_only else 'false', "limit": limit}
        return self._request('GET', '/notifications', params=params)['notifications']

    def mark_read(self, ids=None):
        return self._request('POST', '/notifications/read', json={"ids": ids} if ids else {})

    def trust(self, wallet):
        return self._request('GET', f'/trust/{wallet}')

    @staticmethod
    def verify_webhook(secret, body, headers):
        """Check an incoming webhook's HMAC signature against the raw body."""
        return verify_signature(secret, body, headers.get(SIGNATURE_HEADER))
