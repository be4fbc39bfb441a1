import os


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///hireloop_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode: when True and the chain is unreachable, escrow movements are
    # recorded as off-chain ledger events and deposits are accepted unverified.
    DEV_MODE = _env_bool('DEV_MODE')

    # Chain (Base L2)
    RPC_URL = os.environ.get('RPC_URL', '')
    USDC_CONTRACT = os.environ.get('USDC_CONTRACT', '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913')
    PLATFORM_WALLET_ADDRESS = os.environ.get('PLATFORM_WALLET_ADDRESS', '')
    PLATFORM_WALLET_KEY = os.environ.get('PLATFORM_WALLET_KEY', '')
    FEE_WALLET_ADDRESS = os.environ.get('FEE_WALLET_ADDRESS', '')
    MIN_CONFIRMATIONS = int(os.environ.get('MIN_CONFIRMATIONS', '12'))
    MIN_TASK_BUDGET = os.environ.get('MIN_TASK_BUDGET', '0.1')

    # Platform fee (basis points: 800 = 8%)
    PLATFORM_FEE_BPS = int(os.environ.get('PLATFORM_FEE_BPS', '800'))

    # Timeouts
    AUTO_APPROVE_HOURS = int(os.environ.get('AUTO_APPROVE_HOURS', '72'))
    DISPUTE_RESPONSE_HOURS = int(os.environ.get('DISPUTE_RESPONSE_HOURS', '48'))
    # Refund share applied when neither party answers a dispute in time
    NO_RESPONSE_REFUND_PERCENT = int(os.environ.get('NO_RESPONSE_REFUND_PERCENT', '50'))

    # Dispute abuse controls
    MIN_TASKS_FOR_DISPUTE = int(os.environ.get('MIN_TASKS_FOR_DISPUTE', '2'))
    MAX_ACTIVE_DISPUTES = int(os.environ.get('MAX_ACTIVE_DISPUTES', '3'))
    DISPUTE_COOLDOWN_DAYS = int(os.environ.get('DISPUTE_COOLDOWN_DAYS', '7'))

    # Rate limits (sliding window)
    RATE_LIMIT_BACKEND = os.environ.get('RATE_LIMIT_BACKEND', 'memory')  # memory | database
    API_RATE_LIMIT = int(os.environ.get('API_RATE_LIMIT', '120'))
    API_RATE_WINDOW_SECONDS = int(os.environ.get('API_RATE_WINDOW_SECONDS', '60'))
    BID_RATE_LIMIT = int(os.environ.get('BID_RATE_LIMIT', '60'))
    BID_RATE_WINDOW_SECONDS = int(os.environ.get('BID_RATE_WINDOW_SECONDS', '3600'))
    DISPUTE_RATE_LIMIT = int(os.environ.get('DISPUTE_RATE_LIMIT', '5'))
    DISPUTE_RATE_WINDOW_SECONDS = int(os.environ.get('DISPUTE_RATE_WINDOW_SECONDS', '86400'))
    LOW_TRUST_THRESHOLD = int(os.environ.get('LOW_TRUST_THRESHOLD', '30'))

    # Dispute judge LLM (OpenAI-compatible)
    JUDGE_LLM_BASE_URL = os.environ.get('JUDGE_LLM_BASE_URL', 'https://openrouter.ai/api/v1')
    JUDGE_LLM_API_KEY = os.environ.get('JUDGE_LLM_API_KEY', '')
    JUDGE_LLM_MODEL = os.environ.get('JUDGE_LLM_MODEL', 'openai/gpt-4o')
    JUDGE_TIMEOUT_SECONDS = int(os.environ.get('JUDGE_TIMEOUT_SECONDS', '60'))

    # Auto-resolution sweep
    AUTO_RESOLVE_ENABLED = _env_bool('AUTO_RESOLVE_ENABLED', 'true')
    AUTO_RESOLVE_INTERVAL_SECONDS = int(os.environ.get('AUTO_RESOLVE_INTERVAL_SECONDS', '3600'))

    # Outbound webhooks
    WEBHOOK_TIMEOUT_SECONDS = int(os.environ.get('WEBHOOK_TIMEOUT_SECONDS', '10'))
    WEBHOOK_WORKERS = int(os.environ.get('WEBHOOK_WORKERS', '8'))

    @classmethod
    def validate_production(cls):
        """Startup check: reject SQLite and default secrets outside DEV_MODE."""
        if cls.DEV_MODE:
            return
        if 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
        if not cls.PLATFORM_WALLET_ADDRESS:
            raise RuntimeError(
                "FATAL: PLATFORM_WALLET_ADDRESS must be set in production. "
                "Escrow deposits are verified against this address."
            )
