"""
Base L2 USDC adapter: the escrow oracle.
verify_transfer / get_balance / send_payment over web3.
Degrades to "not connected" when RPC or keys are not configured.
"""
import logging
import threading
from decimal import Decimal

logger = logging.getLogger('relay.wallet')

# Minimal USDC ERC-20 ABI: Transfer event, transfer, balanceOf, decimals
USDC_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"}
        ],
        "name": "Transfer",
        "type": "event"
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]


class WalletService:
    def __init__(self, rpc_url='', usdc_address='', platform_key='', platform_address='',
                 min_confirmations=12):
        self.rpc_url = rpc_url
        self.usdc_address = usdc_address
        self.platform_key = platform_key
        self.platform_address = platform_address
        self.min_confirmations = min_confirmations

        self.w3 = None
        self.usdc_contract = None
        self.usdc_decimals = 6
        # Serializes nonce allocation for outgoing transfers
        self._tx_lock = threading.Lock()

        if self.rpc_url and self.usdc_address:
            try:
                from web3 import Web3
                self.w3 = Web3(Web3.HTTPProvider(self.rpc_url))
                self.usdc_contract = self.w3.eth.contract(
                    address=Web3.to_checksum_address(self.usdc_address),
                    abi=USDC_ABI,
                )
                self.usdc_decimals = self.usdc_contract.functions.decimals().call()
                if self.platform_key:
                    acct = self.w3.eth.account.from_key(self.platform_key)
                    self.platform_address = acct.address
                logger.info("Connected to %s, platform=%s", self.rpc_url, self.platform_address)
            except Exception as e:
                logger.warning("Init failed: %s. Running in off-chain mode.", e)
                self.w3 = None

    @classmethod
    def from_config(cls, config):
        return cls(
            rpc_url=config.get('RPC_URL', ''),
            usdc_address=config.get('USDC_CONTRACT', ''),
            platform_key=config.get('PLATFORM_WALLET_KEY', ''),
            platform_address=config.get('PLATFORM_WALLET_ADDRESS', ''),
            min_confirmations=config.get('MIN_CONFIRMATIONS', 12),
        )

    def is_connected(self) -> bool:
        return bool(self.w3 is not None and self.platform_key and self.w3.is_connected())

    def get_platform_address(self) -> str:
        return self.platform_address or ''

    def _to_raw(self, amount: Decimal) -> int:
        return int(amount * Decimal(10 ** self.usdc_decimals))

    def _from_raw(self, raw: int) -> Decimal:
        return Decimal(raw) / Decimal(10 ** self.usdc_decimals)

    def verify_transfer(self, tx_hash: str, from_address: str, to_address: str,
                        amount: Decimal) -> dict:
        """Check that tx_hash moved at least ``amount`` USDC from -> to.

        Returns {"verified": bool, "reason": str?, "amount": Decimal?}.
        A False result is retryable (pending confirmations, RPC hiccup).
        """
        if not self.is_connected():
            return {"verified": False, "reason": "Chain not connected"}

        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            if receipt['status'] != 1:
                return {"verified": False, "reason": "Transaction reverted"}

            confirmations = self.w3.eth.block_number - receipt.get('blockNumber', 0)
            if confirmations < self.min_confirmations:
                return {"verified": False,
                        "reason": f"Insufficient confirmations: {confirmations}/{self.min_confirmations}"}

            transfers = self.usdc_contract.events.Transfer().process_receipt(receipt)
            for t in transfers:
                if t['args']['to'].lower() != (to_address or '').lower():
                    continue
                if from_address and t['args']['from'].lower() != from_address.lower():
                    continue
                value = self._from_raw(t['args']['value'])
                if value < amount:
                    return {"verified": False, "reason": f"Amount {value} < {amount}"}
                if value > amount:
                    logger.warning("Overpayment on %s: amount=%s expected=%s", tx_hash, value, amount)
                return {"verified": True, "amount": value}

            return {"verified": False, "reason": "No matching USDC transfer in transaction"}
        except Exception as e:
            logger.warning("Transfer verification failed for %s: %s", tx_hash, e)
            return {"verified": False, "reason": str(e)}

    def get_balance(self, address: str) -> Decimal:
        if not self.is_connected():
            raise RuntimeError("Chain not connected")
        from web3 import Web3
        raw = self.usdc_contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        return self._from_raw(raw)

    def send_payment(self, to_address: str, amount: Decimal) -> str:
        """Send USDC from the platform wallet. Returns tx_hash; raises on failure."""
        if not self.is_connected():
            raise RuntimeError("Chain not connected or platform key missing")

        from web3 import Web3
        to_addr = Web3.to_checksum_address(to_address)

        with self._tx_lock:
            tx = self.usdc_contract.functions.transfer(to_addr, self._to_raw(amount)).build_transaction({
                'from': self.platform_address,
                'nonce': self.w3.eth.get_transaction_count(self.platform_address),
                'gas': 100_000,
                'gasPrice': self.w3.eth.gas_price,
            })
            signed = self.w3.eth.account.sign_transaction(tx, self.platform_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=60)

        if receipt['status'] != 1:
            raise RuntimeError(f"USDC transfer reverted: {tx_hash.hex()}")

        logger.info("Sent %s USDC to %s (tx=%s)", amount, to_address, tx_hash.hex())
        return tx_hash.hex()
