"""
EVM RPC client for htlcswap.

Wraps web3.py: one signing account, nonce sequencing, simulate-then-send,
and receipt polling. Contract-specific encoding lives in htlc/evm.py.
"""

import logging
import threading
from typing import Dict, Optional, Any

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from eth_account import Account

from ..config import EVMConfig
from ..errors import NetworkError, ConfigurationError

log = logging.getLogger(__name__)


class NonceTracker:
    """
    Local nonce sequencing per sender address.

    The chain's 'pending' count is the floor; transactions sent but not yet
    visible in the mempool are tracked locally so back-to-back sends from
    one account never reuse a nonce.
    """

    def __init__(self):
        self._next: Dict[str, int] = {}
        self.lock = threading.RLock()

    def next_nonce(self, address: str, chain_pending: int) -> int:
        with self.lock:
            nonce = max(self._next.get(address, 0), chain_pending)
            self._next[address] = nonce + 1
            return nonce

    def release(self, address: str, nonce: int):
        """Give back a nonce whose transaction was never broadcast."""
        with self.lock:
            if self._next.get(address) == nonce + 1:
                self._next[address] = nonce

    def reset(self, address: str):
        with self.lock:
            self._next.pop(address, None)


class EVMClient:
    """web3.py client bound to one signing account."""

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None,
                 nonces: Optional[NonceTracker] = None):
        self.config = config
        self.w3 = web3 or Web3(Web3.HTTPProvider(
            config.rpc_url, request_kwargs={"timeout": 30}
        ))
        self.nonces = nonces or NonceTracker()

        self.account = None
        if config.private_key:
            key = config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            try:
                self.account = Account.from_key(key)
            except ValueError as e:
                raise ConfigurationError(f"Invalid EVM private key: {e}")

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    def _require_account(self):
        if self.account is None:
            raise ConfigurationError("EVM private key not configured; cannot sign")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def contract(self, address: str, abi: list):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def block_number(self) -> int:
        try:
            return self.w3.eth.block_number
        except (OSError, ValueError) as e:
            raise NetworkError(f"EVM block_number failed: {e}")

    def block_timestamp(self, block: Any = "latest") -> int:
        try:
            return int(self.w3.eth.get_block(block)["timestamp"])
        except (OSError, ValueError) as e:
            raise NetworkError(f"EVM get_block failed: {e}")

    def confirmations(self, block_number: int) -> int:
        """Depth of a block: 1 when it is the head."""
        if not block_number:
            return 0
        return max(0, self.block_number() - block_number + 1)

    def get_receipt(self, tx_hash: str) -> Optional[Dict]:
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (OSError, ValueError) as e:
            raise NetworkError(f"EVM get_transaction_receipt failed: {e}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def send(self, fn, gas: Optional[int] = None, label: str = "tx") -> Dict:
        """
        Simulate, sign, send and wait for a contract call.

        Revert reasons from the simulation propagate as web3's
        ContractLogicError for the caller to translate.

        Returns:
            The transaction receipt
        """
        self._require_account()
        sender = self.account.address

        # Simulate first so reverts surface with their reason string
        fn.call({"from": sender})

        try:
            if gas is None:
                gas = int(fn.estimate_gas({"from": sender}) * 1.2)
            chain_pending = self.w3.eth.get_transaction_count(sender, "pending")
            gas_price = int(self.w3.eth.gas_price * self.config.gas_price_multiplier)
        except (OSError, ValueError) as e:
            raise NetworkError(f"EVM {label} preparation failed: {e}")

        nonce = self.nonces.next_nonce(sender, chain_pending)
        tx = fn.build_transaction({
            "from": sender,
            "nonce": nonce,
            "gas": gas,
            "gasPrice": gas_price,
            "chainId": self.config.chain_id,
        })
        signed = self.account.sign_transaction(tx)

        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (OSError, ValueError) as e:
            self.nonces.release(sender, nonce)
            raise NetworkError(f"EVM {label} broadcast failed: {e}")

        log.info(f"EVM {label} TX: {tx_hash.hex()} (nonce {nonce})")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.timeout
            )
        except TimeExhausted:
            raise NetworkError(f"EVM {label} {tx_hash.hex()} not mined within {self.config.timeout}s")
        except OSError as e:
            raise NetworkError(f"EVM {label} receipt polling failed: {e}")

        return receipt
