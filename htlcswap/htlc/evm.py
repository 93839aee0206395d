"""
EVM escrow ledger.

Talks to the HTLC escrow contract through web3.py. Escrow ids are the
bytes32 values from core.derive_escrow_id; hashlocks travel as bytes32 and
come back as raw bytes, so no hex text is ever compared.

Contract surface:
    createLock(bytes32 id, address recipient, address token, uint256 amount,
               bytes32 hashlock, uint256 timelockExclusive, uint256 timelockRecovery,
               string destChain, string destUser, string outputToken, uint256 minReturn)
    registerResolver(bytes32 id)          msg.sender becomes the resolver
    withdraw(bytes32 id, bytes preimage)
    refund(bytes32 id)
    getEscrow(bytes32 id) -> EscrowView
"""

import logging
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from ..chains.evm import EVMClient
from ..commitment import HashCommitment
from ..config import EVMConfig
from ..core import Escrow, LockParams, TxReceipt, to_bytes32, to_hex
from ..errors import (
    ConfigurationError, NetworkError, NotFound, InsufficientFunds, ProtocolError,
)
from .base import EscrowLedger, error_from_reason

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
MAX_UINT256 = 2**256 - 1

_ESCROW_VIEW_OUTPUTS = [
    {"name": "sender", "type": "address"},
    {"name": "recipient", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "timelockExclusive", "type": "uint256"},
    {"name": "timelockRecovery", "type": "uint256"},
    {"name": "withdrawn", "type": "bool"},
    {"name": "refunded", "type": "bool"},
    {"name": "resolver", "type": "address"},
    {"name": "destChain", "type": "string"},
    {"name": "destUser", "type": "string"},
    {"name": "outputToken", "type": "string"},
    {"name": "minReturn", "type": "uint256"},
    {"name": "updatedBlock", "type": "uint256"},
]

ESCROW_ABI = [
    {
        "name": "createLock",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "id", "type": "bytes32"},
            {"name": "recipient", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelockExclusive", "type": "uint256"},
            {"name": "timelockRecovery", "type": "uint256"},
            {"name": "destChain", "type": "string"},
            {"name": "destUser", "type": "string"},
            {"name": "outputToken", "type": "string"},
            {"name": "minReturn", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "registerResolver",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "id", "type": "bytes32"},
            {"name": "preimage", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "getEscrow",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "bytes32"}],
        "outputs": _ESCROW_VIEW_OUTPUTS,
    },
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


def _revert_reason(error: ContractLogicError) -> str:
    message = getattr(error, "message", None) or str(error)
    return message.replace("execution reverted: ", "").strip()


class EVMEscrowLedger(EscrowLedger):
    """EscrowLedger over the EVM escrow contract."""

    chain = "evm"

    def __init__(self, config: EVMConfig, commitment: HashCommitment,
                 client: Optional[EVMClient] = None):
        super().__init__(commitment, confirmations=config.confirmations)
        self.config = config
        self.client = client or EVMClient(config)
        self.escrow = self.client.contract(config.escrow_contract, ESCROW_ABI)

    @property
    def signer(self) -> Optional[str]:
        return self.client.address

    def normalize_account(self, account: Optional[str]) -> Optional[str]:
        if not account or account == ZERO_ADDRESS:
            return None
        if not Web3.is_address(account):
            raise ConfigurationError(f"Not an EVM address: {account!r}")
        return Web3.to_checksum_address(account)

    def _check_caller(self, caller: Optional[str]):
        if caller and self.normalize_account(caller) != self.signer:
            raise ConfigurationError(
                f"EVM ledger signs as {self.signer}, cannot act for {caller}"
            )

    def now(self) -> int:
        return self.client.block_timestamp()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _transact(self, fn, label: str, escrow_id: bytes) -> TxReceipt:
        try:
            receipt = self.client.send(fn, label=label)
        except ContractLogicError as e:
            raise error_from_reason(_revert_reason(e), self.chain)
        except OSError as e:
            raise NetworkError(f"EVM {label} failed: {e}")

        tx_hash = receipt["transactionHash"]
        tx_hash = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        if receipt["status"] != 1:
            raise ProtocolError(f"EVM {label} {tx_hash} reverted")

        block = receipt["blockNumber"]
        return TxReceipt(
            chain=self.chain,
            tx_hash=tx_hash,
            block_number=block,
            confirmations=self.client.confirmations(block),
            data={"escrow_id": to_hex(escrow_id), "action": label},
        )

    def _ensure_allowance(self, token: str, amount: int):
        """Approve the escrow contract to pull `amount` of `token` if needed."""
        erc20 = self.client.contract(token, ERC20_ABI)
        owner = self.signer
        spender = self.escrow.address
        try:
            balance = erc20.functions.balanceOf(owner).call()
            allowance = erc20.functions.allowance(owner, spender).call()
        except ContractLogicError as e:
            raise ConfigurationError(f"Token {token} is not an ERC20: {_revert_reason(e)}")
        except OSError as e:
            raise NetworkError(f"EVM token query failed: {e}")

        if balance < amount:
            raise InsufficientFunds(f"{owner} holds {balance} of {token}, needs {amount}")

        if allowance < amount:
            log.info(f"Allowance {allowance} < {amount}, approving escrow contract")
            self._transact(erc20.functions.approve(spender, MAX_UINT256), "approve", b"")

    def create_lock(self, params: LockParams) -> Escrow:
        self._check_caller(params.sender)
        token = self.normalize_account(params.token)
        recipient = self.normalize_account(params.recipient) or ZERO_ADDRESS
        if token is None:
            raise ConfigurationError("EVM escrow requires an ERC20 token address")

        self._ensure_allowance(token, params.amount)

        fn = self.escrow.functions.createLock(
            params.escrow_id,
            recipient,
            token,
            params.amount,
            params.hashlock,
            params.timelock_exclusive,
            params.timelock_recovery,
            params.dest_chain,
            params.dest_user,
            params.output_token,
            params.min_return,
        )
        log.info(f"EVM createLock {to_hex(params.escrow_id)[:16]}... amount={params.amount}")
        receipt = self._transact(fn, "createLock", params.escrow_id)

        escrow = self.get_lock(params.escrow_id)
        escrow.confirmations = receipt.confirmations
        return escrow

    def register_resolver(self, escrow_id: bytes, resolver: str) -> TxReceipt:
        self._check_caller(resolver)
        return self._transact(
            self.escrow.functions.registerResolver(escrow_id), "registerResolver", escrow_id
        )

    def withdraw(self, escrow_id: bytes, preimage: bytes, caller: str) -> TxReceipt:
        self._check_caller(caller)
        preimage = self.commitment.require_bytes(preimage, "preimage")
        return self._transact(
            self.escrow.functions.withdraw(escrow_id, preimage), "withdraw", escrow_id
        )

    def refund(self, escrow_id: bytes, caller: str) -> TxReceipt:
        self._check_caller(caller)
        return self._transact(self.escrow.functions.refund(escrow_id), "refund", escrow_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_lock(self, escrow_id: bytes, min_confirmations: int = 0) -> Escrow:
        head = self.client.block_number()
        block = head - (min_confirmations - 1) if min_confirmations > 0 else "latest"

        try:
            view = self.escrow.functions.getEscrow(escrow_id).call(block_identifier=block)
        except ContractLogicError as e:
            raise error_from_reason(_revert_reason(e), self.chain)
        except OSError as e:
            raise NetworkError(f"EVM getEscrow failed: {e}")

        (sender, recipient, token, amount, hashlock, t_excl, t_recov, withdrawn,
         refunded, resolver, dest_chain, dest_user, output_token, min_return,
         updated_block) = view

        if not sender or sender == ZERO_ADDRESS:
            raise NotFound(f"evm: escrow {to_hex(escrow_id)} not found")

        return Escrow(
            escrow_id=escrow_id,
            sender=Web3.to_checksum_address(sender),
            recipient=self.normalize_account(recipient),
            token=Web3.to_checksum_address(token),
            amount=int(amount),
            hashlock=to_bytes32(hashlock, "hashlock"),
            timelock_exclusive=int(t_excl),
            timelock_recovery=int(t_recov),
            withdrawn=bool(withdrawn),
            refunded=bool(refunded),
            resolver=self.normalize_account(resolver),
            dest_chain=dest_chain,
            dest_user=dest_user,
            output_token=output_token,
            min_return=int(min_return),
            chain=self.chain,
            confirmations=max(0, head - int(updated_block) + 1),
        )

    def confirmations(self, receipt: TxReceipt) -> int:
        return self.client.confirmations(receipt.block_number)
