"""
NEAR escrow ledger.

Escrows are created by an NEP-141 `ft_transfer_call` into the escrow
contract, whose `ft_on_transfer` parses a JSON lock message. The contract
reports the hashlock as a [u8; 32] array; it travels out as lowercase hex
without a prefix. Both are normalized to raw bytes here.
"""

import json
import logging
from typing import Any, Dict, Optional

from ..chains.near import NearClient, NearRPCError, NearSigner
from ..commitment import HashCommitment
from ..config import NearConfig, is_valid_near_account
from ..core import Escrow, LockParams, TxReceipt, to_bytes32, to_hex
from ..errors import ConfigurationError, NotFound, InsufficientFunds, AlreadyRegistered
from .base import EscrowLedger, error_from_reason

log = logging.getLogger(__name__)

ONE_YOCTO = 1


def _failure_message(failure: Any) -> str:
    """Dig the panic text out of a NEAR TxExecutionError."""
    if isinstance(failure, dict):
        for key in ("ExecutionError", "FunctionCallError", "ActionError", "kind"):
            if key in failure:
                return _failure_message(failure[key])
        return json.dumps(failure)
    return str(failure)


def _outcome_failure(result: Dict[str, Any]) -> Optional[str]:
    """First failure message across the transaction and its receipts, if any."""
    statuses = [result.get("status", {})]
    for receipt in result.get("receipts_outcome", []):
        statuses.append(receipt.get("outcome", {}).get("status", {}))
    for status in statuses:
        if isinstance(status, dict) and "Failure" in status:
            return _failure_message(status["Failure"])
    return None


class NearEscrowLedger(EscrowLedger):
    """EscrowLedger over the NEAR escrow contract."""

    chain = "near"

    def __init__(self, config: NearConfig, commitment: HashCommitment,
                 client: Optional[NearClient] = None, signer: Optional[NearSigner] = None):
        super().__init__(commitment, confirmations=config.confirmations)
        self.config = config
        self.client = client or NearClient(config, signer=signer)
        self.contract_id = config.escrow_contract

    @property
    def signer(self) -> Optional[str]:
        return self.client.account_id

    def normalize_account(self, account: Optional[str]) -> Optional[str]:
        if not account:
            return None
        account = account.lower()
        if not is_valid_near_account(account):
            raise ConfigurationError(f"Not a NEAR account id: {account!r}")
        return account

    def _check_caller(self, caller: Optional[str]):
        if caller and self.normalize_account(caller) != self.signer:
            raise ConfigurationError(
                f"NEAR ledger signs as {self.signer}, cannot act for {caller}"
            )

    def now(self) -> int:
        return self.client.block_timestamp()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _transact(self, receiver_id: str, method: str, args: Dict[str, Any],
                  escrow_id: bytes, deposit: int = 0) -> TxReceipt:
        try:
            result = self.client.call_function(receiver_id, method, args, deposit=deposit)
        except NearRPCError as e:
            raise error_from_reason(str(e), self.chain)

        failure = _outcome_failure(result)
        if failure:
            raise error_from_reason(failure, self.chain)

        tx = result.get("transaction", {})
        outcome = result.get("transaction_outcome", {})
        return TxReceipt(
            chain=self.chain,
            tx_hash=tx.get("hash", ""),
            block_number=0,
            # send_tx waited for FINAL
            confirmations=self.required_confirmations,
            data={
                "escrow_id": to_hex(escrow_id),
                "action": method,
                "block_hash": outcome.get("block_hash", ""),
            },
        )

    def _precheck_token(self, token: str, sender: str, amount: int):
        balance = int(self.client.view(token, "ft_balance_of", {"account_id": sender}) or 0)
        if balance < amount:
            raise InsufficientFunds(f"{sender} holds {balance} of {token}, needs {amount}")

        storage = self.client.view(token, "storage_balance_of", {"account_id": self.contract_id})
        if storage is None:
            raise ConfigurationError(
                f"Escrow contract {self.contract_id} has no storage deposit on {token}"
            )

    def create_lock(self, params: LockParams) -> Escrow:
        self._check_caller(params.sender)
        token = self.normalize_account(params.token)
        self._precheck_token(token, self.signer, params.amount)

        msg = {
            "id": to_hex(params.escrow_id),
            "hashlock": to_hex(params.hashlock),
            "timelock_exclusive": params.timelock_exclusive,
            "timelock_recovery": params.timelock_recovery,
            "recipient": self.normalize_account(params.recipient),
            "dest_chain": params.dest_chain,
            "dest_user": params.dest_user,
            "min_return": str(params.min_return),
            "output_token": params.output_token,
        }
        args = {
            "receiver_id": self.contract_id,
            "amount": str(params.amount),
            "msg": json.dumps(msg, separators=(",", ":")),
        }
        log.info(f"NEAR ft_transfer_call lock {to_hex(params.escrow_id)[:16]}... "
                 f"amount={params.amount} token={token}")
        self._transact(token, "ft_transfer_call", args, params.escrow_id, deposit=ONE_YOCTO)
        return self.get_lock(params.escrow_id, min_confirmations=self.required_confirmations)

    def register_resolver(self, escrow_id: bytes, resolver: str) -> TxReceipt:
        self._check_caller(resolver)
        receipt = self._transact(
            self.contract_id, "register_resolver", {"id": to_hex(escrow_id)}, escrow_id
        )
        # Older contracts ignore a second registration instead of panicking
        escrow = self.get_lock(escrow_id, min_confirmations=self.required_confirmations)
        if escrow.resolver != self.normalize_account(resolver):
            raise AlreadyRegistered(f"near: resolver already set to {escrow.resolver}")
        return receipt

    def withdraw(self, escrow_id: bytes, preimage: bytes, caller: str) -> TxReceipt:
        self._check_caller(caller)
        preimage = self.commitment.require_bytes(preimage, "preimage")
        return self._transact(
            self.contract_id, "withdraw",
            {"id": to_hex(escrow_id), "preimage": preimage.hex()}, escrow_id,
        )

    def refund(self, escrow_id: bytes, caller: str) -> TxReceipt:
        self._check_caller(caller)
        return self._transact(self.contract_id, "refund", {"id": to_hex(escrow_id)}, escrow_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_lock(self, escrow_id: bytes, min_confirmations: int = 0) -> Escrow:
        finality = "final" if min_confirmations > 0 else "optimistic"
        try:
            data = self.client.view(self.contract_id, "get_escrow",
                                    {"id": to_hex(escrow_id)}, finality=finality)
        except NearRPCError as e:
            raise error_from_reason(str(e), self.chain)

        if not data:
            raise NotFound(f"near: escrow {to_hex(escrow_id)} not found ({finality})")

        return Escrow(
            escrow_id=escrow_id,
            sender=data["sender"],
            recipient=data.get("recipient"),
            token=data["token"],
            amount=int(data["amount"]),
            hashlock=to_bytes32(data["hashlock"], "hashlock"),
            timelock_exclusive=int(data["timelock_exclusive"]),
            timelock_recovery=int(data["timelock_recovery"]),
            withdrawn=bool(data.get("withdrawn", False)),
            refunded=bool(data.get("refunded", False)),
            resolver=data.get("resolver"),
            dest_chain=data.get("dest_chain", ""),
            dest_user=data.get("dest_user", ""),
            output_token=data.get("output_token", ""),
            min_return=int(data.get("min_return") or 0),
            chain=self.chain,
            confirmations=self.required_confirmations if finality == "final" else 0,
        )

    def confirmations(self, receipt: TxReceipt) -> int:
        # Receipts are only produced after FINAL
        return receipt.confirmations
