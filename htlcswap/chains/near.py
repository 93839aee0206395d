"""
NEAR JSON-RPC client for htlcswap.

Reads go through `query`/`call_function` with base64 JSON args. Writes are
signed by an injected NearSigner and submitted with `send_tx`; key handling
stays outside this package.
"""

import json
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..config import NearConfig
from ..errors import NetworkError, ConfigurationError

log = logging.getLogger(__name__)


class NearRPCError(Exception):
    """JSON-RPC level error returned by a NEAR node."""

    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.data = data


class NearSigner(ABC):
    """Builds signed transactions for one NEAR account."""

    account_id: str = ""

    @abstractmethod
    def sign_function_call(self, receiver_id: str, method: str, args: Dict[str, Any],
                           gas: int, deposit: int) -> str:
        """Return a base64-encoded SignedTransaction calling `method` on `receiver_id`."""


def encode_args(args: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(args, separators=(",", ":")).encode()).decode()


class NearClient:
    """JSON-RPC client for one NEAR endpoint."""

    def __init__(self, config: NearConfig, signer: Optional[NearSigner] = None,
                 http: Optional[httpx.Client] = None):
        self.config = config
        self.signer = signer
        self.http = http or httpx.Client(timeout=config.timeout)
        self._request_id = 0

    @property
    def account_id(self) -> Optional[str]:
        if self.signer is not None:
            return self.signer.account_id
        return self.config.account_id or None

    def close(self):
        self.http.close()

    def _call_rpc(self, method: str, params: Any) -> Any:
        """Make a JSON-RPC call. Transport failures become NetworkError."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": f"htlcswap-{self._request_id}",
            "method": method,
            "params": params,
        }
        try:
            response = self.http.post(self.config.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise NetworkError(f"NEAR RPC {method} HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise NetworkError(f"NEAR RPC {method} failed: {e}")
        except ValueError as e:
            raise NetworkError(f"NEAR RPC {method} returned invalid JSON: {e}")

        if "error" in data:
            error = data["error"]
            cause = error.get("cause", {}) if isinstance(error, dict) else {}
            name = cause.get("name") or (error.get("name") if isinstance(error, dict) else "")
            if name in ("TIMEOUT_ERROR", "INTERNAL_ERROR", "NO_SYNCED_BLOCKS"):
                raise NetworkError(f"NEAR RPC {method}: {name}")
            raise NearRPCError(f"NEAR RPC {method} error: {json.dumps(error)}", data=error)

        result = data.get("result")
        # View-call failures come back as a result with an "error" field
        if isinstance(result, dict) and "error" in result and "result" not in result:
            raise NearRPCError(str(result["error"]), data=result)
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def view(self, contract_id: str, method: str, args: Optional[Dict[str, Any]] = None,
             finality: Optional[str] = None) -> Any:
        """Call a view method and decode its JSON result."""
        result = self._call_rpc("query", {
            "request_type": "call_function",
            "finality": finality or self.config.finality,
            "account_id": contract_id,
            "method_name": method,
            "args_base64": encode_args(args or {}),
        })
        raw = bytes(result.get("result", []))
        if not raw:
            return None
        return json.loads(raw.decode())

    def block(self, finality: Optional[str] = None) -> Dict[str, Any]:
        result = self._call_rpc("block", {"finality": finality or self.config.finality})
        return result["header"]

    def block_timestamp(self) -> int:
        """Latest block time in unix seconds (headers carry nanoseconds)."""
        return int(self.block("optimistic")["timestamp"]) // 1_000_000_000

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def call_function(self, contract_id: str, method: str, args: Dict[str, Any],
                      deposit: int = 0, gas: Optional[int] = None) -> Dict[str, Any]:
        """
        Sign and submit a function call, waiting for it to be final.

        Returns:
            The final execution outcome
        """
        if self.signer is None:
            raise ConfigurationError("No NEAR signer configured; cannot send transactions")

        signed = self.signer.sign_function_call(
            contract_id, method, args, gas or self.config.gas, deposit
        )
        log.info(f"NEAR {method} on {contract_id} from {self.signer.account_id}")
        return self._call_rpc("send_tx", {
            "signed_tx_base64": signed,
            "wait_until": "FINAL",
        })
