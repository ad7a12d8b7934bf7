# app/services/solana_rpc.py
import base64
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.x402.svm import TOKEN_PROGRAM_ID

logger = logging.getLogger(__name__)


class SolanaRpcError(Exception):
    """The RPC node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class SolanaRpcClient:
    """
    Minimal Solana JSON-RPC client.

    Covers the calls the gateway needs: token balance lookups for membership
    checks, raw transaction broadcast, and (for payers) the latest blockhash.
    It is both the BalanceOracle and the Broadcaster used by the settlement
    engine.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = str(rpc_url or settings.SOLANA_RPC_URL)
        self.timeout = timeout if timeout is not None else settings.SOLANA_RPC_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        """
        Perform a JSON-RPC call and return its ``result``.

        Raises:
            RequestException: If the HTTP request fails
            SolanaRpcError: If the node returns an error or a malformed response
        """
        self._request_id += 1
        body = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        try:
            response = self.session.post(self.rpc_url, json=body, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except RequestException as e:
            logger.error(f"Solana RPC {method} failed ({self.rpc_url}): {e}")
            raise
        except ValueError as e:
            raise SolanaRpcError(f"Invalid RPC response to {method}: {e}") from e

        if not isinstance(result, dict):
            raise SolanaRpcError(f"Invalid RPC response to {method}: expected a JSON object")

        if "error" in result:
            error = result["error"] or {}
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            data = error.get("data") if isinstance(error, dict) else None
            logger.warning(f"Solana RPC {method} returned error {code}: {message}")
            raise SolanaRpcError(message, code=code, data=data)

        if "result" not in result:
            raise SolanaRpcError(f"Invalid RPC response to {method}: missing 'result' field")

        return result["result"]

    def get_token_accounts_by_owner(
        self,
        owner: str,
        program_id: str = TOKEN_PROGRAM_ID,
    ) -> List[Dict[str, Any]]:
        """
        List the parsed token accounts owned by ``owner`` under ``program_id``.

        Returns:
            The ``value`` list of ``{pubkey, account}`` entries, with account
            data in ``jsonParsed`` form
        """
        result = self._call(
            "getTokenAccountsByOwner",
            [owner, {"programId": program_id}, {"encoding": "jsonParsed"}],
        )
        accounts = result.get("value") if isinstance(result, dict) else None
        if not isinstance(accounts, list):
            logger.warning(f"Unexpected getTokenAccountsByOwner result for {owner}: {type(accounts)}")
            return []
        return accounts

    def find_token_account(self, owner: str, mint: str) -> Optional[Dict[str, Any]]:
        """Return the first token account of ``owner`` holding ``mint``, if any."""
        for entry in self.get_token_accounts_by_owner(owner):
            info = _parsed_info(entry)
            if info.get("mint") == mint:
                return entry
        return None

    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        """
        Balance of ``mint`` held by ``owner``, in UI units (decimals applied).

        Returns Decimal 0 when the owner has no account for the mint.
        """
        entry = self.find_token_account(owner, mint)
        if entry is None:
            logger.debug(f"No {mint} token account for {owner}")
            return Decimal(0)

        token_amount = _parsed_info(entry).get("tokenAmount") or {}
        ui_amount = token_amount.get("uiAmountString")
        if ui_amount is None:
            ui_amount = token_amount.get("uiAmount")
        try:
            return Decimal(str(ui_amount)) if ui_amount is not None else Decimal(0)
        except InvalidOperation as e:
            raise SolanaRpcError(f"Invalid token amount for {owner}: {ui_amount!r}") from e

    def send_raw_transaction(self, raw: bytes, skip_preflight: bool = True) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            The transaction signature (base58)
        """
        signature = self._call(
            "sendTransaction",
            [
                base64.b64encode(raw).decode("ascii"),
                {"encoding": "base64", "skipPreflight": skip_preflight},
            ],
        )
        if not isinstance(signature, str) or not signature:
            raise SolanaRpcError(f"Invalid sendTransaction result: {signature!r}")
        logger.info(f"Broadcast transaction {signature}")
        return signature

    def submit(self, raw: bytes) -> str:
        """Broadcaster interface: send without preflight simulation."""
        return self.send_raw_transaction(raw, skip_preflight=True)

    def get_latest_blockhash(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": "finalized"}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as e:
            raise SolanaRpcError(f"Invalid getLatestBlockhash result: {result!r}") from e


def _parsed_info(entry: Dict[str, Any]) -> Dict[str, Any]:
    try:
        info = entry["account"]["data"]["parsed"]["info"]
    except (KeyError, TypeError):
        return {}
    return info if isinstance(info, dict) else {}
