"""
JSON-RPC node client

AvalancheRPCClient implements ChainClient over HTTP JSON-RPC 2.0 with a
shared aiohttp session:
- info.*      -> {node_url}/ext/info
- avm.*       -> {node_url}/ext/bc/X (or /ext/bc/<blockchainID>)
- avax.*      -> {node_url}/ext/bc/C/avax
- platform.*  -> {node_url}/ext/bc/P

The C-chain atomic API (avax.*) only covers UTXO queries and issueTx, so its
tx status goes to avax.getAtomicTxStatus, its fee to info.getTxFee and asset
lookups to the X-chain (asset IDs are the same on every chain). C-chain
balances are account based and not served here.

Transport problems (connection errors, timeouts, HTTP 5xx) raise
TransportError so the fetcher and submitter can retry them. JSON-RPC error
objects are mapped per method: issueTx -> SubmissionError, asset and alias
lookups -> ResolutionError subclasses, anything else -> RPCError. A result
missing expected fields is also an RPCError.
"""

import asyncio
import contextlib
import json
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from .errors import (
    AssetNotFoundError,
    ChainAliasError,
    RPCError,
    SubmissionError,
    TransportError,
)
from .models import (
    Address,
    AssetDescription,
    AssetID,
    ChainID,
    SignedTransaction,
    TransactionStatus,
    TxFees,
    TxID,
    UTXO,
    UTXOPage,
)

# alias -> (endpoint path, method namespace)
CHAIN_ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "X": ("/ext/bc/X", "avm"),
    "C": ("/ext/bc/C/avax", "avax"),
    "P": ("/ext/bc/P", "platform"),
}

# (alias, method) -> (endpoint path, full method name)
METHOD_OVERRIDES: Dict[Tuple[str, str], Tuple[str, str]] = {
    ("C", "getTxStatus"): ("/ext/bc/C/avax", "avax.getAtomicTxStatus"),
    ("C", "getTxFee"): ("/ext/info", "info.getTxFee"),
    ("C", "getAssetDescription"): ("/ext/bc/X", "avm.getAssetDescription"),
}


@contextlib.contextmanager
def _parsing(method: str):
    try:
        yield
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise RPCError(method, 0, f"malformed result: {e!r}") from e


class AvalancheRPCClient:
    """Async JSON-RPC client for an Avalanche node."""

    def __init__(self, node_url: str, timeout_seconds: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.node_url = node_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug(f"Closed RPC session to {self.node_url}")
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @staticmethod
    def _endpoint(chain: str) -> Tuple[str, str]:
        return CHAIN_ENDPOINTS.get(chain, (f"/ext/bc/{chain}", "avm"))

    async def _call(self, path: str, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send one JSON-RPC request and return its `result`."""
        request = {"jsonrpc": "2.0", "id": self._next_request_id(), "method": method,
                   "params": params or {}}
        url = f"{self.node_url}{path}"
        try:
            async with self._get_session().post(url, json=request) as response:
                if response.status >= 500:
                    raise TransportError(f"{method}: HTTP {response.status} from {url}")
                if response.status >= 400:
                    raise RPCError(method, response.status, await response.text())
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method}: {type(e).__name__} contacting {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"{method}: malformed JSON from {url}") from e

        if not isinstance(body, dict):
            raise TransportError(f"{method}: unexpected response from {url}")
        if body.get("error"):
            error = body["error"]
            raise RPCError(method, int(error.get("code", 0)), str(error.get("message", error)))
        return body.get("result") or {}

    async def _chain_call(self, chain: str, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if (chain, name) in METHOD_OVERRIDES:
            path, method = METHOD_OVERRIDES[(chain, name)]
        else:
            path, namespace = self._endpoint(chain)
            method = f"{namespace}.{name}"
        return await self._call(path, method, params)

    # ------------------------------------------------------------------
    # ChainClient
    # ------------------------------------------------------------------

    async def get_blockchain_id(self, alias: str) -> ChainID:
        try:
            result = await self._call("/ext/info", "info.getBlockchainID", {"alias": alias})
        except RPCError as e:
            raise ChainAliasError(alias) from e
        blockchain_id = result.get("blockchainID")
        if not blockchain_id:
            raise ChainAliasError(alias)
        return blockchain_id

    async def get_asset_description(self, chain: str, symbol: str) -> AssetDescription:
        try:
            result = await self._chain_call(chain, "getAssetDescription", {"assetID": symbol})
        except RPCError as e:
            raise AssetNotFoundError(chain, symbol) from e
        with _parsing(f"{chain}.getAssetDescription"):
            return AssetDescription(
                asset_id=result["assetID"],
                name=result.get("name", symbol),
                symbol=result.get("symbol", symbol),
                denomination=int(result.get("denomination", 9)),
            )

    async def get_utxos(
        self,
        chain: str,
        addresses: List[Address],
        source_chain: Optional[ChainID] = None,
        limit: int = 1024,
        start_index: Optional[str] = None,
    ) -> UTXOPage:
        params: Dict[str, Any] = {"addresses": list(addresses), "limit": limit, "encoding": "json"}
        if source_chain:
            params["sourceChain"] = source_chain
        if start_index:
            params["startIndex"] = json.loads(start_index)

        result = await self._chain_call(chain, "getUTXOs", params)
        with _parsing(f"{chain}.getUTXOs"):
            utxos = [UTXO.from_dict(u) for u in result.get("utxos") or []]
            end_index = result.get("endIndex")
            return UTXOPage(
                utxos=utxos,
                # the cursor is opaque to callers; keep it as canonical JSON text
                end_index=json.dumps(end_index, sort_keys=True) if end_index else None,
                num_fetched=int(result.get("numFetched", len(utxos))),
            )

    async def get_balance(self, chain: str, address: Address, asset_id: AssetID) -> int:
        result = await self._chain_call(chain, "getBalance", {"address": address, "assetID": asset_id})
        with _parsing(f"{chain}.getBalance"):
            return int(result.get("balance", 0))

    async def get_tx_fee(self, chain: str) -> TxFees:
        result = await self._chain_call(chain, "getTxFee")
        with _parsing(f"{chain}.getTxFee"):
            return TxFees(
                tx_fee=int(result["txFee"]),
                create_asset_tx_fee=int(result.get("createAssetTxFee", 0)),
            )

    async def issue_tx(self, chain: str, signed_tx: SignedTransaction) -> TxID:
        payload = "0x" + signed_tx.to_bytes().hex()
        try:
            result = await self._chain_call(chain, "issueTx", {"tx": payload, "encoding": "hex"})
        except RPCError as e:
            raise SubmissionError(f"Node refused tx on {chain}: {e}") from e
        tx_id = result.get("txID")
        if not tx_id:
            raise SubmissionError(f"issueTx on {chain} returned no txID")
        if tx_id != signed_tx.tx_id:
            logger.warning(f"⚠ Node reported txID {tx_id}, computed {signed_tx.tx_id}")
        return tx_id

    async def get_tx_status(self, chain: str, tx_id: TxID) -> TransactionStatus:
        result = await self._chain_call(chain, "getTxStatus", {"txID": tx_id})
        return TransactionStatus.parse(result.get("status", ""))
