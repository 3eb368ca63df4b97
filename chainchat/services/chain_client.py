"""
Chain Clients - Thin async wrappers over Antelope RPC and Hyperion history.

Responses are returned as decoded JSON; shaping for the model happens in
the tool registry.
"""

from typing import Any

import httpx
from structlog import get_logger

from chainchat.exceptions import ChainRequestError, ChainUnreachableError

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


class _JsonEndpoint:
    """Shared request handling: one base URL, one timeout, typed failures."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = False

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this endpoint created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_client = False

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.endpoint}{path}"
        if params is not None:
            params = {
                k: (str(v).lower() if isinstance(v, bool) else v)
                for k, v in params.items()
                if v is not None
            }
        try:
            response = await self.http_client.request(
                method, url, params=params, json=body, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("chain_request_timeout", url=url)
            raise ChainUnreachableError(self.endpoint, "request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("chain_request_failed", url=url, error=str(e))
            raise ChainUnreachableError(self.endpoint, str(e)) from e

        if response.status_code >= 400:
            raise ChainRequestError(response.status_code, self._error_message(response))

        try:
            return response.json()
        except ValueError as e:
            raise ChainUnreachableError(self.endpoint, "invalid JSON response") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Prefer the node's own error message, else a status-code message."""
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message")
            error = payload.get("error")
            if isinstance(error, dict) and error.get("what"):
                return str(error["what"])
            if message:
                return str(message)
        return f"Chain error: {response.status_code}"


class ChainClient(_JsonEndpoint):
    """Antelope nodeos RPC (/v1/chain/*)."""

    async def get_account(self, account_name: str) -> dict[str, Any]:
        return await self._request(
            "POST", "/v1/chain/get_account", body={"account_name": account_name}
        )

    async def get_block(self, block_num_or_id: int | str) -> dict[str, Any]:
        return await self._request(
            "POST", "/v1/chain/get_block", body={"block_num_or_id": block_num_or_id}
        )

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        """Requires the history plugin on the node."""
        return await self._request(
            "POST", "/v1/history/get_transaction", body={"id": transaction_id}
        )

    async def get_table_rows(
        self,
        code: str,
        table: str,
        scope: str,
        limit: int | None = None,
        lower_bound: str | None = None,
        upper_bound: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": code,
            "table": table,
            "scope": scope,
            "json": True,
            "limit": limit or 10,
        }
        if lower_bound is not None:
            body["lower_bound"] = lower_bound
        if upper_bound is not None:
            body["upper_bound"] = upper_bound
        return await self._request("POST", "/v1/chain/get_table_rows", body=body)

    async def get_abi(self, account_name: str) -> dict[str, Any]:
        return await self._request(
            "POST", "/v1/chain/get_abi", body={"account_name": account_name}
        )

    async def get_currency_balance(
        self, code: str, account: str, symbol: str | None = None
    ) -> list[str]:
        body: dict[str, Any] = {"code": code, "account": account}
        if symbol:
            body["symbol"] = symbol
        return await self._request("POST", "/v1/chain/get_currency_balance", body=body)

    async def get_producers(self, limit: int = 21) -> dict[str, Any]:
        return await self._request(
            "POST", "/v1/chain/get_producers", body={"json": True, "limit": limit}
        )


class HyperionClient(_JsonEndpoint):
    """Hyperion history API (/v2/*)."""

    async def get_actions(
        self,
        account: str | None = None,
        filter: str | None = None,
        skip: int | None = None,
        limit: int | None = None,
        sort: str | None = None,
        after: str | None = None,
        before: str | None = None,
        simple: bool | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            "/v2/history/get_actions",
            params={
                "account": account,
                "filter": filter,
                "skip": skip,
                "limit": limit,
                "sort": sort,
                "after": after,
                "before": before,
                "simple": simple,
            },
        )

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", "/v2/history/get_transaction", params={"id": transaction_id}
        )

    async def get_created_accounts(self, account: str) -> dict[str, Any]:
        return await self._request(
            "GET", "/v2/history/get_created_accounts", params={"account": account}
        )

    async def get_creator(self, account: str) -> dict[str, Any]:
        return await self._request("GET", "/v2/history/get_creator", params={"account": account})

    async def get_tokens(self, account: str) -> dict[str, Any]:
        return await self._request("GET", "/v2/state/get_tokens", params={"account": account})

    async def get_key_accounts(self, public_key: str) -> dict[str, Any]:
        return await self._request(
            "GET", "/v2/state/get_key_accounts", params={"public_key": public_key}
        )

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/v2/health")
