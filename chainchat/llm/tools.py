"""
Blockchain Tools - Registry of chain queries the model may call.

Arguments are Pydantic models whose JSON schema is sent to the model as the
function schema. Tool failures are returned to the model as {"error": ...}
instead of failing the request.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from chainchat.exceptions import ChainClientError
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics
from chainchat.services.chain_client import DEFAULT_TIMEOUT, ChainClient, HyperionClient

logger = get_logger(__name__)

# Action data larger than this (as JSON) is cut down to its first keys
MAX_ACTION_DATA_CHARS = 500
MAX_ACTION_DATA_KEYS = 5


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[Any]]

    def schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


class ToolRegistry:
    """Named tools plus the HTTP clients they share."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._clients: list[ChainClient | HyperionClient] = []

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def attach_client(self, client: ChainClient | HyperionClient) -> None:
        self._clients.append(client)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: str | dict[str, Any]) -> Any:
        """Run a tool; never raises for unknown tools, bad arguments or chain errors."""
        tool = self._tools.get(name)
        if tool is None:
            metrics.record_tool_call(name or "unknown", False)
            return {"error": f"Unknown tool: {name}"}

        try:
            raw = json.loads(arguments or "{}") if isinstance(arguments, str) else arguments
            args = tool.args_model.model_validate(raw)
        except ValueError as e:
            # ValidationError is a ValueError too
            metrics.record_tool_call(name, False)
            message = (
                f"{e.error_count()} validation error(s)"
                if isinstance(e, ValidationError)
                else "arguments are not valid JSON"
            )
            return {"error": f"Invalid arguments for {name}: {message}"}

        try:
            result = await tool.handler(args)
        except ChainClientError as e:
            metrics.record_tool_call(name, False)
            logger.info("tool_call_failed", tool=name, error=str(e))
            return {"error": str(e)}

        metrics.record_tool_call(name, True)
        return result

    async def aclose(self) -> None:
        for client in self._clients:
            await client.aclose()


# ============================================================================
# Tool Arguments
# ============================================================================


class AccountNameArgs(BaseModel):
    account_name: str = Field(..., description="The account name to look up (e.g. 'eosio.token')")


class BlockArgs(BaseModel):
    block_num: int = Field(..., description="The block number to look up")


class TransactionArgs(BaseModel):
    transaction_id: str = Field(..., description="The transaction ID (hash) to look up")


class TableRowsArgs(BaseModel):
    code: str = Field(..., description="The contract account name (e.g. 'eosio.token')")
    table: str = Field(..., description="The table name (e.g. 'accounts')")
    scope: str = Field(..., description="The scope (usually the account name or contract name)")
    limit: int | None = Field(None, description="Max rows to return (default 10)")
    lower_bound: str | None = Field(None, description="Lower bound for key")
    upper_bound: str | None = Field(None, description="Upper bound for key")


class CurrencyBalanceArgs(BaseModel):
    code: str = Field(..., description="The token contract (e.g. 'eosio.token')")
    account: str = Field(..., description="The account to check balance for")
    symbol: str | None = Field(None, description="Token symbol filter (e.g. 'EOS')")


class ProducersArgs(BaseModel):
    limit: int | None = Field(None, description="Max producers to return (default 21)")


class ProposedAction(BaseModel):
    account: str = Field(..., description="The contract to call")
    name: str = Field(..., description="The action name")
    data: dict[str, Any] = Field(..., description="The action data")


class BuildTransactionArgs(BaseModel):
    actions: list[ProposedAction] = Field(
        ..., description="The actions to include in the transaction"
    )
    description: str = Field(
        ..., description="Human-readable description of what this transaction does"
    )


class ActionsArgs(BaseModel):
    account: str = Field(..., description="The account name to get actions for")
    filter: str | None = Field(
        None, description="Filter by contract:action (e.g. 'eosio.token:transfer')"
    )
    limit: int | None = Field(None, description="Max results to return (default 10)")
    skip: int | None = Field(None, description="Number of results to skip for pagination")
    after: str | None = Field(None, description="Only actions after this ISO8601 date")
    before: str | None = Field(None, description="Only actions before this ISO8601 date")


class TransfersArgs(BaseModel):
    account: str = Field(..., description="The account to get transfers for")
    symbol: str | None = Field(None, description="Filter by token symbol (e.g. 'EOS')")
    contract: str | None = Field(
        None, description="Filter by token contract (default 'eosio.token')"
    )
    limit: int | None = Field(None, description="Max results to return (default 20)")
    after: str | None = Field(None, description="Only transfers after this ISO8601 date")
    before: str | None = Field(None, description="Only transfers before this ISO8601 date")


class AccountArgs(BaseModel):
    account: str = Field(..., description="The account name")


class PublicKeyArgs(BaseModel):
    public_key: str = Field(..., description="The public key to look up (e.g. 'EOS6MR...')")


# ============================================================================
# Output Shaping
# ============================================================================


def shape_account(account: dict[str, Any]) -> dict[str, Any]:
    resources = account.get("total_resources") or {}
    return {
        "account_name": account.get("account_name"),
        "balance": account.get("core_liquid_balance") or "0",
        "ram": {"used": account.get("ram_usage"), "quota": account.get("ram_quota")},
        "cpu": account.get("cpu_limit"),
        "net": account.get("net_limit"),
        "cpu_staked": resources.get("cpu_weight") or "0",
        "net_staked": resources.get("net_weight") or "0",
        "permissions": [
            {
                "name": p.get("perm_name"),
                "parent": p.get("parent"),
                "threshold": (p.get("required_auth") or {}).get("threshold"),
                "keys": (p.get("required_auth") or {}).get("keys", []),
                "accounts": (p.get("required_auth") or {}).get("accounts", []),
            }
            for p in account.get("permissions") or []
        ],
        "voter_info": account.get("voter_info"),
    }


def shape_block(block: dict[str, Any]) -> dict[str, Any]:
    transactions = block.get("transactions") or []
    shaped = []
    for tx in transactions[:10]:
        trx = tx.get("trx")
        shaped.append(
            {
                "id": trx if isinstance(trx, str) else (trx or {}).get("id"),
                "status": tx.get("status"),
                "cpu_usage_us": tx.get("cpu_usage_us"),
                "net_usage_words": tx.get("net_usage_words"),
            }
        )
    return {
        "block_num": block.get("block_num"),
        "id": block.get("id"),
        "timestamp": block.get("timestamp"),
        "producer": block.get("producer"),
        "confirmed": block.get("confirmed"),
        "transaction_count": len(transactions),
        "transactions": shaped,
    }


def shape_transaction(tx: dict[str, Any]) -> dict[str, Any]:
    trx = tx.get("trx") or {}
    return {
        "id": tx.get("id"),
        "block_num": tx.get("block_num"),
        "block_time": tx.get("block_time"),
        "actions": (trx.get("trx") or {}).get("actions", []),
        "status": (trx.get("receipt") or {}).get("status"),
    }


def shape_abi(result: dict[str, Any]) -> dict[str, Any]:
    abi = result.get("abi")
    if not abi:
        return {"error": "No ABI found for this account"}
    actions = abi.get("actions") or []
    action_types = {a.get("type") for a in actions}
    return {
        "account_name": result.get("account_name"),
        "tables": [t.get("name") for t in abi.get("tables") or []],
        "actions": [a.get("name") for a in actions],
        # Only structs referenced by actions
        "structs": [
            {"name": s.get("name"), "fields": s.get("fields")}
            for s in abi.get("structs") or []
            if s.get("name") in action_types
        ],
    }


def trim_action_data(action: dict[str, Any]) -> dict[str, Any]:
    data = action.get("data")
    if not isinstance(data, dict) or len(json.dumps(data, default=str)) <= MAX_ACTION_DATA_CHARS:
        return action
    keys = list(data)
    trimmed: dict[str, Any] = {k: data[k] for k in keys[:MAX_ACTION_DATA_KEYS]}
    if len(keys) > MAX_ACTION_DATA_KEYS:
        trimmed["_trimmed"] = f"{len(keys) - MAX_ACTION_DATA_KEYS} more fields"
    return {**action, "data": trimmed}


def _simple_actions(result: dict[str, Any]) -> list[dict[str, Any]]:
    return result.get("simple_actions") or result.get("actions") or []


# ============================================================================
# Tool Builders
# ============================================================================


def _rpc_tools(client: ChainClient) -> list[Tool]:
    async def get_account(args: AccountNameArgs) -> dict[str, Any]:
        return shape_account(await client.get_account(args.account_name))

    async def get_block(args: BlockArgs) -> dict[str, Any]:
        return shape_block(await client.get_block(args.block_num))

    async def get_transaction(args: TransactionArgs) -> dict[str, Any]:
        return shape_transaction(await client.get_transaction(args.transaction_id))

    async def get_table_rows(args: TableRowsArgs) -> dict[str, Any]:
        return await client.get_table_rows(
            code=args.code,
            table=args.table,
            scope=args.scope,
            limit=args.limit,
            lower_bound=args.lower_bound,
            upper_bound=args.upper_bound,
        )

    async def get_abi(args: AccountNameArgs) -> dict[str, Any]:
        return shape_abi(await client.get_abi(args.account_name))

    async def get_currency_balance(args: CurrencyBalanceArgs) -> dict[str, Any]:
        balances = await client.get_currency_balance(args.code, args.account, args.symbol)
        return {"account": args.account, "balances": balances}

    async def get_producers(args: ProducersArgs) -> dict[str, Any]:
        result = await client.get_producers(args.limit or 21)
        return {
            "producers": [
                {
                    "owner": p.get("owner"),
                    "total_votes": p.get("total_votes"),
                    "url": p.get("url"),
                    "is_active": p.get("is_active"),
                    "unpaid_blocks": p.get("unpaid_blocks"),
                }
                for p in result.get("rows") or []
            ],
            "total_producer_vote_weight": result.get("total_producer_vote_weight"),
        }

    async def build_transaction(args: BuildTransactionArgs) -> dict[str, Any]:
        # Proposal only; the user signs in their wallet
        return {
            "type": "transaction_proposal",
            "description": args.description,
            "actions": [a.model_dump() for a in args.actions],
            "status": "pending_signature",
        }

    return [
        Tool(
            "get_account",
            "Get detailed information about an Antelope blockchain account including "
            "balances, resources (RAM, CPU, NET), and permissions.",
            AccountNameArgs,
            get_account,
        ),
        Tool("get_block", "Get information about a specific block by block number.", BlockArgs, get_block),
        Tool(
            "get_transaction",
            "Look up a transaction by its transaction ID. Note: requires history plugin "
            "on the endpoint.",
            TransactionArgs,
            get_transaction,
        ),
        Tool(
            "get_table_rows",
            "Query rows from a smart contract table. Use this to read on-chain data from "
            "any contract.",
            TableRowsArgs,
            get_table_rows,
        ),
        Tool(
            "get_abi",
            "Get the ABI of a smart contract. Shows available tables, actions, and data "
            "structures.",
            AccountNameArgs,
            get_abi,
        ),
        Tool(
            "get_currency_balance",
            "Get token balances for an account from a specific token contract.",
            CurrencyBalanceArgs,
            get_currency_balance,
        ),
        Tool("get_producers", "Get the list of block producers on the chain.", ProducersArgs, get_producers),
        Tool(
            "build_transaction",
            "Build a transaction proposal for the user to review and sign. Use this when "
            "the user wants to perform any on-chain action (transfer tokens, stake, buy "
            "RAM, etc). The user must explicitly sign it.",
            BuildTransactionArgs,
            build_transaction,
        ),
    ]


def _hyperion_tools(hyperion: HyperionClient) -> list[Tool]:
    async def get_actions(args: ActionsArgs) -> dict[str, Any]:
        result = await hyperion.get_actions(
            account=args.account,
            filter=args.filter,
            limit=args.limit or 10,
            skip=args.skip,
            after=args.after,
            before=args.before,
            simple=True,
        )
        return {
            "actions": [trim_action_data(a) for a in _simple_actions(result)],
            "account": args.account,
            "total": result.get("total") or {"value": 0, "relation": "eq"},
        }

    async def get_transfers(args: TransfersArgs) -> dict[str, Any]:
        # get_actions with a transfer filter is more widely supported than get_transfers
        result = await hyperion.get_actions(
            account=args.account,
            filter=f"{args.contract or 'eosio.token'}:transfer",
            limit=args.limit or 20,
            after=args.after,
            before=args.before,
            simple=True,
        )
        transfers = []
        for action in _simple_actions(result):
            data = action.get("data") or {}
            transfers.append(
                {
                    "timestamp": action.get("timestamp") or action.get("@timestamp"),
                    "from": data.get("from"),
                    "to": data.get("to"),
                    "quantity": data.get("quantity"),
                    "memo": data.get("memo"),
                    "contract": action.get("contract"),
                    "block": action.get("block"),
                }
            )
        return {"transfers": transfers, "account": args.account}

    async def get_created_accounts(args: AccountArgs) -> dict[str, Any]:
        result = await hyperion.get_created_accounts(args.account)
        return {"accounts": result.get("accounts") or [], "query_account": args.account}

    async def get_creator(args: AccountArgs) -> dict[str, Any]:
        result = await hyperion.get_creator(args.account)
        return {
            "account": args.account,
            "creator": result.get("creator"),
            "timestamp": result.get("timestamp"),
        }

    async def get_tokens(args: AccountArgs) -> dict[str, Any]:
        result = await hyperion.get_tokens(args.account)
        return {"tokens": result.get("tokens") or [], "account": args.account}

    async def get_key_accounts(args: PublicKeyArgs) -> dict[str, Any]:
        result = await hyperion.get_key_accounts(args.public_key)
        return {"account_names": result.get("account_names") or []}

    return [
        Tool(
            "get_actions",
            "Get action history for an account from Hyperion. Can filter by contract:action.",
            ActionsArgs,
            get_actions,
        ),
        Tool(
            "get_transfers",
            "Get token transfer history for an account. Shows all incoming and outgoing "
            "transfers.",
            TransfersArgs,
            get_transfers,
        ),
        Tool(
            "get_created_accounts",
            "Get all accounts that were created by a given account.",
            AccountArgs,
            get_created_accounts,
        ),
        Tool("get_creator", "Find out who created a specific account and when.", AccountArgs, get_creator),
        Tool(
            "get_tokens",
            "Get all token balances held by an account across all contracts.",
            AccountArgs,
            get_tokens,
        ),
        Tool(
            "get_key_accounts",
            "Get all accounts associated with a given public key.",
            PublicKeyArgs,
            get_key_accounts,
        ),
    ]


def create_chain_tools(
    chain_endpoint: str | None,
    hyperion_endpoint: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    http_client: httpx.AsyncClient | None = None,
) -> ToolRegistry:
    """Tools for one chain; empty without a chain endpoint."""
    registry = ToolRegistry()
    if not chain_endpoint:
        return registry

    client = ChainClient(chain_endpoint, timeout=timeout, http_client=http_client)
    registry.attach_client(client)
    for tool in _rpc_tools(client):
        registry.register(tool)

    if hyperion_endpoint:
        hyperion = HyperionClient(hyperion_endpoint, timeout=timeout, http_client=http_client)
        registry.attach_client(hyperion)
        for tool in _hyperion_tools(hyperion):
            registry.register(tool)

    return registry
