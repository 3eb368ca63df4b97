"""
Message Optimization - Shrinks conversation history before it reaches the model.

Older tool outputs are replaced by one-line summaries and long conversations
are windowed. The client keeps the full data for rendering; only the copy
sent to the model is reduced.
"""

import json
from collections.abc import Callable
from typing import Any

from chainchat.models.api import ChatMessage

BRIDGE_NOTE = "[Prior conversation context omitted for brevity]"
FALLBACK_SUMMARY_CHARS = 200

Summarizer = Callable[[dict[str, Any]], str]


def _names(items: Any, limit: int) -> str:
    return ", ".join(str(item) for item in (items or [])[:limit])


def _summarize_account(o: dict[str, Any]) -> str:
    ram = o.get("ram") or {}
    quota = ram.get("quota") or 0
    ram_pct = round((ram.get("used") or 0) / quota * 100) if quota > 0 else 0
    return (
        f"Account {o.get('account_name')}: balance {o.get('balance')}, "
        f"RAM {ram_pct}% used, CPU staked {o.get('cpu_staked')}"
    )


def _summarize_abi(o: dict[str, Any]) -> str:
    actions = o.get("actions") or []
    tables = o.get("tables") or []
    return (
        f"ABI for {o.get('account_name')}: {len(actions)} actions [{_names(actions, 5)}], "
        f"{len(tables)} tables [{_names(tables, 5)}]"
    )


def _summarize_actions(o: dict[str, Any]) -> str:
    total = (o.get("total") or {}).get("value", 0)
    recent = []
    for action in (o.get("actions") or [])[:3]:
        act = action.get("act") or {}
        contract = action.get("contract") or act.get("account") or "?"
        name = action.get("action") or act.get("name") or "?"
        recent.append(f"{contract}::{name}")
    return f"Action history: {total} total. Recent: {', '.join(recent)}"


def _summarize_table_rows(o: dict[str, Any]) -> str:
    rows = o.get("rows")
    count = len(rows) if isinstance(rows, list) else 0
    more = " (more available)" if o.get("more") else ""
    return f"Table query: {count} rows returned{more}"


def _summarize_tokens(o: dict[str, Any]) -> str:
    tokens = o.get("tokens") or []
    top = ", ".join(
        f"{t.get('amount', t.get('balance', '?'))} {t.get('symbol', '')}" for t in tokens[:3]
    )
    return f"Tokens for {o.get('account')}: {len(tokens)} tokens. Top: {top}"


def _summarize_transaction(o: dict[str, Any]) -> str:
    tx_id = o.get("id")
    short_id = f"{tx_id[:8]}..." if isinstance(tx_id, str) else "?"
    actions = o.get("actions")
    count = len(actions) if isinstance(actions, list) else 0
    return (
        f"Tx {short_id}: {o.get('status') or 'executed'}, "
        f"block {o.get('block_num')}, {count} actions"
    )


def _summarize_producers(o: dict[str, Any]) -> str:
    producers = o.get("producers") or []
    top = ", ".join(str(p.get("owner")) for p in producers[:5])
    return f"{len(producers)} block producers. Top: {top}"


SUMMARIZERS: dict[str, Summarizer] = {
    "get_account": _summarize_account,
    "get_abi": _summarize_abi,
    "get_actions": _summarize_actions,
    "get_table_rows": _summarize_table_rows,
    "get_tokens": _summarize_tokens,
    "get_transfers": lambda o: (
        f"Transfer history for {o.get('account')}: "
        f"{len(o.get('transfers') or [])} transfers returned"
    ),
    "get_block": lambda o: (
        f"Block #{o.get('block_num')}: producer {o.get('producer')}, "
        f"{o.get('transaction_count')} txs, time {o.get('timestamp')}"
    ),
    "get_transaction": _summarize_transaction,
    "get_currency_balance": lambda o: (
        f"Balances for {o.get('account')}: {', '.join(o.get('balances') or [])}"
    ),
    "get_producers": _summarize_producers,
    "get_created_accounts": lambda o: (
        f"{len(o.get('accounts') or [])} accounts created by {o.get('query_account')}"
    ),
    "get_creator": lambda o: (
        f"Account {o.get('account')} created by {o.get('creator')} "
        f"on {o.get('timestamp') or 'unknown date'}"
    ),
    "get_key_accounts": lambda o: (
        f"{len(o.get('account_names') or [])} accounts found: "
        f"{', '.join(o.get('account_names') or [])}"
    ),
    "build_transaction": lambda o: (
        f"Transaction proposal ({o.get('status')}): {o.get('description') or 'action'}"
    ),
    "get_contract_guide": lambda o: (
        f"Contract guide for {o.get('contract')}: {o.get('summary') or 'loaded'}"
    ),
}


def summarize_tool_output(tool_name: str, output: Any) -> str:
    """One-line summary of a tool output; truncated JSON for unknown tools."""
    summarizer = SUMMARIZERS.get(tool_name)
    if summarizer is not None and isinstance(output, dict):
        if output.get("error"):
            return f"{tool_name} error: {output['error']}"
        try:
            return summarizer(output)
        except (TypeError, ValueError, AttributeError, KeyError):
            pass
    try:
        return json.dumps(output, default=str)[:FALLBACK_SUMMARY_CHARS]
    except (TypeError, ValueError):
        return "[tool output]"


def _is_tool_result(part: Any) -> bool:
    return part.type == "tool-invocation" and part.state == "result"


def _is_summarized(output: Any) -> bool:
    return isinstance(output, dict) and output.get("_summarized") is True


def optimize_messages(
    messages: list[ChatMessage],
    keep_recent_tool_rounds: int = 2,
    max_messages: int = 20,
) -> list[ChatMessage]:
    """
    Reduce a conversation for the model without touching the caller's copy.

    1. A tool round is an assistant message with at least one tool result.
       Outputs of all but the newest `keep_recent_tool_rounds` rounds are
       replaced with {"_summarized": True, "summary": ...}.
    2. Beyond `max_messages`, only the newest `max_messages` are kept, behind
       a bridge note; the first user message is kept in front when it falls
       outside that window.

    Applying it twice gives the same result as applying it once.
    """
    msgs = [m.model_copy(deep=True) for m in messages]

    rounds_seen = 0
    for msg in reversed(msgs):
        if msg.role != "assistant" or not msg.parts:
            continue
        if not any(_is_tool_result(p) for p in msg.parts):
            continue

        rounds_seen += 1
        if rounds_seen <= keep_recent_tool_rounds:
            continue

        for part in msg.parts:
            if _is_tool_result(part) and part.output is not None and not _is_summarized(part.output):
                part.output = {
                    "_summarized": True,
                    "summary": summarize_tool_output(part.tool_name or "", part.output),
                }

    if len(msgs) <= max_messages:
        return msgs

    window_start = len(msgs) - max_messages
    recent = msgs[window_start:]
    bridge = ChatMessage(role="assistant", content=BRIDGE_NOTE)

    first_user_index = next((i for i, m in enumerate(msgs) if m.role == "user"), None)
    if first_user_index is not None and first_user_index < window_start:
        return [msgs[first_user_index], bridge, *recent]
    return [bridge, *recent]
