"""
Payment Verifier - Confirms an on-chain TLOS transfer and credits it once.

The verifier holds no lock; exactly-once crediting is the ledger's job.
"""

from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any

from chainchat.exceptions import (
    AppMisconfiguredError,
    ChainRequestError,
    InvalidAmountError,
    NoQualifyingTransferError,
    TransactionNotFoundError,
    UnsupportedTokenError,
)
from chainchat.models.domain import AccountKey, DepositData, TokenTransfer
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics
from chainchat.observability.tracing import trace_operation
from chainchat.services.chain_client import HyperionClient
from chainchat.services.ledger import CreditLedger

logger = get_logger(__name__)

ReceivingAccountResolver = Callable[[], Awaitable[str | None]]


def find_transfer(
    actions: list[dict[str, Any]], contract: str, recipient: str
) -> TokenTransfer | None:
    """Return the first `<contract>::transfer` action paying `recipient`."""
    for action in actions:
        act = action.get("act") or {}
        data = act.get("data") or {}
        if (
            act.get("account") == contract
            and act.get("name") == "transfer"
            and isinstance(data, dict)
            and data.get("to") == recipient
        ):
            return TokenTransfer(
                contract=contract,
                sender=str(data.get("from", "")),
                recipient=recipient,
                quantity=str(data.get("quantity", "")),
                memo=str(data.get("memo", "")),
            )
    return None


def parse_quantity(quantity: str, expected_symbol: str) -> Decimal:
    """
    Parse an Antelope asset string such as "2.5000 TLOS".

    Raises:
        UnsupportedTokenError: Not "<amount> <SYMBOL>" or wrong symbol
        InvalidAmountError: Amount is not a positive number
    """
    parts = quantity.split(" ")
    if len(parts) != 2 or parts[1] != expected_symbol:
        raise UnsupportedTokenError(quantity, expected_symbol)

    try:
        amount = Decimal(parts[0])
    except InvalidOperation as e:
        raise InvalidAmountError(parts[0]) from e

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(parts[0])
    return amount


class PaymentVerifier:
    """Verifies deposits against the settlement chain's history service."""

    def __init__(
        self,
        ledger: CreditLedger,
        history: HyperionClient,
        receiving_account: ReceivingAccountResolver,
        contract: str = "eosio.token",
        symbol: str = "TLOS",
    ) -> None:
        self.ledger = ledger
        self.history = history
        self.receiving_account = receiving_account
        self.contract = contract
        self.symbol = symbol

    async def verify_and_credit(self, transaction_id: str, key: AccountKey) -> DepositData:
        """
        Verify a transfer to the app wallet and credit it to `key`.

        Raises:
            AppMisconfiguredError: No receiving wallet configured
            TransactionNotFoundError: History service does not know the transaction
            ChainUnreachableError: History service unreachable or returned garbage
            NoQualifyingTransferError: No transfer to the app wallet in the transaction
            UnsupportedTokenError / InvalidAmountError: Transfer cannot be credited
            DuplicateTransactionError: Already credited
        """
        with trace_operation(
            "deposit_verification",
            transaction_id=transaction_id,
            chain_id=key.chain_id,
            account_name=key.account_name,
        ) as span:
            wallet = await self.receiving_account()
            if not wallet:
                raise AppMisconfiguredError()

            try:
                tx = await self.history.get_transaction(transaction_id)
            except ChainRequestError as e:
                raise TransactionNotFoundError(transaction_id) from e

            actions = tx.get("actions") if isinstance(tx, dict) else None
            transfer = find_transfer(actions or [], self.contract, wallet)
            if transfer is None:
                raise NoQualifyingTransferError(wallet)

            amount = parse_quantity(transfer.quantity, self.symbol)
            deposit = await self.ledger.credit_deposit(key, amount, transaction_id)

            span.set_attribute("tokens_credited", deposit.tokens_credited)

        metrics.record_deposit("credited", deposit.tokens_credited)
        logger.info(
            "deposit_verified",
            transaction_id=transaction_id,
            sender=transfer.sender,
            chain_id=key.chain_id,
            account_name=key.account_name,
            tlos_amount=str(amount),
        )
        return deposit
