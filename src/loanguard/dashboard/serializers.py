"""JSON shapes for the REST and WebSocket wire contract.

Keys are camelCase and every monetary value is a decimal string, so clients
never see binary floating point. Timestamps are ISO-8601 UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loanguard.config import LendingSettings
from loanguard.lending.health import classify_health
from loanguard.models import (
    LoanPosition,
    Notification,
    PriceChange,
    TopUpTransaction,
    User,
)


def iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "walletAddress": user.wallet_address,
        "linkedWalletBalanceBtc": str(user.linked_wallet_balance_btc),
        "linkedWalletBalanceUsdt": str(user.linked_wallet_balance_usdt),
        "autoTopUpEnabled": user.auto_topup_enabled,
        "smsAlertsEnabled": user.sms_alerts_enabled,
        "createdAt": iso_timestamp(user.created_at),
        "updatedAt": iso_timestamp(user.updated_at),
    }


def position_to_dict(
    position: LoanPosition, settings: LendingSettings | None = None
) -> dict[str, Any]:
    """Wire shape of a position; healthStatus uses the configured thresholds."""
    return {
        "id": position.id,
        "userId": position.user_id,
        "positionName": position.position_name,
        "collateralBtc": str(position.collateral_btc),
        "collateralUsdt": str(position.collateral_usdt),
        "borrowedAmount": str(position.borrowed_amount),
        "apr": str(position.apr),
        "healthFactor": str(position.health_factor),
        "healthStatus": classify_health(position.health_factor, settings).value,
        "isProtected": position.is_protected,
        "liquidationPrice": (
            str(position.liquidation_price)
            if position.liquidation_price is not None
            else None
        ),
        "createdAt": iso_timestamp(position.created_at),
        "updatedAt": iso_timestamp(position.updated_at),
    }


def transaction_to_dict(transaction: TopUpTransaction) -> dict[str, Any]:
    return {
        "id": transaction.id,
        "userId": transaction.user_id,
        "loanPositionId": transaction.loan_position_id,
        "amount": str(transaction.amount),
        "currency": transaction.currency.value,
        "isAutomatic": transaction.is_automatic,
        "txHash": transaction.tx_hash,
        "status": transaction.status,
        "kind": transaction.kind.value,
        "createdAt": iso_timestamp(transaction.created_at),
    }


def notification_to_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "userId": notification.user_id,
        "message": notification.message,
        "type": notification.type.value,
        "isRead": notification.is_read,
        "createdAt": iso_timestamp(notification.created_at),
    }


def price_change_to_dict(change: PriceChange) -> dict[str, Any]:
    return {
        "price": str(change.price),
        "change": str(change.change),
        "changePercent": str(change.change_percent),
        "isSynthetic": change.is_synthetic,
    }
