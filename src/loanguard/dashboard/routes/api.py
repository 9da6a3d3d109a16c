"""JSON REST API for the lending dashboard.

The caller is identified by the ``X-User-Id`` header; without it the demo
user resolved at startup is used. Domain errors propagate to the exception
handlers registered in loanguard.dashboard.app.
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from loanguard.dashboard.serializers import (
    iso_timestamp,
    notification_to_dict,
    position_to_dict,
    transaction_to_dict,
    user_to_dict,
)
from loanguard.dashboard.update_loop import push_user_update
from loanguard.exceptions import NotFoundError, ValidationFailedError
from loanguard.logging import bind_request_context
from loanguard.models import TopUpRequest

router = APIRouter()


# ──────────────────────────────────────────────
# Request bodies
# ──────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateLoanBody(_CamelModel):
    position_name: str
    collateral_btc: Decimal
    collateral_usdt: Decimal = Decimal("0")
    borrowed_amount: Decimal


class RepayBody(_CamelModel):
    amount: Decimal
    currency: str


class TopUpBody(_CamelModel):
    loan_position_id: str
    amount: Decimal
    currency: str


class SettingsBody(_CamelModel):
    auto_topup_enabled: bool | None = Field(default=None, alias="autoTopUpEnabled")
    sms_alerts_enabled: bool | None = None
    sms_number: str | None = None
    linked_wallet_balance_btc: Decimal | None = None
    linked_wallet_balance_usdt: Decimal | None = None


class TriggerBody(_CamelModel):
    risk_level: str


def _user_id(request: Request) -> str:
    """Resolve the acting user from the request."""
    user_id = request.headers.get("X-User-Id") or request.app.state.default_user_id
    if not user_id:
        raise NotFoundError("User not found")
    bind_request_context(user_id=user_id)
    return user_id


# ──────────────────────────────────────────────
# Dashboard
# ──────────────────────────────────────────────


@router.get("/dashboard-snapshot")
@router.get("/dashboard")
async def get_dashboard_snapshot(request: Request) -> JSONResponse:
    """Aggregated user, stats and positions view."""
    aggregator = request.app.state.aggregator
    snapshot = await aggregator.build_snapshot(_user_id(request))
    return JSONResponse(content=snapshot.to_dict())


@router.get("/price")
async def get_price(request: Request) -> JSONResponse:
    """Current BTC price with 24h change and staleness flag."""
    price_feed = request.app.state.price_feed
    change = await price_feed.get_price_change_24h()
    latest = await price_feed.get_latest_sample()
    return JSONResponse(content={
        "symbol": price_feed.symbol,
        "price": str(change.price),
        "change": str(change.change),
        "changePercent": str(change.change_percent),
        "isSynthetic": change.is_synthetic,
        "isStale": await price_feed.is_stale(),
        "source": latest.source if latest is not None else None,
        "timestamp": iso_timestamp(latest.timestamp_ms / 1000) if latest is not None else None,
    })


# ──────────────────────────────────────────────
# Loans
# ──────────────────────────────────────────────


@router.get("/loans")
async def list_loans(request: Request) -> JSONResponse:
    loan_service = request.app.state.loan_service
    settings = request.app.state.lending_settings
    positions = await loan_service.list_loan_positions(_user_id(request))
    return JSONResponse(content=[position_to_dict(p, settings) for p in positions])


@router.post("/loans")
@router.post("/loans/new")
async def create_loan(request: Request, body: CreateLoanBody) -> JSONResponse:
    """Open a new loan position. Returns 201 with the stored position."""
    user_id = _user_id(request)
    position = await request.app.state.loan_service.create_loan_position(
        user_id=user_id,
        position_name=body.position_name,
        collateral_btc=body.collateral_btc,
        collateral_usdt=body.collateral_usdt,
        borrowed_amount=body.borrowed_amount,
    )
    await push_user_update(request.app, user_id)
    loan = position_to_dict(position, request.app.state.lending_settings)
    return JSONResponse(content={"success": True, "loan": loan}, status_code=201)


@router.patch("/loans/{loan_id}/repay")
async def repay_loan(request: Request, loan_id: str, body: RepayBody) -> JSONResponse:
    user_id = _user_id(request)
    position = await request.app.state.loan_service.repay_loan(
        user_id, loan_id, body.amount, body.currency
    )
    await push_user_update(request.app, user_id)
    loan = position_to_dict(position, request.app.state.lending_settings)
    return JSONResponse(content={"success": True, "loan": loan})


@router.delete("/loans/{loan_id}")
async def delete_loan(request: Request, loan_id: str) -> JSONResponse:
    user_id = _user_id(request)
    await request.app.state.loan_service.delete_loan_position(user_id, loan_id)
    await push_user_update(request.app, user_id)
    return JSONResponse(content={"success": True})


# ──────────────────────────────────────────────
# Collateral
# ──────────────────────────────────────────────


@router.post("/topup")
async def top_up(request: Request, body: TopUpBody) -> JSONResponse:
    """Manual top-up: credit the wallet and the position collateral."""
    user_id = _user_id(request)
    transaction = await request.app.state.top_up_engine.perform_top_up(
        TopUpRequest(
            user_id=user_id,
            loan_position_id=body.loan_position_id,
            amount=body.amount,
            currency=body.currency,
            is_automatic=False,
        )
    )
    await push_user_update(request.app, user_id)
    return JSONResponse(
        content={"success": True, "transaction": transaction_to_dict(transaction)}
    )


@router.post("/collateral")
async def add_collateral(request: Request, body: TopUpBody) -> JSONResponse:
    """Pledge funds already in the linked wallet."""
    user_id = _user_id(request)
    transaction = await request.app.state.top_up_engine.add_collateral(
        user_id, body.loan_position_id, body.amount, body.currency
    )
    await push_user_update(request.app, user_id)
    return JSONResponse(
        content={"success": True, "transaction": transaction_to_dict(transaction)}
    )


@router.get("/transactions")
async def list_transactions(request: Request) -> JSONResponse:
    loan_service = request.app.state.loan_service
    limit = request.app.state.lending_settings.notification_limit
    transactions = await loan_service.list_topup_transactions(_user_id(request), limit)
    return JSONResponse(content=[transaction_to_dict(t) for t in transactions])


# ──────────────────────────────────────────────
# Settings and notifications
# ──────────────────────────────────────────────


@router.patch("/settings")
async def update_settings(request: Request, body: SettingsBody) -> JSONResponse:
    user_id = _user_id(request)
    user = await request.app.state.loan_service.update_settings(
        user_id,
        auto_topup_enabled=body.auto_topup_enabled,
        sms_alerts_enabled=body.sms_alerts_enabled,
        linked_wallet_balance_btc=body.linked_wallet_balance_btc,
        linked_wallet_balance_usdt=body.linked_wallet_balance_usdt,
        sms_number=body.sms_number,
    )
    await push_user_update(request.app, user_id)
    return JSONResponse(content={"success": True, "user": user_to_dict(user)})


@router.get("/notifications")
async def list_notifications(request: Request) -> JSONResponse:
    """Most recent notifications for the user, newest first."""
    notifier = request.app.state.notifier
    limit = request.app.state.lending_settings.notification_limit
    notifications = await notifier.list_recent(_user_id(request), limit)
    return JSONResponse(content=[notification_to_dict(n) for n in notifications])


@router.patch("/notifications/{notification_id}/read")
async def mark_notification_read(request: Request, notification_id: str) -> JSONResponse:
    notification = await request.app.state.notifier.mark_read(
        _user_id(request), notification_id
    )
    return JSONResponse(
        content={"success": True, "notification": notification_to_dict(notification)}
    )


@router.post("/notifications/trigger")
async def trigger_notifications(request: Request, body: TriggerBody) -> JSONResponse:
    """Deliver a risk reading; may fire an automatic top-up."""
    user_id = _user_id(request)
    result = await request.app.state.top_up_engine.handle_risk_signal(user_id, body.risk_level)
    if result.skipped:
        return JSONResponse(content={
            "skipped": True,
            "message": "Notification recently sent for this risk level.",
        })

    await push_user_update(request.app, user_id)
    return JSONResponse(content={
        "success": True,
        "message": result.message,
        "autoTopUp": (
            transaction_to_dict(result.auto_top_up)
            if result.auto_top_up is not None
            else None
        ),
        "autoTopUpError": result.auto_top_up_error,
    })


# ──────────────────────────────────────────────
# Market data passthrough
# ──────────────────────────────────────────────


@router.get("/binance-klines")
async def binance_klines(request: Request) -> JSONResponse:
    """Forward raw kline rows for client-side charting."""
    params = request.query_params
    symbol, interval, limit = params.get("symbol"), params.get("interval"), params.get("limit")
    if not symbol or not interval or not limit:
        raise ValidationFailedError("Missing symbol, interval, or limit query parameters")
    try:
        limit_value = int(limit)
    except ValueError:
        raise ValidationFailedError(f"Invalid limit: {limit}") from None

    market_client = request.app.state.market_client
    klines = await market_client.fetch_klines(symbol, interval, limit_value)
    return JSONResponse(content=klines)


@router.get("/binance-24h-ticker")
async def binance_24h_ticker(request: Request) -> JSONResponse:
    """Forward the raw 24h ticker payload."""
    symbol = request.query_params.get("symbol")
    if not symbol:
        raise ValidationFailedError("Missing symbol query parameter")

    market_client = request.app.state.market_client
    ticker = await market_client.fetch_ticker_24h(symbol)
    return JSONResponse(content=ticker)
