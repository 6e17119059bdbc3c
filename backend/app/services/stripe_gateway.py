"""Stripe API操作 (PaymentGateway実装)"""
import json
from typing import Callable, Optional

import stripe

from app.core.config import settings
from app.core.logging import get_logger
from app.core import clock
from app.services.payment_gateway import (
    CreatedSubscription,
    ExternalPrice,
    GatewayResult,
    InvoiceSummary,
    PaymentGateway,
)
from app.services.processor_events import get_field, remote_subscription_from_payload

logger = get_logger(__name__)


def build_stripe_client() -> stripe.StripeClient:
    """設定からStripeクライアントを生成 (タイムアウト・ネットワーク再試行つき)"""
    return stripe.StripeClient(
        settings.STRIPE_SECRET_KEY,
        stripe_version=settings.STRIPE_API_VERSION,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        http_client=stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS),
    )


def build_stripe_gateway() -> "StripeGateway":
    return StripeGateway(
        build_stripe_client(),
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )


def _client_secret(sub) -> Optional[str]:
    """決済情報入力用のclient_secret (トライアルはSetupIntent、それ以外は初回請求書)"""
    setup_intent = get_field(sub, "pending_setup_intent")
    if setup_intent and not isinstance(setup_intent, str):
        secret = get_field(setup_intent, "client_secret")
        if secret:
            return secret
    invoice = get_field(sub, "latest_invoice")
    if invoice and not isinstance(invoice, str):
        return get_field(get_field(invoice, "confirmation_secret"), "client_secret")
    return None


class StripeGateway(PaymentGateway):
    def __init__(self, client: stripe.StripeClient, webhook_secret: str, webhook_tolerance: int = 300):
        self.client = client
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    def _call(self, action: str, fn: Callable, *, mutating: bool) -> GatewayResult:
        """Stripe呼び出しを実行し、例外を GatewayResult に変換

        変更系の呼び出しで通信断・レート制限・5xxが起きた場合、
        Stripe側で適用済みの可能性があるため UNKNOWN を返す。
        """
        try:
            return GatewayResult.success(fn())
        except stripe.CardError as e:
            logger.warning(f"Stripeカードエラー ({action}): {e.user_message or e}")
            return GatewayResult.failure(
                e.user_message or "カードが拒否されました", retryable=False, code=e.code or "card_declined"
            )
        except stripe.IdempotencyError as e:
            logger.error(f"Stripe冪等キー競合 ({action}): {e}")
            return GatewayResult.failure(str(e), retryable=False, code="idempotency_conflict")
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripeリクエスト不正 ({action}): {e}")
            return GatewayResult.failure(
                e.user_message or "決済システムで操作が拒否されました", retryable=False, code=e.code or "invalid_request"
            )
        except (stripe.AuthenticationError, stripe.PermissionError) as e:
            logger.error(f"Stripe認証エラー ({action}): {e}")
            return GatewayResult.failure("決済システムとの連携に失敗しました", retryable=False, code="authentication")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            if mutating:
                logger.error(f"Stripe呼び出し結果不明 ({action}): {e}")
                return GatewayResult.unknown(str(e), code=type(e).__name__)
            logger.warning(f"Stripe一時エラー ({action}): {e}")
            return GatewayResult.failure(str(e), retryable=True, code=type(e).__name__)
        except stripe.StripeError as e:
            logger.error(f"Stripeエラー ({action}): {e}")
            return GatewayResult.failure(str(e), retryable=False, code=e.code)

    # 購読

    def create_customer_and_subscription(
        self,
        business_id: int,
        name: str,
        email: str,
        price_id: str,
        trial_days: int,
        idempotency_key: str,
        customer_id: Optional[str] = None,
    ) -> GatewayResult[CreatedSubscription]:
        def _create():
            cid = customer_id
            if not cid:
                customer = self.client.v1.customers.create(
                    params={"name": name, "email": email, "metadata": {"business_id": str(business_id)}},
                    options={"idempotency_key": f"{idempotency_key}_customer"},
                )
                cid = get_field(customer, "id")
                logger.info(f"Stripe Customer作成: business_id={business_id}, customer={cid}")

            params = {
                "customer": cid,
                "items": [{"price": price_id}],
                "payment_behavior": "default_incomplete",
                "payment_settings": {"save_default_payment_method": "on_subscription"},
                "metadata": {"business_id": str(business_id)},
                "expand": ["latest_invoice.confirmation_secret", "pending_setup_intent"],
            }
            if trial_days > 0:
                params["trial_period_days"] = trial_days
            sub = self.client.v1.subscriptions.create(params=params, options={"idempotency_key": idempotency_key})
            logger.info(f"Stripe Subscription作成: business_id={business_id}, subscription={get_field(sub, 'id')}")
            return CreatedSubscription(
                customer_id=cid,
                subscription=remote_subscription_from_payload(sub),
                client_secret=_client_secret(sub),
            )

        return self._call("create_subscription", _create, mutating=True)

    def change_plan(self, stripe_subscription_id, new_price_id, prorate, idempotency_key):
        # 既存アイテムIDの取得は参照系として扱う
        current = self._call(
            "retrieve_subscription",
            lambda: self.client.v1.subscriptions.retrieve(stripe_subscription_id),
            mutating=False,
        )
        if not current.ok:
            return current

        items = get_field(get_field(current.value, "items"), "data") or []
        new_items = [{"id": get_field(item, "id"), "deleted": True} for item in items]
        new_items.append({"price": new_price_id})

        def _update():
            sub = self.client.v1.subscriptions.update(
                stripe_subscription_id,
                params={
                    "items": new_items,
                    "proration_behavior": "create_prorations" if prorate else "none",
                },
                options={"idempotency_key": idempotency_key},
            )
            logger.info(
                f"Stripeプラン変更: subscription={stripe_subscription_id}, price={new_price_id}, prorate={prorate}"
            )
            return remote_subscription_from_payload(sub)

        return self._call("change_plan", _update, mutating=True)

    def pause(self, stripe_subscription_id, idempotency_key):
        return self._call(
            "pause",
            lambda: remote_subscription_from_payload(self.client.v1.subscriptions.update(
                stripe_subscription_id,
                params={"pause_collection": {"behavior": "mark_uncollectible"}},
                options={"idempotency_key": idempotency_key},
            )),
            mutating=True,
        )

    def resume(self, stripe_subscription_id, idempotency_key):
        # 空文字で pause_collection を解除
        return self._call(
            "resume",
            lambda: remote_subscription_from_payload(self.client.v1.subscriptions.update(
                stripe_subscription_id,
                params={"pause_collection": ""},
                options={"idempotency_key": idempotency_key},
            )),
            mutating=True,
        )

    def cancel(self, stripe_subscription_id, immediate, idempotency_key):
        if immediate:
            fn = lambda: self.client.v1.subscriptions.cancel(  # noqa: E731
                stripe_subscription_id, options={"idempotency_key": idempotency_key}
            )
        else:
            fn = lambda: self.client.v1.subscriptions.update(  # noqa: E731
                stripe_subscription_id,
                params={"cancel_at_period_end": True},
                options={"idempotency_key": idempotency_key},
            )
        return self._call("cancel", lambda: remote_subscription_from_payload(fn()), mutating=True)

    def reactivate(self, stripe_subscription_id, idempotency_key):
        return self._call(
            "reactivate",
            lambda: remote_subscription_from_payload(self.client.v1.subscriptions.update(
                stripe_subscription_id,
                params={"cancel_at_period_end": False},
                options={"idempotency_key": idempotency_key},
            )),
            mutating=True,
        )

    def retrieve_subscription(self, stripe_subscription_id):
        return self._call(
            "retrieve_subscription",
            lambda: remote_subscription_from_payload(self.client.v1.subscriptions.retrieve(stripe_subscription_id)),
            mutating=False,
        )

    def list_invoices(self, stripe_subscription_id, limit=10):
        def _list():
            invoices = self.client.v1.invoices.list(params={"subscription": stripe_subscription_id, "limit": limit})
            return [
                InvoiceSummary(
                    id=get_field(inv, "id"),
                    amount=get_field(inv, "amount_paid") or get_field(inv, "amount_due") or 0,
                    currency=get_field(inv, "currency") or "",
                    status=get_field(inv, "status") or "",
                    created=clock.from_timestamp(get_field(inv, "created")),
                    pdf_url=get_field(inv, "invoice_pdf"),
                )
                for inv in (get_field(invoices, "data") or [])
            ]

        return self._call("list_invoices", _list, mutating=False)

    def verify_webhook_signature(self, payload, signature):
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook署名検証失敗: {e}")
            return GatewayResult.failure("Invalid signature", code="invalid_signature")
        try:
            event = json.loads(payload)
        except ValueError:
            return GatewayResult.failure("Invalid payload", code="invalid_payload")
        return GatewayResult.success(event)

    # プランカタログ

    def create_product_and_price(self, plan_key, name, description, unit_amount, currency, interval):
        def _create():
            product = self.client.v1.products.create(
                params={"name": name, "description": description or name, "metadata": {"plan_key": plan_key}}
            )
            product_id = get_field(product, "id")
            price_id = self._create_price(product_id, plan_key, unit_amount, currency, interval)
            logger.info(f"Stripe Product/Price作成: product={product_id}, price={price_id}")
            return ExternalPrice(product_id=product_id, price_id=price_id)

        return self._call("create_product_and_price", _create, mutating=True)

    def _create_price(self, product_id, plan_key, unit_amount, currency, interval) -> str:
        price = self.client.v1.prices.create(
            params={
                "product": product_id,
                "unit_amount": unit_amount,
                "currency": currency,
                "recurring": {"interval": interval},
                "metadata": {"plan_key": plan_key},
            }
        )
        return get_field(price, "id")

    def create_price(self, product_id, plan_key, unit_amount, currency, interval):
        return self._call(
            "create_price",
            lambda: self._create_price(product_id, plan_key, unit_amount, currency, interval),
            mutating=True,
        )

    def archive_price(self, price_id):
        def _archive():
            self.client.v1.prices.update(price_id, params={"active": False})
            logger.info(f"Stripe Priceアーカイブ: price={price_id}")

        return self._call("archive_price", _archive, mutating=True)

    def update_product(self, product_id, name=None, description=None, active=None):
        params = {}
        if name is not None:
            params["name"] = name
        if description:
            params["description"] = description
        if active is not None:
            params["active"] = active

        def _update():
            self.client.v1.products.update(product_id, params=params)

        return self._call("update_product", _update, mutating=True)
