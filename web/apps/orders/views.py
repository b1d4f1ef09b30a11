"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain DTOs, delegate to a service obtained from
``providers`` and render the result. Domain errors are translated to HTTP
in one place, ``OrdersAPIView.handle_exception``:

- ``OrderValidationError`` (and subclasses) → 400
- ``ForbiddenError`` → 403
- ``NotFoundError`` → 404
- ``IdempotencyConflictError`` → 409
- ``UpstreamError`` → 503 with a generic retry-later message
- pydantic ``ValidationError`` → 400 ``VALIDATION_ERROR``

Bodies are ``{"detail": CODE, "message": text}``.

Idempotency: ``POST /api/orders/`` honours an ``Idempotency-Key`` header.
The first request is processed and its response stored; retries with the
same payload get the stored response back with ``Idempotent-Replay: true``;
reusing the key with a different payload returns 409.
"""

import logging

from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import PaymentStatus
from .exceptions import (
    ForbiddenError,
    IdempotencyConflictError,
    NotFoundError,
    OrderError,
    UpstreamError,
    WebhookSignatureError,
)
from .idempotency import finalize, get_or_create_idempotent, release
from .schemas import CheckoutIn, HostedCheckoutOut, OrderOut, ReasonIn, StatusUpdateIn, VerifyPaymentIn

logger = logging.getLogger(__name__)

UPSTREAM_MESSAGE = "A payment or inventory service is temporarily unavailable. Please try again later."


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()
    )


def error_body(exc: Exception):
    """Return ``(status_code, body)`` for a domain or validation error."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST, {"detail": "VALIDATION_ERROR", "message": _validation_message(exc)}
    if isinstance(exc, UpstreamError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, {"detail": exc.code, "message": UPSTREAM_MESSAGE}
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ForbiddenError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, IdempotencyConflictError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return code, {"detail": exc.code, "message": exc.message}


def _order_json(order) -> dict:
    return OrderOut.from_domain(order).model_dump(mode="json")


def _paginated(request, orders) -> dict:
    page = request.query_params.get("page", 1)
    try:
        page_size = min(max(int(request.query_params.get("page_size", 20)), 1), 100)
    except ValueError:
        page_size = 20
    p = Paginator(orders, page_size)
    page_obj = p.get_page(page)
    return {
        "count": p.count,
        "page": page_obj.number,
        "page_size": page_size,
        "results": [_order_json(o) for o in page_obj.object_list],
    }


class OrdersAPIView(APIView):
    """Base view: authenticated, throttled, domain errors mapped to HTTP."""

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders"

    def handle_exception(self, exc):
        if isinstance(exc, (OrderError, ValidationError)):
            code, body = error_body(exc)
            if code >= 500:
                logger.error("upstream failure", extra={"path": self.request.path, "error": str(exc)})
            return Response(body, status=code)
        return super().handle_exception(exc)


class OrdersCollectionView(OrdersAPIView):
    """List the caller's orders or place a cash-on-delivery order."""

    def get(self, request):
        status_filter = request.query_params.get("status") or None
        orders = providers.get_lifecycle_service().list_orders(request.user.id, status_filter)
        return Response(_paginated(request, orders))

    def post(self, request):
        """Create a COD order.

        Returns:
            Response: One of the following responses.
            - 200 with the order when it is created.
            - 200 with the stored body (and ``Idempotent-Replay: true``) when
              the same idempotency key and payload are retried.
            - 400 for validation errors, 404 for unknown products or address.
            - 409 ``IDEMPOTENCY_CONFLICT`` / ``IDEMPOTENCY_IN_PROGRESS``.
            - 503 ``UPSTREAM_UNAVAILABLE`` when inventory is unavailable while
              pricing; the key is released so the client can retry. Once the
              order exists its response is stored, whatever inventory does.
        """
        idem_key = request.headers.get("Idempotency-Key")

        dto = CheckoutIn.model_validate(request.data)

        rec = None
        if idem_key:
            existing, rec = get_or_create_idempotent(request.user.id, idem_key, request.data)
            if existing:
                if not rec.response_status:
                    return Response(
                        {"detail": "IDEMPOTENCY_IN_PROGRESS", "message": "The original request is still being processed"},
                        status=status.HTTP_409_CONFLICT,
                    )
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            order = providers.get_checkout_orchestrator().place_cod_order(request.user.id, dto.to_domain())
        except UpstreamError:
            if rec:
                release(rec)
            raise
        except OrderError as e:
            code, body = error_body(e)
            if rec:
                finalize(rec, code, body)
            return Response(body, status=code)

        body = _order_json(order)
        if rec:
            finalize(rec, status.HTTP_200_OK, body, order_id=order.id)
        return Response(body, status=status.HTTP_200_OK)


class OrderDetailView(OrdersAPIView):
    def get(self, request, oid):
        order = providers.get_lifecycle_service().get_order(oid, request.user.id, is_admin=request.user.is_staff)
        return Response(_order_json(order))


class OrderCancelView(OrdersAPIView):
    def patch(self, request, oid):
        dto = ReasonIn.model_validate(request.data)
        order = providers.get_lifecycle_service().cancel(request.user.id, oid, dto.reason)
        return Response(_order_json(order))


class OrderReturnView(OrdersAPIView):
    def patch(self, request, oid):
        dto = ReasonIn.model_validate(request.data)
        order = providers.get_lifecycle_service().request_return(request.user.id, oid, dto.reason)
        return Response(_order_json(order))


class RetryPaymentView(OrdersAPIView):
    throttle_scope = "checkout"

    def post(self, request, oid):
        checkout = providers.get_checkout_orchestrator().retry_payment(
            request.user.id, oid, customer_email=request.user.email or None
        )
        return Response(HostedCheckoutOut.from_domain(checkout).model_dump(mode="json"))


class CreateCheckoutSessionView(OrdersAPIView):
    """Start (or resume) a hosted checkout and return the redirect URL."""

    throttle_scope = "checkout"

    def post(self, request):
        dto = CheckoutIn.model_validate(request.data)
        checkout = providers.get_checkout_orchestrator().start_hosted_checkout(
            request.user.id, dto.to_domain(), customer_email=request.user.email or None
        )
        return Response(HostedCheckoutOut.from_domain(checkout).model_dump(mode="json"))


class VerifyPaymentView(OrdersAPIView):
    """Report the state of the caller's order bound to a checkout session.

    Read only: payment is confirmed by the webhook, never by this call.
    """

    throttle_scope = "checkout"

    def post(self, request):
        dto = VerifyPaymentIn.model_validate(request.data)
        order = providers.get_lifecycle_service().find_by_session(request.user.id, dto.session_id)
        return Response(
            {
                "order": _order_json(order),
                "already_processed": order.payment_status == PaymentStatus.PAID,
            }
        )


class CheckoutConfigView(OrdersAPIView):
    permission_classes = [AllowAny]
    throttle_scope = "checkout"

    def get(self, request):
        return Response(
            {
                "enabled": bool(getattr(settings, "STRIPE_ENABLED", False)),
                "publishable_key": getattr(settings, "STRIPE_PUBLISHABLE_KEY", ""),
                "currency": getattr(settings, "STORE_CURRENCY", "aed"),
            }
        )


class AdminOrdersView(OrdersAPIView):
    permission_classes = [IsAdminUser]
    throttle_scope = "admin"

    def get(self, request):
        orders = providers.get_lifecycle_service().list_all_orders()
        return Response(_paginated(request, orders))


class AdminOrderStatusView(OrdersAPIView):
    permission_classes = [IsAdminUser]
    throttle_scope = "admin"

    def patch(self, request, oid):
        dto = StatusUpdateIn.model_validate(request.data)
        order = providers.get_lifecycle_service().admin_update_status(oid, dto.status)
        return Response(_order_json(order))


class PaymentWebhookView(OrdersAPIView):
    """Receive payment provider events.

    The signature is checked against ``request.body`` before anything is
    parsed, so ``request.data`` is never touched here. Every verified event
    gets a 200 (the body reports what was done with it); only signature
    failures get a 400, and a 503 tells the provider to redeliver after an
    infrastructure failure.
    """

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_scope = "webhook"

    def post(self, request):
        raw_body = request.body
        signature = request.headers.get("Stripe-Signature")
        try:
            result = providers.get_webhook_reconciler().handle(raw_body, signature)
        except WebhookSignatureError as e:
            logger.warning("webhook rejected", extra={"reason": e.message})
            return Response({"detail": e.code, "message": e.message}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            {
                "received": True,
                "event_id": result.event_id,
                "event_type": result.event_type,
                "outcome": result.outcome.value,
            }
        )
