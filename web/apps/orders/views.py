"""HTTP views for the orders app.

This module contains the DRF API views of the checkout. Views are kept
intentionally small: they validate requests (via Pydantic), map to domain
DTOs, delegate to the domain services and return an HTTP response.

Services come from ``providers`` (``get_checkout_service``,
``get_reconciler``), which wire HTTP adapter clients or in-process stubs
depending on runtime settings. Views look them up through the module so
tests can swap them.

The payment webhook is fail-open: once the request passes the signature
check it always answers 200, whatever the reconciler did. Failures are
reported in logs, not through the gateway's redelivery.
"""
import hmac
import logging

from django.conf import settings
from django.core.paginator import Paginator
from django.db import IntegrityError
from pydantic import ValidationError
from rest_framework import status
from rest_framework.exceptions import ParseError, UnsupportedMediaType
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import Order, OrderItem, OrderStatus, OutOfStock
from .idempotency import finalize, get_or_create_idempotent, normalize_key, release, stored_response
from .models import OrderModel
from .notifications import parse_notification, verify_signature
from .repository import to_domain
from .schemas import CreateOrderDTO, OrderReadDTO, PreferenceRequestDTO, StatusAdvanceDTO


logger = logging.getLogger("orders.api")


def _read_dto(order: Order) -> dict:
    dto = OrderReadDTO(
        id=str(order.id),
        order_number=order.order_number,
        status=order.status.value,
        total_cents=order.total_cents,
        currency=order.currency,
        external_reference=order.external_reference,
        stock_adjusted=order.stock_adjusted,
        payment_id=order.payment_id,
        payment_status=order.payment_status,
        payment_status_detail=order.payment_status_detail,
        failure_reason=order.failure_reason,
        items=[it.as_dict() for it in order.items],
    )
    return dto.model_dump(exclude_none=True)


def _lookup(store, oid: str):
    """Find an order by UUID or by order number."""
    return store.get(oid) or store.get_by_number(oid)


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List orders and create pending orders at checkout.

    Creation supports idempotency via the ``Idempotency-Key`` header: the
    first request is processed and its response stored; retries with the
    same key and identical payload get the stored response back. Reusing
    the key with a different payload returns HTTP 409.
    """
    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        qs = OrderModel.objects.order_by("-created_at")
        status_filter = request.GET.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        page = int(request.GET.get("page", 1))
        page_size = int(request.GET.get("page_size", 20))
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)

        results = [_read_dto(to_domain(o)) for o in page_obj.object_list]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )

    def post(self, request):
        """Create a new pending order.

        Returns:
            Response: One of the following responses.
            - 201 with {id, order_number, status, external_reference}.
            - 200/201 replay of the stored body for a retried idempotency key.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the same key is
              reused with a different payload, {detail:
              "IDEMPOTENCY_IN_PROGRESS"} while the first request is still
              running, or {detail: "DUPLICATE_EXTERNAL_REFERENCE"}.
            - 400 for DTO validation errors or a malformed key.
        """
        idem_key = request.headers.get("Idempotency-Key")
        if idem_key is not None:
            try:
                idem_key = normalize_key(idem_key)
            except ValueError as e:
                return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, dto.model_dump(mode="json"))
                if existing:
                    status_code, stored = stored_response(rec)
                    resp = Response(stored, status=status_code)
                    resp["Idempotent-Replay"] = "true"
                    return resp
            except ValueError as e:
                return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)

        # 3) Domain
        try:
            return self._create(dto, rec)
        except Exception:
            # a failed first attempt must not leave the key stuck in flight
            if rec:
                release(rec)
            raise

    def _create(self, dto: CreateOrderDTO, rec):
        shipping_address = None
        if dto.shipping_method == "delivery":
            shipping_address = {**dto.shipping_address.model_dump(), "text": dto.shipping_address.as_text()}
        order = Order(
            id=None,
            external_reference=dto.external_reference or "",
            items=[OrderItem(i.product_ref, i.quantity, i.unit_price_cents, i.title) for i in dto.items],
            total_cents=dto.total_cents,
            currency=dto.currency,
            email=dto.email,
            name=dto.name.strip(),
            phone=dto.phone.strip(),
            shipping_method=dto.shipping_method,
            shipping_address=shipping_address,
            pickup_point=(dto.pickup_point or "").strip() or None,
        )

        service = providers.get_checkout_service()
        ref = order.external_reference
        if ref and service.orders.find_by_external_reference(ref):
            return self._duplicate_reference(rec)

        try:
            out = service.create_order(order)
        except ValueError as e:
            body = {"detail": str(e)}
            if rec:
                finalize(rec, status.HTTP_400_BAD_REQUEST, body)
            return Response(body, status=status.HTTP_400_BAD_REQUEST)
        except IntegrityError:
            # another request inserted the same reference after the lookup above
            if ref and service.orders.find_by_external_reference(ref):
                logger.warning("duplicate external reference on insert", extra={"external_reference": ref})
                return self._duplicate_reference(rec)
            raise

        # 4) Response
        body = {
            "id": str(out.id),
            "order_number": out.order_number,
            "status": out.status.value,
            "external_reference": out.external_reference,
        }
        logger.info("order created", extra={"order_id": str(out.id), "external_reference": out.external_reference})
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=out.id)
        return Response(body, status=status.HTTP_201_CREATED)

    @staticmethod
    def _duplicate_reference(rec):
        body = {"detail": "DUPLICATE_EXTERNAL_REFERENCE"}
        if rec:
            finalize(rec, status.HTTP_409_CONFLICT, body)
        return Response(body, status=status.HTTP_409_CONFLICT)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid: str):
        order = _lookup(providers.get_order_store(), str(oid))
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(_read_dto(order), status=200)


class OrderStatusView(APIView):
    """Operator endpoint to advance a paid order: shipped, then delivered."""

    def patch(self, request, oid: str):
        token = getattr(settings, "ADMIN_API_TOKEN", "")
        supplied = request.headers.get("X-Admin-Token", "")
        if not token or not hmac.compare_digest(supplied.encode(), token.encode()):
            return Response({"detail": "FORBIDDEN"}, status=status.HTTP_403_FORBIDDEN)

        try:
            dto = StatusAdvanceDTO.model_validate(request.data)
        except ValidationError:
            return Response(
                {"detail": "INVALID_STATUS", "allowed": ["shipped", "delivered"]},
                status=status.HTTP_400_BAD_REQUEST,
            )

        service = providers.get_checkout_service()
        order = _lookup(service.orders, str(oid))
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)

        current = order.status
        try:
            service.advance_status(order, OrderStatus(dto.next_status))
        except ValueError as e:
            return Response(
                {"detail": str(e), "current_status": current.value, "requested_status": dto.next_status},
                status=status.HTTP_409_CONFLICT,
            )
        logger.info("order status advanced",
                    extra={"order_id": str(order.id), "from_status": current.value, "to_status": dto.next_status})
        return Response(_read_dto(order), status=200)


class PaymentPreferenceView(APIView):
    """Create a gateway preference for a pending order.

    Runs the pre-flight stock check first so buyers are not sent to pay for
    an order that cannot be fulfilled.
    """
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_create"

    def post(self, request):
        try:
            dto = PreferenceRequestDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        service = providers.get_checkout_service()
        order = _lookup(service.orders, dto.order_id)
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)

        try:
            pref = service.create_preference(order)
        except OutOfStock as e:
            return Response(
                {"detail": "OUT_OF_STOCK", "problems": [p.as_dict() for p in e.problems]},
                status=status.HTTP_409_CONFLICT,
            )
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
        except Exception:
            logger.exception("preference creation failed", extra={"order_id": str(order.id)})
            return Response({"detail": "GATEWAY_ERROR"}, status=status.HTTP_502_BAD_GATEWAY)

        return Response(
            {
                "preference_id": pref.preference_id,
                "init_point": pref.init_point,
                "sandbox_init_point": pref.sandbox_init_point,
                "external_reference": order.external_reference,
                "order_id": str(order.id),
            },
            status=200,
        )


class PaymentWebhookView(APIView):
    """Receives payment gateway notifications (GET and POST)."""

    def post(self, request):
        try:
            body = request.data
        except (ParseError, UnsupportedMediaType):
            body = None

        event = parse_notification(request.query_params, body)

        secret = getattr(settings, "MP_WEBHOOK_SECRET", "")
        if secret:
            ok = verify_signature(
                secret,
                request.headers.get("x-signature", ""),
                request.headers.get("x-request-id", ""),
                request.query_params.get("data.id") or event.resource_id,
            )
            if not ok:
                logger.warning("webhook rejected: invalid signature",
                               extra={"event_kind": event.kind, "resource_id": event.resource_id})
                return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_401_UNAUTHORIZED)

        result = providers.get_reconciler().handle_notification(event)
        logger.info("webhook handled",
                    extra={"event_kind": event.kind, "resource_id": event.resource_id, **result.as_dict()})
        return Response(result.as_dict(), status=200)

    def get(self, request):
        return self.post(request)
