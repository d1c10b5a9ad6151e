import uuid
from django.db import models, transaction


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter, source of the order number
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=32, unique=True, null=True, blank=True)

    # Correlation key shared with the payment gateway; immutable once set
    external_reference = models.CharField(max_length=64, unique=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        FAILED = "failed"
        CANCELLED = "cancelled"
        SHIPPED = "shipped"
        DELIVERED = "delivered"

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="ARS")
    items = models.JSONField(default=list)

    # Buyer snapshot for the confirmation
    email = models.CharField(max_length=254, blank=True, default="")
    name = models.CharField(max_length=120, blank=True, default="")
    phone = models.CharField(max_length=40, blank=True, default="")
    shipping_method = models.CharField(max_length=16, default="delivery")
    shipping_address = models.JSONField(null=True, blank=True)
    pickup_point = models.CharField(max_length=120, null=True, blank=True)

    stock_adjusted = models.BooleanField(default=False)

    # Last payment facts seen on the gateway
    payment_id = models.CharField(max_length=64, null=True, blank=True)
    payment_status = models.CharField(max_length=32, null=True, blank=True)
    payment_status_detail = models.CharField(max_length=128, null=True, blank=True)
    payment_external_reference = models.CharField(max_length=64, null=True, blank=True)
    merchant_order_id = models.CharField(max_length=64, null=True, blank=True)

    failure_reason = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
