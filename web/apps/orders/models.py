import uuid
from decimal import Decimal

from django.db import models, transaction


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        INITIALIZED = "INITIALIZED"
        CONFIRMED = "CONFIRMED"
        ABORTED = "ABORTED"
        PAID = "PAID"

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.INITIALIZED)
    client = models.JSONField(default=dict)
    order_items = models.JSONField(default=list)
    includes_shipping = models.BooleanField(default=False)
    shipping_address = models.JSONField(null=True, blank=True)
    sub_total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    shipping_price = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
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
    """Stored outcome of a POST carrying an ``Idempotency-Key`` header."""

    key = models.CharField(max_length=128, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
