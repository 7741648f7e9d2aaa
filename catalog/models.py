from django.core.validators import MinValueValidator, RegexValidator
from django.db import models


class Product(models.Model):
    product_id = models.CharField(
        max_length=64, unique=True,
        validators=[RegexValidator(r"^[a-z0-9][a-z0-9-]*$")],
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    price = models.PositiveIntegerField(validators=[MinValueValidator(1)])  # minor units
    currency = models.CharField(max_length=8, default="INR")
    stock = models.PositiveIntegerField(default=0)
    active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("title",)

    def __str__(self):
        return f"{self.product_id} ({self.title})"
