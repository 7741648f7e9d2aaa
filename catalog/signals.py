from django.db import transaction
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Product
from .services import invalidate_listing


@receiver(post_save, sender=Product)
@receiver(post_delete, sender=Product)
def _product_changed(sender, **kwargs):
    transaction.on_commit(invalidate_listing)
