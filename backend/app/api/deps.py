"""Shared FastAPI dependencies."""

from fastapi import Depends

from app.core.config import get_settings
from app.db.base import get_session_factory
from app.payments.processor import PaymentProcessor
from app.payments.stripe_processor import get_payment_processor
from app.services.backbone import Backbone, build_backbone


def get_backbone(processor: PaymentProcessor = Depends(get_payment_processor)) -> Backbone:
    """Backbone bound to the live session factory and the request's payment processor."""
    return build_backbone(get_session_factory(), processor, get_settings())
