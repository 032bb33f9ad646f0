"""
API routers for the datafromimage service.

Routers:
- billing: checkout sessions, payment webhook, credit balance
- extraction: paid text extraction, history, reviews
"""

from datafromimage.routers.billing import router as billing_router
from datafromimage.routers.extraction import router as extraction_router

__all__ = ["billing_router", "extraction_router"]
