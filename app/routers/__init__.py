"""
API routers package
"""

from app.routers.pos_webhook import router as pos_webhook_router
from app.routers.queue_admin import router as queue_admin_router
