# service_orders/utils/notify.py
import logging
from typing import Optional

import requests

from service_orders import config

logger = logging.getLogger(__name__)


def push_status(order_id: int, status: str, url: Optional[str] = None, timeout: float = 3):
    """Best-effort push of a committed status change; never raises"""
    url = url or config.STATUS_WEBHOOK_URL
    if not url:
        return
    try:
        requests.post(url, json={"order_id": order_id, "status": status}, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"status push failed order={order_id} status={status} err={e}")
