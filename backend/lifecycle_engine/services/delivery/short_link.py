"""
Short-link Service Client

    create(long_url) -> short_url

Click events recorded by the short-link service come back through the
link-click webhook and land in link_clicks.
"""
from datetime import datetime
from typing import Optional, Protocol
from uuid import uuid4
import logging

import requests
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import LinkClickDB


logger = logging.getLogger(__name__)


class ShortLinkError(Exception):
    """Raised when a short link cannot be created."""
    pass


class ShortLinkService(Protocol):
    def create(self, long_url: str) -> str:
        ...


class HttpShortLinkService:
    """POST {api_url} {"url": long_url} -> {"short_url": ...}"""

    def __init__(self, api_url: Optional[str] = None, token: Optional[str] = None, timeout: int = 10):
        self.api_url = api_url if api_url is not None else config.SHORT_LINK_API_URL
        self.token = token if token is not None else config.SHORT_LINK_API_TOKEN
        self.timeout = timeout

    def create(self, long_url: str) -> str:
        if not self.api_url:
            raise ShortLinkError("SHORT_LINK_API_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            r = requests.post(self.api_url, headers=headers, json={"url": long_url}, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise ShortLinkError(f"Short link creation failed for {long_url}: {e}") from e

        short_url = (r.json() or {}).get("short_url")
        if not short_url:
            raise ShortLinkError(f"Short link service returned no short_url for {long_url}")
        return short_url


def shorten_or_fallback(service: Optional[ShortLinkService], long_url: str) -> str:
    """Shorten a URL; on any failure fall back to the long URL."""
    if not long_url:
        return ""
    if service is None:
        return long_url
    try:
        return service.create(long_url)
    except Exception as e:
        logger.error(f"Failed to shorten {long_url}: {e}")
        return long_url


def record_link_click(
    db: Session,
    clicked_at: datetime,
    short_code: Optional[str] = None,
    customer_id: Optional[str] = None,
    lifecycle_execution_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
) -> LinkClickDB:
    click = LinkClickDB(
        id=str(uuid4()),
        short_code=short_code,
        customer_id=customer_id,
        lifecycle_execution_id=lifecycle_execution_id,
        campaign_id=campaign_id,
        clicked_at=clicked_at,
    )
    db.add(click)
    db.flush()
    return click
