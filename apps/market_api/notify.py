from __future__ import annotations

import logging
from typing import Dict, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .settings import settings

logger = logging.getLogger(__name__)


class NotificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_key: str = Field(alias="templateKey")
    to: str
    user_id: str = Field(alias="userId")
    variables: Dict[str, str] = Field(default_factory=dict)


class NotificationSender(Protocol):
    async def send(self, *, template_key: str, to: str, user_id: str, variables: Dict[str, str]) -> bool:
        ...


class EmailApiSender:
    """Posts templated emails to the internal ``/api/email/send`` endpoint.

    Rendering and delivery happen on the other side; the response body is ignored.
    """

    def __init__(
        self,
        base_url: str | None = None,
        internal_secret: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.SITE_URL).rstrip("/")
        self.internal_secret = settings.INTERNAL_SECRET if internal_secret is None else internal_secret
        self.timeout = timeout
        self._transport = transport

    async def send(self, *, template_key: str, to: str, user_id: str, variables: Dict[str, str]) -> bool:
        if not self.internal_secret:
            logger.info("INTERNAL_SECRET not set; skipping %s email to user %s", template_key, user_id)
            return False

        req = NotificationRequest(template_key=template_key, to=to, user_id=user_id, variables=dict(variables))
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self.base_url}/api/email/send",
                json=req.model_dump(by_alias=True),
                headers={"x-internal-secret": self.internal_secret},
            )
            resp.raise_for_status()
        return True
