import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class MailResult:
    ok: bool
    error: Optional[str] = None

class Notifier(Protocol):
    async def send_mail(self, to: str, subject: str, body_html: str) -> MailResult:
        ...

    async def close(self) -> None:
        ...

class HttpMailNotifier:
    """
    Sends mail through a JSON mail API (`POST {base_url}` with from/to/subject/html).
    Transport and non-2xx errors come back as a failed MailResult; nothing is raised.
    """

    def __init__(
        self,
        base_url: str,
        sender: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.sender = sender
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def send_mail(self, to: str, subject: str, body_html: str) -> MailResult:
        body = {
            "from": self.sender,
            "to": to,
            "subject": subject,
            "html": body_html,
        }
        try:
            resp = await self.client.post(self.base_url, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Mail API rejected message to=%s status=%s", to, e.response.status_code)
            return MailResult(ok=False, error=f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning("Mail API request failed to=%s: %s", to, e)
            return MailResult(ok=False, error=f"{type(e).__name__}: {e}")
        return MailResult(ok=True)

    async def close(self) -> None:
        await self.client.aclose()

class LoggingNotifier:
    """Development notifier: logs each message instead of delivering it."""

    async def send_mail(self, to: str, subject: str, body_html: str) -> MailResult:
        logger.info(f"Mail to {to}: {subject}")
        logger.debug(body_html)
        return MailResult(ok=True)

    async def close(self) -> None:
        pass

def build_notifier(settings) -> Notifier:
    if settings.MAIL_API_URL:
        return HttpMailNotifier(
            base_url=settings.MAIL_API_URL,
            sender=settings.MAIL_FROM,
            api_key=settings.MAIL_API_KEY,
            timeout=settings.MAIL_TIMEOUT_SECONDS,
        )
    logger.info("MAIL_API_URL not set, overdue emails will only be logged")
    return LoggingNotifier()
