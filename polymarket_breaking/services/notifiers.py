"""Email delivery providers behind a single send() contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from polymarket_breaking.config import Settings
from polymarket_breaking.errors import ConfigurationError
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class SendResult:
    """Outcome of one delivery attempt."""

    ok: bool
    provider: str
    error: Optional[str] = None


class Notifier(Protocol):
    name: str

    async def send(self, to: str, subject: str, html: str) -> SendResult: ...

    async def close(self) -> None: ...


class HttpNotifier(ABC):
    """Base for providers reached over HTTPS with a bearer API key.

    Never raises from send(): transport errors, timeouts and non-2xx
    responses become failed SendResults.
    """

    name = "http"
    url = ""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def build_payload(self, to: str, subject: str, html: str) -> dict[str, Any]:
        """Provider-specific JSON body for one message."""

    async def send(self, to: str, subject: str, html: str) -> SendResult:
        client = await self._ensure_client()
        try:
            response = await client.post(self.url, json=self.build_payload(to, subject, html))
        except httpx.TimeoutException:
            error = f"{self.name} request timeout after {self.timeout}s"
            logger.warning(error, extra={"ctx_provider": self.name, "ctx_to": to})
            return SendResult(ok=False, provider=self.name, error=error)
        except httpx.HTTPError as e:
            logger.warning(
                "Email provider unreachable",
                extra={"ctx_provider": self.name, "ctx_error": str(e)},
            )
            return SendResult(ok=False, provider=self.name, error=f"{self.name} error: {e}")

        if response.is_success:
            logger.debug("Email sent", extra={"ctx_provider": self.name, "ctx_to": to})
            return SendResult(ok=True, provider=self.name)

        error = f"{self.name} API error: {response.status_code} {response.text[:200]}"
        logger.warning(
            "Email provider rejected message",
            extra={"ctx_provider": self.name, "ctx_status": response.status_code},
        )
        return SendResult(ok=False, provider=self.name, error=error)


class ResendNotifier(HttpNotifier):
    name = "resend"
    url = RESEND_API_URL

    def build_payload(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": [to],
            "subject": subject,
            "html": html,
        }


class SendGridNotifier(HttpNotifier):
    name = "sendgrid"
    url = SENDGRID_API_URL

    def build_payload(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": {"email": self.from_address, "name": self.from_name},
            "content": [{"type": "text/html", "value": html}],
        }


class LogNotifier:
    """Development sink: logs the message instead of delivering it."""

    name = "log"

    async def send(self, to: str, subject: str, html: str) -> SendResult:
        logger.info(
            "Email (not delivered)",
            extra={"ctx_to": to, "ctx_subject": subject, "ctx_html_length": len(html)},
        )
        return SendResult(ok=True, provider=self.name)

    async def close(self) -> None:
        pass


def build_notifiers(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[Notifier]:
    """Build the provider chain in fallback order.

    Raises:
        ConfigurationError: Production deployment without any real provider.
    """
    notifiers: list[Notifier] = []
    common = {
        "from_address": settings.email_from_address,
        "from_name": settings.email_from_name,
        "timeout": settings.http_timeout,
        "transport": transport,
    }
    if settings.resend_api_key:
        notifiers.append(ResendNotifier(settings.resend_api_key, **common))
    if settings.sendgrid_api_key:
        notifiers.append(SendGridNotifier(settings.sendgrid_api_key, **common))

    is_development = settings.deploy_env.lower() == "development"
    if not notifiers and settings.deploy_env.lower() == "production":
        raise ConfigurationError(
            "No email provider configured: set BREAKING_RESEND_API_KEY or "
            "BREAKING_SENDGRID_API_KEY"
        )
    if not notifiers or is_development:
        notifiers.append(LogNotifier())

    logger.info(
        "Email providers configured",
        extra={"ctx_providers": [n.name for n in notifiers]},
    )
    return notifiers
