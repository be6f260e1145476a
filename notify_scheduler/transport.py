"""
MODULE OVERVIEW:
Mail Transport implementations.

WHAT IS HAPPENING HERE:
`HttpMailTransport` posts to a Resend-style JSON email API with httpx and
turns every outcome into the error taxonomy the Dispatch Engine understands:

    2xx                      -> message id
    timeout / network error  -> TransportTransient (retried)
    408, 425, 429, 5xx       -> TransportTransient (retried)
    any other 4xx            -> TransportPermanent (bad recipient, rejected)
"""
import httpx
from loguru import logger

from notify_scheduler.collaborators import MailTransport
from notify_scheduler.errors import TransportPermanent, TransportTransient

RETRYABLE_STATUS = {408, 425, 429}


class HttpMailTransport(MailTransport):
    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self.api_url = api_url
        self.from_address = from_address
        self.timeout = timeout
        self.client = client or httpx.Client()
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def send(self, to_address: str, subject: str, body: str, timeout: float | None = None) -> str:
        request = {"from": self.from_address, "to": [to_address], "subject": subject, "text": body}
        try:
            resp = self.client.post(
                self.api_url, json=request, headers=self.headers, timeout=timeout or self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransportTransient(f"mail API timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransportTransient(f"mail API unreachable: {e}") from e

        if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS:
            raise TransportTransient(f"mail API returned {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise TransportPermanent(f"mail API rejected message ({resp.status_code}): {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        message_id = str(data.get("id", "")) if isinstance(data, dict) else ""
        logger.debug(f"transport=http to={to_address} status={resp.status_code} message_id={message_id}")
        return message_id

    def close(self) -> None:
        self.client.close()


class LoggingMailTransport(MailTransport):
    """Writes messages to the log instead of delivering them. Handy for dry runs."""

    def __init__(self):
        self.sent_count = 0

    def send(self, to_address: str, subject: str, body: str, timeout: float | None = None) -> str:
        self.sent_count += 1
        logger.info(f"transport=log to={to_address} subject='{subject}' bytes={len(body)}")
        return f"log-{self.sent_count}"
