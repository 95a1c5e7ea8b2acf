import re
from typing import Dict, List, Optional

import httpx
from pydantic import ValidationError

from groupcal_jobs.config.settings import settings
from groupcal_jobs.schemas.push_schemas import (
    PushDeliveryError,
    PushMessage,
    PushSendResult,
    PushTicket,
)
from groupcal_jobs.utils.errors import PushTransportError
from groupcal_jobs.utils.logging import get_logger

logger = get_logger()

TRANSPORT_ERROR_CODE = "TransportError"

_EXPO_TOKEN_PATTERN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")
_UUID_TOKEN_PATTERN = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)


class ExpoPushService:
    """
    Adapter over the Expo push API.

    Sends are best-effort: a ticket with status "error" or a failed chunk is
    logged and reported back in ``PushSendResult.failures``, never raised.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        push_url: str = settings.EXPO_PUSH_URL,
        access_token: Optional[str] = settings.EXPO_ACCESS_TOKEN,
        chunk_size: int = settings.EXPO_PUSH_CHUNK_SIZE,
        timeout: float = settings.EXPO_REQUEST_TIMEOUT,
    ):
        self.client = client
        self.push_url = push_url
        self.access_token = access_token
        self.chunk_size = chunk_size
        self.timeout = timeout

    @staticmethod
    def is_expo_push_token(token: Optional[str]) -> bool:
        """Syntactic check of an Expo push token."""
        if not token or not isinstance(token, str):
            return False
        return bool(
            _EXPO_TOKEN_PATTERN.match(token) or _UUID_TOKEN_PATTERN.match(token)
        )

    def chunk_messages(self, messages: List[PushMessage]) -> List[List[PushMessage]]:
        """Split messages into provider-sized chunks."""
        return [
            messages[i : i + self.chunk_size]
            for i in range(0, len(messages), self.chunk_size)
        ]

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send_messages(self, messages: List[PushMessage]) -> PushSendResult:
        """
        Validate, chunk and send push messages.

        Args:
            messages: Messages to send; invalid tokens are dropped

        Returns:
            PushSendResult with the attempted/accepted counts and failures
        """
        valid_messages = []
        for message in messages:
            if self.is_expo_push_token(message.to):
                valid_messages.append(message)
            else:
                logger.warning("Dropping message with invalid push token", to=message.to)

        result = PushSendResult(attempted=len(valid_messages))
        if not valid_messages:
            return result

        if self.client is not None:
            await self._send_chunks(self.client, valid_messages, result)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await self._send_chunks(client, valid_messages, result)

        return result

    async def _send_chunks(
        self,
        client: httpx.AsyncClient,
        messages: List[PushMessage],
        result: PushSendResult,
    ) -> None:
        for chunk in self.chunk_messages(messages):
            try:
                tickets = await self._send_chunk(client, chunk)
            except Exception as e:
                # A failed chunk never stops the remaining ones
                logger.error(
                    "Push chunk send failed",
                    chunk_size=len(chunk),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                result.failures.extend(
                    PushDeliveryError(
                        message=message,
                        error_code=TRANSPORT_ERROR_CODE,
                        error_message=str(e),
                    )
                    for message in chunk
                )
                continue

            for message, ticket in zip(chunk, tickets):
                if ticket.status == "ok":
                    result.accepted += 1
                    continue

                logger.error(
                    "Push ticket returned an error",
                    to=message.to,
                    error_code=ticket.error_code,
                    error=ticket.message,
                )
                result.failures.append(
                    PushDeliveryError(
                        message=message,
                        error_code=ticket.error_code,
                        error_message=ticket.message,
                    )
                )

            logger.info(
                "Push chunk sent",
                chunk_size=len(chunk),
                accepted=sum(1 for t in tickets if t.status == "ok"),
            )

    async def _send_chunk(
        self, client: httpx.AsyncClient, chunk: List[PushMessage]
    ) -> List[PushTicket]:
        """Send one chunk as a single request and parse its tickets."""
        response = await client.post(
            self.push_url,
            headers=self._headers(),
            json=[message.to_request() for message in chunk],
            timeout=self.timeout,
        )

        if response.status_code != 200:
            raise PushTransportError(
                f"Expo push request failed: {response.status_code} - {response.text}",
                error_code="EXPO_HTTP_ERROR",
            )

        try:
            payload = response.json()
            tickets = [PushTicket.model_validate(t) for t in payload["data"]]
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise PushTransportError(
                f"Malformed Expo push response: {e}",
                error_code="EXPO_BAD_RESPONSE",
            )

        if len(tickets) != len(chunk):
            raise PushTransportError(
                f"Expo returned {len(tickets)} tickets for {len(chunk)} messages",
                error_code="EXPO_TICKET_MISMATCH",
            )

        return tickets


def get_expo_push_service() -> ExpoPushService:
    """Factory for the push service used by the tasks"""
    return ExpoPushService()
