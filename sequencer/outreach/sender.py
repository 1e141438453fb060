"""Gmail sending via Composio."""

import asyncio
from typing import Optional, Protocol

import structlog
from composio import Composio

from sequencer.core.errors import TransportFailure

log = structlog.get_logger()

# Cache for user_id lookups
_user_id_cache: dict[str, str] = {}


class MailTransport(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        from_name: str,
        thread_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> dict:
        """Deliver one message. Returns thread_id/message_id, raises TransportFailure."""
        ...

    async def check_for_reply(self, thread_id: str, our_message_count: int) -> bool:
        ...


def _get_client() -> Composio:
    """Get Composio client (uses COMPOSIO_API_KEY env var)."""
    return Composio()


def _get_user_id_for_account(client: Composio, connected_account_id: str) -> Optional[str]:
    """Look up user_id for a connected account."""
    if connected_account_id in _user_id_cache:
        return _user_id_cache[connected_account_id]

    try:
        accounts = client.connected_accounts.list()
        for item in accounts.items:
            if item.id == connected_account_id:
                _user_id_cache[connected_account_id] = item.user_id
                return item.user_id
    except Exception as e:
        log.warning("failed_to_get_user_id", error=str(e))

    return None


async def _execute(slug: str, arguments: dict, connected_account_id: Optional[str]) -> dict:
    """Run a Composio Gmail tool in a worker thread.

    Returns the tool's data payload, raises TransportFailure when the
    tool reports an error.
    """
    client = _get_client()

    execute_kwargs = {
        "slug": slug,
        "arguments": arguments,
        "dangerously_skip_version_check": True,
    }
    if connected_account_id:
        execute_kwargs["connected_account_id"] = connected_account_id
        user_id = _get_user_id_for_account(client, connected_account_id)
        if user_id:
            execute_kwargs["user_id"] = user_id

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None,
        lambda: client.tools.execute(**execute_kwargs)
    )

    # Handle both object and dict responses
    successful = result.successful if hasattr(result, 'successful') else result.get("successful", False)
    data = result.data if hasattr(result, 'data') else result.get("data", {})
    error = result.error if hasattr(result, 'error') else result.get("error")

    if not successful:
        error_msg = error or "Unknown error"
        log.error("composio_tool_failed", slug=slug, error=error_msg)
        raise TransportFailure(f"{slug} failed: {error_msg}")

    return data or {}


async def send_new_email(
    to: str,
    subject: str,
    body: str,
    connected_account_id: Optional[str] = None
) -> dict:
    """Send a new email (not a reply).

    Returns dict with thread_id and message_id.
    """
    log.info("sending_new_email", to=to, subject=subject, connected_account_id=connected_account_id)

    data = await _execute(
        "GMAIL_SEND_EMAIL",
        {"recipient_email": to, "subject": subject, "body": body},
        connected_account_id,
    )
    return {
        "thread_id": data.get("threadId"),
        "message_id": data.get("id"),
    }


async def send_reply_email(
    to: str,
    subject: str,
    body: str,
    thread_id: str,
    message_id: str,
    from_name: str,
    connected_account_id: Optional[str] = None
) -> dict:
    """Send a reply email (in existing thread).

    Returns dict with thread_id and message_id.
    """
    log.info("sending_reply_email", to=to, subject=subject, thread_id=thread_id)

    data = await _execute(
        "GMAIL_REPLY_TO_THREAD",
        {
            "thread_id": thread_id,
            "message_id": message_id,
            "to": to,
            "subject": subject,
            "body": body,
            "from_name": from_name,
        },
        connected_account_id,
    )
    return {
        "thread_id": data.get("threadId") or thread_id,
        "message_id": data.get("id"),
    }


async def get_thread_messages(
    thread_id: str,
    connected_account_id: Optional[str] = None
) -> list[dict]:
    """Get all messages in a thread."""
    log.info("fetching_thread", thread_id=thread_id)

    data = await _execute(
        "GMAIL_FETCH_MESSAGE_BY_THREAD_ID",
        {"thread_id": thread_id},
        connected_account_id,
    )
    # Handle different response formats
    if isinstance(data, list):
        return data
    return data.get("messages", data.get("items", []))


class ComposioGmailTransport:
    """Mail transport backed by a Composio-connected Gmail account.

    Follow-ups go into the lead's existing thread when one is known.
    """

    def __init__(self, connected_account_id: Optional[str] = None):
        self.connected_account_id = connected_account_id or None

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        from_name: str,
        thread_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> dict:
        try:
            if thread_id and message_id:
                return await send_reply_email(
                    to, subject, body, thread_id, message_id, from_name,
                    connected_account_id=self.connected_account_id,
                )
            return await send_new_email(
                to, subject, body, connected_account_id=self.connected_account_id,
            )
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(f"Gmail send failed: {e}") from e

    async def check_for_reply(self, thread_id: str, our_message_count: int) -> bool:
        """True if the thread holds more messages than we sent."""
        messages = await get_thread_messages(thread_id, self.connected_account_id)
        return len(messages) > our_message_count
