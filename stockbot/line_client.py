from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

import httpx

from .models import Reply
from .replies import to_message
from .supabase_client import ApiError

logger = logging.getLogger("stockbot.line")

SIGNATURE_HEADER = "X-Line-Signature"


def verify_signature(body: bytes, signature: Optional[str], channel_secret: str) -> bool:
    """Purpose: Check that a webhook body was signed with the channel secret.
    Inputs/Outputs: Inputs are the raw request bytes, the signature header and
        the channel secret; output is True only for a matching signature.
    Side Effects / State: None.
    Dependencies: hmac/hashlib; called by the webhook route before decoding.
    Failure Modes: A missing secret or header is a mismatch, never an error.
    If Removed: Anyone who can reach the URL can post events as any user.
    Testing Notes: Sign with base64(HMAC-SHA256(secret, body)); flip one byte
        of the body and expect False.
    """
    # Compare in constant time against base64(HMAC-SHA256(secret, body)).
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(base64.b64encode(digest), signature.strip().encode("utf-8"))


class LineReplyClient:
    """Sends reply messages addressed by an event's reply token."""

    def __init__(self, http: httpx.AsyncClient, access_token: str, api_base: str = "https://api.line.me") -> None:
        """Purpose: Configure the messaging API endpoint and bearer token.
        Inputs/Outputs: Inputs are the shared AsyncClient, channel token and API base.
        Side Effects / State: Stores auth headers.
        Dependencies: httpx.
        Failure Modes: Raises ValueError if the access token is missing.
        If Removed: The bot can read and write stock but never answers.
        Testing Notes: Use httpx.MockTransport and inspect the posted JSON.
        """
        # Fail fast on missing credentials.
        if not access_token:
            raise ValueError("LINE_CHANNEL_ACCESS_TOKEN is required")
        self._http = http
        self._url = f"{api_base.rstrip('/')}/v2/bot/message/reply"
        self._headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def reply(self, reply_token: str, reply: Reply) -> None:
        body = {"replyToken": reply_token, "messages": [to_message(reply)]}
        resp = await self._http.post(self._url, json=body, headers=self._headers)
        if resp.status_code >= 400:
            logger.warning("reply rejected status=%s body=%s", resp.status_code, resp.text[:200])
            raise ApiError(f"reply failed ({resp.status_code}): {resp.text}", status=resp.status_code)
