from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

log = logging.getLogger("telegram")

# sendMessage rejects longer texts.
MAX_MESSAGE_LEN = 4096


def message_payload(chat_id: str, text: str, *, parse_mode: Optional[str], disable_preview: bool) -> Dict[str, Any]:
    if len(text) > MAX_MESSAGE_LEN:
        text = text[: MAX_MESSAGE_LEN - 1] + "…"
    payload: Dict[str, Any] = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": disable_preview,
    }
    if parse_mode:
        payload["parse_mode"] = parse_mode
    return payload


class TelegramNotifier:
    """Bot API sender; one POST per configured chat, best effort."""

    def __init__(
        self,
        token: str,
        chat_ids: List[str],
        *,
        disable_web_page_preview: bool = True,
        timeout_s: int = 15,
    ):
        self.token = (token or "").strip()
        self.chat_ids = [str(x).strip() for x in (chat_ids or []) if str(x).strip()]
        self.disable_web_page_preview = disable_web_page_preview
        self.timeout_s = timeout_s

    def enabled(self) -> bool:
        return bool(self.token) and bool(self.chat_ids)

    async def _post(self, sess: aiohttp.ClientSession, url: str, payload: Dict[str, Any]) -> bool:
        chat_id = payload["chat_id"]
        try:
            async with sess.post(url, json=payload) as resp:
                if resp.status == 200:
                    return True
                body = await resp.text()
                log.warning("telegram_send_failed chat_id=%s status=%s body=%s", chat_id, resp.status, body[:500])
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("telegram_send_exception chat_id=%s err=%s", chat_id, e)
        return False

    async def send(self, text: str, *, parse_mode: Optional[str] = None) -> int:
        """Returns the number of chats that accepted the message."""
        if not self.enabled():
            return 0
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        payloads = [
            message_payload(c, text, parse_mode=parse_mode, disable_preview=self.disable_web_page_preview)
            for c in self.chat_ids
        ]
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as sess:
            results = await asyncio.gather(*[self._post(sess, url, p) for p in payloads])
        return sum(1 for ok in results if ok)
