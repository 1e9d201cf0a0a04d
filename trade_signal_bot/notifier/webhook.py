from __future__ import annotations

import json
import logging

import aiohttp

from ..models import Signal

log = logging.getLogger("webhook")


def build_payload(sig: Signal, secret: str = "") -> dict:
    payload = sig.to_dict()
    if secret:
        payload["secret"] = secret
    return payload


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: dict):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    async def send_signal(self, sig: Signal) -> None:
        if not self.enabled or not self.url:
            return

        body = json.dumps(build_payload(sig, self.secret), separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=body, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s signal_id=%s body=%s", resp.status, sig.id, text[:200])
        except Exception as e:
            # Log but do not crash
            log.warning("webhook_post_failed signal_id=%s err=%s", sig.id, e)
