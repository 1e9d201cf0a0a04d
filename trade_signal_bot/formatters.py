from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .models import Signal, SignalMode


def _fmt_ms(ts_ms: Optional[int]) -> str:
    if not ts_ms:
        return "-"
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    s = f"{val:.8f}".rstrip("0").rstrip(".")
    return s or "0"


_HEADERS = {
    SignalMode.PREVIEW: "PREVIEW",
    SignalMode.CONFIRMED: "CONFIRMED",
    SignalMode.INVALIDATED: "INVALIDATED",
}


def format_signal(signal: Signal, cfg) -> str:
    """Format a signal for Telegram alerts."""
    parse_mode = (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()
    pipe = "\\|" if parse_mode == "MARKDOWNV2" else "|"

    header = f"{_HEADERS[signal.mode]} {signal.direction.value}"
    lines = [f"{_bold(signal.symbol, parse_mode)}  {pipe}  {_bold(header, parse_mode)}"]

    if signal.mode == SignalMode.INVALIDATED:
        reason = signal.reasons[0] if signal.reasons else "-"
        lines.append(_escape_text(f"Reason: {reason}", parse_mode))
        lines.append(_escape_text(f"Time: {_fmt_ms(signal.created_at_ms)}", parse_mode))
    else:
        meta = signal.metadata or {}
        lines.append(_escape_text(f"Confidence: {signal.confidence}/100", parse_mode))
        lines.append(_escape_text(f"Entry: {_fmt_price(signal.entry_price)}", parse_mode))
        lines.append(_escape_text(f"SL: {_fmt_price(signal.stop_loss)} | TP: {_fmt_price(signal.take_profit)}", parse_mode))
        rr = meta.get("rr")
        mult = meta.get("sl_atr_mult")
        if rr is not None and mult is not None:
            lines.append(_escape_text(f"RR: {rr:g} | SL x ATR: {mult:g}", parse_mode))
        ts = signal.confirmed_at_ms if signal.mode == SignalMode.CONFIRMED else signal.created_at_ms
        lines.append(_escape_text(f"Time: {_fmt_ms(ts)}", parse_mode))
        if getattr(cfg, "include_reasons", True) and signal.reasons:
            lines.append(_escape_text("Reasons: " + ", ".join(signal.reasons), parse_mode))

    if getattr(cfg, "include_warnings", True) and signal.warnings:
        lines.append(_escape_text("Warnings: " + ", ".join(signal.warnings), parse_mode))

    footer = (getattr(cfg, "footer", "") or "").strip()
    if footer:
        lines.append("")
        lines.append(_escape_text(footer, parse_mode))

    return "\n".join(lines)
