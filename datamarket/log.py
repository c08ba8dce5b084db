"""Datamarket console logging.

Thin category helpers over the stdlib `datamarket` logger. Each helper
renders one visual kind of event (market data, transactions, HTTP
access lines, ...) in the ANSI palette used across the package.

Example:
    from datamarket.log import log, configure_logging

    configure_logging()
    log.market("Negotiation", {"Offered": "$5", "List price": "$10"})
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Mapping, Optional


# ─── Colors ───────────────────────────────────────────────────────────────────

class _C:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    BLUE = "\033[94m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    CYAN = "\033[96m"
    MAGENTA = "\033[95m"
    GRAY = "\033[90m"


def _paint(color: str, text: str) -> str:
    return f"{color}{text}{_C.RESET}"


def configure_logging(level: int = logging.INFO, stream=None) -> logging.Logger:
    """Install a plain console handler on the `datamarket` logger.

    Safe to call more than once; a later call replaces the handler without
    touching the previous stream, which may already be closed.
    """
    logger = logging.getLogger("datamarket")
    logger.setLevel(level)
    for old in [h for h in logger.handlers if getattr(h, "_datamarket", False)]:
        logger.removeHandler(old)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler._datamarket = True
    logger.addHandler(handler)
    logger.propagate = False
    return logger


class MarketLogger:
    """Category helpers for agent, market and transaction events."""

    def __init__(self, name: str = "datamarket"):
        self._logger = logging.getLogger(name)

    def _details(self, details: Optional[Mapping[str, Any]], color: str) -> str:
        if not details:
            return ""
        return "".join(
            f"\n{_paint(_C.GRAY, '   • ' + str(key) + ': ')}{_paint(color, str(value))}"
            for key, value in details.items()
        )

    def separator(self):
        self._logger.info("\n" + _paint(_C.GRAY, "─" * 60) + "\n")

    def section(self, title: str):
        self._logger.info("\n\n" + _paint(_C.BOLD + _C.BLUE, f"━━━ {title} ━━━") + "\n")

    def success(self, message: str, details: Optional[str] = None):
        text = _paint(_C.GREEN, f"✅ {message}")
        if details:
            text += "\n" + _paint(_C.GRAY, f"   {details}")
        self._logger.info(text)

    def info(self, message: str, details: Optional[str] = None):
        text = _paint(_C.CYAN, f"ℹ️  {message}")
        if details:
            text += "\n" + _paint(_C.GRAY, f"   {details}")
        self._logger.info(text)

    def server(self, name: str, url: str):
        self._logger.info(_paint(_C.BLUE, f"   • {name}:") + " " + _paint(_C.CYAN, url))

    def incoming(self, kind: str, content: str, preview: bool = False):
        if preview and len(content) > 100:
            content = content[:100] + "..."
        self._logger.info("\n" + _paint(_C.YELLOW, f"◀── {kind}") + "\n" + _paint(_C.DIM, f"    {content}"))

    def outgoing(self, kind: str, content: str, preview: bool = False):
        if preview and len(content) > 100:
            content = content[:100] + "..."
        self._logger.info(_paint(_C.GREEN, f"──▶ {kind}") + "\n" + _paint(_C.DIM, f"    {content}"))

    def agent(self, action: str, message: str):
        self._logger.info("\n" + _paint(_C.MAGENTA, f"🤖 {action}") + "\n" + _paint(_C.GRAY, f"   {message}"))

    def process(self, action: str, details: Optional[Mapping[str, Any]] = None):
        self._logger.info("\n" + _paint(_C.BLUE, f"⚙️  {action}") + self._details(details, _C.CYAN))

    def market(self, title: str, data: Mapping[str, Any]):
        self._logger.info("\n" + _paint(_C.GREEN, f"📊 {title}") + self._details(data, _C.YELLOW))

    def transaction(self, action: str, details: Optional[Mapping[str, Any]] = None):
        self._logger.info("\n" + _paint(_C.CYAN, f"💳 {action}") + self._details(details, _C.GREEN))

    def debug(self, label: str, data: Any):
        if not self._logger.isEnabledFor(logging.DEBUG):
            return
        if isinstance(data, (dict, list)):
            body = "\n".join("   " + line for line in json.dumps(data, indent=2, default=str).splitlines())
        else:
            body = f"   {data}"
        self._logger.debug("\n" + _paint(_C.GRAY, f"🔍 {label}") + "\n" + _paint(_C.GRAY, body))

    def warn(self, message: str, details: Optional[str] = None):
        text = "\n" + _paint(_C.YELLOW, f"⚠️  {message}")
        if details:
            text += "\n" + _paint(_C.GRAY, f"   {details}")
        self._logger.warning(text)

    def error(self, message: str, error: Optional[BaseException | str] = None):
        text = "\n" + _paint(_C.RED, f"❌ {message}")
        if error is not None:
            text += "\n" + _paint(_C.RED, f"   {error}")
        # Tracebacks only in debug mode
        exc_info = None
        if isinstance(error, BaseException) and self._logger.isEnabledFor(logging.DEBUG):
            exc_info = error
        self._logger.error(text, exc_info=exc_info)

    def http(self, method: str, path: str, status: Optional[int] = None, elapsed: Optional[str] = None):
        line = _paint(_C.GRAY, f"[HTTP] {method} {path}")
        if status is not None:
            color = _C.GREEN if status < 400 else _C.YELLOW if status < 500 else _C.RED
            line += " " + _paint(color, str(status)) + _paint(_C.GRAY, f" {elapsed or ''}")
        self._logger.info(line)


log = MarketLogger()
