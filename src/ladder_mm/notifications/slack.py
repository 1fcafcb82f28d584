"""Slack webhook notifications."""

from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp
import yaml

from ladder_mm.config import get_settings
from ladder_mm.utils.logging import get_logger

log = get_logger(__name__)


def _to_plain(value: Any) -> Any:
    # yaml.safe_dump only knows builtin types
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def format_message(title: str, fields: Dict[str, Any]) -> str:
    """Render a title plus fields as a YAML code block."""
    body = yaml.safe_dump(_to_plain(fields), sort_keys=False).strip()
    return f"*{title}*\n```\n{body}\n```"


class SlackNotifier:
    """Send notifications to Slack via webhooks, one for info and one for errors."""

    def __init__(
        self,
        info_webhook_url: Optional[str] = None,
        error_webhook_url: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.info_webhook_url = info_webhook_url or settings.slack_info_webhook_url
        self.error_webhook_url = error_webhook_url or settings.slack_error_webhook_url
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.info_webhook_url or self.error_webhook_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, text: str, error: bool = False) -> bool:
        """Post a message to the info or error channel."""
        url = self.error_webhook_url if error else self.info_webhook_url
        if not url:
            log.debug("Slack webhook not configured, skipping notification", error=error)
            return False

        try:
            session = await self._get_session()
            async with session.post(url, json={"text": text}) as resp:
                if resp.status == 200:
                    log.debug("Slack notification sent")
                    return True
                log.warning("Slack notification failed", status=resp.status)
                return False

        except Exception as e:
            log.error("Failed to send Slack notification", error=str(e))
            return False

    async def notify_startup(self, mode: str, markets: int = 0) -> bool:
        return await self.send(
            format_message(
                "Market maker started",
                {"mode": mode, "markets": markets, "time": datetime.now().strftime("%Y-%m-%d %H:%M:%S")},
            )
        )

    async def notify_shutdown(self, reason: str = "normal") -> bool:
        return await self.send(format_message("Market maker stopped", {"reason": reason}))

    async def notify_batch(
        self,
        market: str,
        tx_hash: Optional[str],
        claims: int,
        cancels: int,
        makes: int,
    ) -> bool:
        return await self.send(
            format_message(
                "Batch submitted",
                {"market": market, "tx_hash": tx_hash, "claims": claims, "cancels": cancels, "makes": makes},
            )
        )

    async def notify_error(self, error: str, context: Optional[str] = None) -> bool:
        fields: Dict[str, Any] = {"error": error}
        if context:
            fields["context"] = context
        return await self.send(format_message("Error", fields), error=True)


# Global notifier instance
_notifier: Optional[SlackNotifier] = None


def get_notifier() -> SlackNotifier:
    """Get the global Slack notifier instance."""
    global _notifier
    if _notifier is None:
        _notifier = SlackNotifier()
    return _notifier
