from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import ProxyHandler, Request, build_opener

TELEGRAM_API_URL = "https://api.telegram.org"
RETRYABLE_HTTP_CODES = (408, 429)


class Publisher(Protocol):
    """Anything that can deliver a formatted text message to the channel."""

    def send_message(self, text: str) -> None: ...


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration for posting to a Telegram chat or channel."""

    bot_token: str
    chat_id: str
    proxy: str | None = None
    parse_mode: str | None = None
    timeout: float = 10.0
    max_retries: int = 5
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    retry_backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if not self.bot_token.strip():
            raise ValueError("Telegram bot token must not be empty")
        if not self.chat_id.strip():
            raise ValueError("Telegram chat_id must not be empty")
        if self.timeout <= 0:
            raise ValueError("Telegram timeout must be positive")
        if self.max_retries < 1:
            raise ValueError("Telegram max_retries must be at least 1")
        if self.initial_retry_delay <= 0:
            raise ValueError("Telegram initial_retry_delay must be positive")
        if self.max_retry_delay <= 0:
            raise ValueError("Telegram max_retry_delay must be positive")
        if self.retry_backoff_multiplier < 1:
            raise ValueError("Telegram retry_backoff_multiplier must be >= 1")

    def as_proxy_dict(self) -> Dict[str, str] | None:
        proxy = (self.proxy or "").strip()
        if not proxy:
            return None
        return {"http": proxy, "https": proxy}


class TelegramDeliveryError(RuntimeError):
    pass


def _retry_after_seconds(payload: Dict[str, Any]) -> float | None:
    parameters = payload.get("parameters") or {}
    try:
        value = float(parameters.get("retry_after"))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class TelegramClient:
    """Thin ``sendMessage`` client for the Telegram Bot API."""

    def __init__(
        self,
        config: TelegramConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._log = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._url = f"{TELEGRAM_API_URL}/bot{config.bot_token}/sendMessage"
        handlers = []
        proxy_dict = config.as_proxy_dict()
        if proxy_dict:
            handlers.append(ProxyHandler(proxy_dict))
        self._opener = build_opener(*handlers)

    def _post(self, payload: Dict[str, str]) -> Dict[str, Any]:
        request = Request(
            self._url,
            data=urlencode(payload).encode("utf-8"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        with self._opener.open(request, timeout=self._config.timeout) as response:
            return json.loads(response.read())

    def send_message(self, text: str) -> None:
        message = str(text)
        if not message.strip():
            raise ValueError("Telegram message text must not be empty")

        payload = {
            "chat_id": self._config.chat_id,
            "text": message,
            "disable_web_page_preview": "true",
        }
        if self._config.parse_mode:
            payload["parse_mode"] = self._config.parse_mode

        delay = self._config.initial_retry_delay
        last_attempt = self._config.max_retries - 1

        for attempt in range(self._config.max_retries):
            retry_after: float | None = None
            try:
                data = self._post(payload)
                if data.get("ok"):
                    self._log.info("Sent message to Telegram chat %s", self._config.chat_id)
                    return
                description = data.get("description", "unknown error")
                if data.get("error_code") != 429 or attempt == last_attempt:
                    raise TelegramDeliveryError(f"Telegram API error: {description}")
                retry_after = _retry_after_seconds(data)
                self._log.warning("Telegram rate limited: %s", description)
            except HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                try:
                    body_payload = json.loads(body)
                except json.JSONDecodeError:
                    body_payload = {}
                description = body_payload.get("description", body) if body_payload else body
                retryable = exc.code >= 500 or exc.code in RETRYABLE_HTTP_CODES
                if not retryable or attempt == last_attempt:
                    raise TelegramDeliveryError(
                        f"Telegram HTTP error {exc.code}: {description}"
                    ) from exc
                retry_after = _retry_after_seconds(body_payload)
                self._log.warning("Telegram HTTP error %s (%s)", exc.code, description)
            except URLError as exc:
                if attempt == last_attempt:
                    raise TelegramDeliveryError(
                        f"Telegram connection error: {exc.reason or exc}"
                    ) from exc
                self._log.warning("Telegram connection error '%s'", exc.reason or exc)

            wait = max(delay, retry_after or 0.0)
            self._log.info("Retrying Telegram delivery in %.1fs", wait)
            self._sleep(wait)
            delay = min(
                delay * self._config.retry_backoff_multiplier,
                self._config.max_retry_delay,
            )

        raise TelegramDeliveryError("Telegram send failed after retries")


class DryRunPublisher:
    """Logs messages instead of delivering them."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self.sent: List[str] = []

    def send_message(self, text: str) -> None:
        self.sent.append(text)
        self._log.info("DRY RUN - Would send message:\n%s", text)
