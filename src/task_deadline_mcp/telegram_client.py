"""Lightweight Telegram Bot API client.

Only the calls the reminder service needs: ``getMe`` to verify the token and
``sendMessage`` to deliver a reminder. Authentication is the bot token embedded
in the request path, supplied directly or via the `TELEGRAM_BOT__API_TOKEN`
environment variable.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx
from loguru import logger


class NotificationError(RuntimeError):
    """Telegram rejected the request or could not be reached."""


class TelegramBotClient:
    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        token_to_use = token or os.environ.get("TELEGRAM_BOT__API_TOKEN")
        if not token_to_use:
            raise ValueError(
                "Telegram bot token is required; set TELEGRAM_BOT__API_TOKEN or pass token"
            )

        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/bot{token_to_use}",
            timeout=timeout_seconds,
            transport=transport,
        )
        self.base_url = base_url

        logger.info(
            "Initialized TelegramBotClient",
            extra={"base_url": base_url, "timeout_seconds": timeout_seconds},
        )

    def close(self) -> None:
        self._client.close()
        logger.debug("Closed Telegram HTTP client")

    def __enter__(self) -> "TelegramBotClient":
        return self

    def __exit__(self, *_) -> None:  # type: ignore[override]
        self.close()

    # Public API

    def get_me(self) -> Dict[str, Any]:
        return self._request("getMe")

    def send_message(
        self,
        chat_id: str | int,
        text: str,
        *,
        parse_mode: Optional[str] = "Markdown",
        disable_web_page_preview: bool = True,
    ) -> int:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        result = self._request("sendMessage", json=payload)
        message_id = int(result.get("message_id", 0))
        logger.info(
            "Telegram message sent",
            extra={"chat_id": chat_id, "message_id": message_id},
        )
        return message_id

    # Internal helpers

    def _request(
        self,
        method: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._client.post(f"/{method}", json=json or {})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            detail = exc.response.text
            logger.error(
                "Telegram API status error",
                extra={"method": method, "status": status_code, "detail": detail},
            )
            raise NotificationError(
                f"Telegram API request failed ({status_code}) for {method}: {detail}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Telegram API transport error",
                extra={"method": method, "error": str(exc)},
            )
            raise NotificationError(f"Telegram API request failed for {method}: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            logger.error(
                "Telegram API returned a non-JSON body",
                extra={"method": method, "status": response.status_code},
            )
            raise NotificationError(f"Telegram API returned invalid JSON for {method}") from exc
        if not isinstance(body, dict):
            raise NotificationError(f"Telegram API returned an unexpected body for {method}")
        if not body.get("ok", False):
            description = body.get("description", "unknown error")
            raise NotificationError(f"Telegram API returned an error for {method}: {description}")
        logger.debug(
            "Telegram request succeeded",
            extra={"method": method, "status": response.status_code},
        )
        return body.get("result") or {}
