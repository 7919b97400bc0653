"""Discord webhook alerts for permanent job failures and unhealthy recovery.

Sends structured alerts to Discord channel via webhook URL configured in
DISCORD_WEBHOOK_URL environment variable.

Architecture Pattern:
    - Async HTTP client (httpx)
    - Message truncation (Discord limits)
    - Timeout handling (5s max)
    - Graceful degradation (log on failure, don't crash)
"""

import os

import httpx

from chronicle.utils.logging import get_logger

log = get_logger(__name__)

ALERT_COLORS = {
    "CRITICAL": 0xFF0000,  # Red
    "WARNING": 0xFFA500,  # Orange
    "INFO": 0x0000FF,  # Blue
    "SUCCESS": 0x00FF00,  # Green
}


async def send_alert(level: str, message: str, details: dict[str, object] | None = None) -> None:
    """Send alert to Discord webhook.

    Args:
        level: Alert level ("CRITICAL", "WARNING", "INFO")
        message: Alert message (max 2000 chars, will be truncated)
        details: Optional structured details (dict)

    Environment Variables:
        DISCORD_WEBHOOK_URL: Discord webhook URL (alerts are skipped if unset)

    Example:
        >>> await send_alert(
        ...     level="WARNING",
        ...     message="3 jobs exceeded the automatic resume ceiling",
        ...     details={"job_ids": "a, b, c", "ceiling": 20},
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.warning("discord_webhook_not_configured", level=level, message=message[:100])
        return

    sanitized_message = message[:2000]

    payload = {
        "content": f"**{level}**: {sanitized_message}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": sanitized_message,
                "fields": [
                    {"name": key, "value": str(value)[:1024], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": ALERT_COLORS.get(level, 0x808080),  # Default gray
            }
        ],
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=5.0)
            response.raise_for_status()

            log.info("discord_alert_sent", level=level, message=message[:100])
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
    except Exception as e:
        log.error("discord_webhook_failed", error=str(e))
