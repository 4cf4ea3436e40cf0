"""
Operator alerting - surfaces failures that need a human.

Alert channels:
1. Structured log (always) - at ERROR level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: Per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts, prevents post-deploy alert spam).
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds)
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "channel_not_configured": 3600,
    "stale_claims_found": 1800,
}

# In-memory fallback when Redis is down
_local_cooldowns: dict[str, float] = {}  # cooldown key → expiry timestamp


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    DISPATCH_FAILED_TERMINAL = "dispatch_failed_terminal"
    CHANNEL_NOT_CONFIGURED = "channel_not_configured"
    STALE_CLAIMS_FOUND = "stale_claims_found"
    QUEUE_TICK_FAILED = "queue_tick_failed"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    dedup_key: Optional[str] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type (or per dedup_key when given).
    """
    if not await _acquire_cooldown(alert_type, dedup_key):
        return

    from nurture.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)


async def _acquire_cooldown(alert_type: str, dedup_key: Optional[str] = None) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.
    Uses Redis SET NX EX, falling back to an in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)
    key = f"{alert_type}:{dedup_key}" if dedup_key else alert_type

    try:
        from nurture.utils.redis_client import get_redis
        redis = await get_redis()
        acquired = await redis.set(f"nurture:alert_cooldown:{key}", "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(key, 0):
            return False
        _local_cooldowns[key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from nurture.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        severity_emoji = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(
            severity, "ℹ️"
        )
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))
