"""Startup checks for risky or insecure configuration."""

import logging

from webshell.common import settings

logger = logging.getLogger(__name__)


def configuration_warnings(
    app_env: str = settings.APP_ENV,
    auth_enabled: bool = settings.AUTH_ENABLED,
    cors_origins: list[str] = settings.CORS_ORIGINS,
    idle_timeout_minutes: int = settings.IDLE_TIMEOUT_MINUTES,
    max_sessions_per_user: int = settings.MAX_SESSIONS_PER_USER,
    reaper_interval: int = settings.REAPER_INTERVAL,
) -> list[str]:
    warnings: list[str] = []

    if app_env == "production":
        if not auth_enabled:
            warnings.append(
                "Authentication is disabled in production mode. "
                "This allows unrestricted access. Set AUTH_ENABLED=true."
            )
        if any("localhost" in o or "127.0.0.1" in o for o in cors_origins):
            warnings.append(
                "CORS origins include localhost in production. "
                "Update CORS_ORIGINS to only include production domains."
            )
        if "*" in cors_origins:
            warnings.append(
                "CORS origins set to wildcard (*) in production. "
                "Specify exact allowed origins."
            )

    if idle_timeout_minutes > 24 * 60:
        warnings.append(
            f"Idle timeout is very long ({idle_timeout_minutes} minutes). "
            "Consider reducing it to avoid leaking abandoned sessions."
        )
    if max_sessions_per_user > 20:
        warnings.append(
            f"Max sessions per user is high ({max_sessions_per_user}). "
            "This may allow resource exhaustion."
        )
    if reaper_interval > idle_timeout_minutes * 60:
        warnings.append(
            f"Reaper interval ({reaper_interval}s) is longer than the idle timeout "
            f"({idle_timeout_minutes}m); idle sessions will outlive their timeout."
        )
    return warnings


def log_configuration() -> None:
    """Log the non-sensitive subset of the configuration."""
    logger.info("Current configuration:")
    logger.info(f"  Environment: {settings.APP_ENV}")
    logger.info(f"  Listen: {settings.HOST}:{settings.PORT}")
    logger.info(f"  Authentication: {'enabled' if settings.AUTH_ENABLED else 'disabled'}")
    logger.info(f"  CORS origins: {', '.join(settings.CORS_ORIGINS)}")
    logger.info(f"  Max sessions/user: {settings.MAX_SESSIONS_PER_USER}")
    logger.info(f"  Idle timeout: {settings.IDLE_TIMEOUT_MINUTES} minutes")
    logger.info(f"  Session max age: {settings.SESSION_MAX_AGE_HOURS} hours")
    logger.info(f"  Docker host: {settings.DOCKER_HOST}")

    warnings = configuration_warnings()
    for warning in warnings:
        logger.warning(f"Configuration warning: {warning}")
    if not warnings:
        logger.info("Configuration validated successfully")
