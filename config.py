"""Configuration management for the FinLock card control backend"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection (order of precedence)
    # ENVIRONMENT takes absolute priority, then NODE_ENV
    ENVIRONMENT = os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development")).lower().strip()
    IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Service identity
    SERVICE_NAME = os.getenv("SERVICE_NAME", "FinLock Backend")
    SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./finlock.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    if DATABASE_URL.startswith("postgresql"):
        DATABASE_SOURCE = "PostgreSQL"
    elif DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite (local)"
        if IS_PRODUCTION:
            logger.error("❌ PRODUCTION is running on SQLite - set DATABASE_URL to PostgreSQL")
    else:
        DATABASE_SOURCE = "UNKNOWN"

    # Redis Configuration for ephemeral auto-refreeze timers
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
    REDIS_SOCKET_TIMEOUT_SECONDS = float(os.getenv("REDIS_SOCKET_TIMEOUT_SECONDS", "5"))
    REDIS_CONNECTION_TIMEOUT_SECONDS = float(os.getenv("REDIS_CONNECTION_TIMEOUT_SECONDS", "5"))
    TIMER_KEY_PREFIX = os.getenv("TIMER_KEY_PREFIX", "auto_refreeze:")
    REDIS_EXPIRY_NOTIFICATIONS_ENABLED = os.getenv("REDIS_EXPIRY_NOTIFICATIONS_ENABLED", "true").lower() == "true"

    # Card issuing provider (Lithic)
    LITHIC_API_KEY = os.getenv("LITHIC_API_KEY")
    LITHIC_BASE_URL = os.getenv("LITHIC_BASE_URL", "https://sandbox.lithic.com")
    LITHIC_WEBHOOK_SECRET = os.getenv("LITHIC_WEBHOOK_SECRET")
    PROVIDER_SIGNATURE_HEADER = os.getenv("PROVIDER_SIGNATURE_HEADER", "lithic-signature")
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

    # Authorization window limits (1 minute to 24 hours)
    MIN_AUTHORIZATION_MINUTES = int(os.getenv("MIN_AUTHORIZATION_MINUTES", "1"))
    MAX_AUTHORIZATION_MINUTES = int(os.getenv("MAX_AUTHORIZATION_MINUTES", "1440"))
    MAX_AUTHORIZATION_AMOUNT = Decimal(os.getenv("MAX_AUTHORIZATION_AMOUNT", "10000"))

    # Reconciliation sweep
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
    SWEEP_MISFIRE_GRACE_SECONDS = int(os.getenv("SWEEP_MISFIRE_GRACE_SECONDS", "30"))
    EXPIRY_CLOCK_TOLERANCE_SECONDS = int(os.getenv("EXPIRY_CLOCK_TOLERANCE_SECONDS", "2"))

    # Durable lock retries
    LOCK_RETRY_BASE_DELAY_SECONDS = int(os.getenv("LOCK_RETRY_BASE_DELAY_SECONDS", "15"))
    LOCK_RETRY_MAX_DELAY_SECONDS = int(os.getenv("LOCK_RETRY_MAX_DELAY_SECONDS", "600"))
    LOCK_RETRY_ALERT_ATTEMPTS = int(os.getenv("LOCK_RETRY_ALERT_ATTEMPTS", "5"))

    @staticmethod
    def is_provider_configured() -> bool:
        """Real provider calls need an API key; the 'test_api_key' placeholder counts as unset"""
        return bool(Config.LITHIC_API_KEY) and Config.LITHIC_API_KEY != "test_api_key"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 FinLock Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Provider: {'Lithic (' + Config.LITHIC_BASE_URL + ')' if Config.is_provider_configured() else 'development mock'}")
        logger.info(f"   Webhook secret: {'✅ Set' if Config.LITHIC_WEBHOOK_SECRET else '❌ Not set'}")
        logger.info(f"   Sweep interval: {Config.SWEEP_INTERVAL_SECONDS}s (batch {Config.SWEEP_BATCH_SIZE})")
        logger.info(f"   Authorization window: {Config.MIN_AUTHORIZATION_MINUTES}-{Config.MAX_AUTHORIZATION_MINUTES} minutes")

    @staticmethod
    def validate_production_config():
        """Fail closed on settings that would leave cards open or webhooks unauthenticated"""
        if not Config.IS_PRODUCTION:
            return True

        problems = []
        if not Config.is_provider_configured():
            problems.append("LITHIC_API_KEY is not set")
        if not Config.LITHIC_WEBHOOK_SECRET:
            problems.append("LITHIC_WEBHOOK_SECRET is not set")
        if Config.DATABASE_SOURCE != "PostgreSQL":
            problems.append(f"DATABASE_URL points at {Config.DATABASE_SOURCE}")

        if problems:
            for problem in problems:
                logger.critical(f"🚨 PRODUCTION_CONFIG: {problem}")
            raise ValueError(f"Production configuration invalid: {', '.join(problems)}")

        return True
