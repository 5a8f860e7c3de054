"""Configuration settings for the learning engine."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Scheduling settings
FIBONACCI_SEQUENCE = [1, 1, 2, 3, 5, 8, 13, 21, 34, 55, 89]
RETIREMENT_POSITION = 7  # fib[7] == 21


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///lexiloop.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class SchedulerSettings:
    """Fibonacci scheduler settings."""
    thread_count: int = int(os.getenv("THREAD_COUNT", "3"))
    fibonacci_sequence: list[int] = field(default_factory=lambda: list(FIBONACCI_SEQUENCE))
    retirement_position: int = int(os.getenv("RETIREMENT_POSITION", str(RETIREMENT_POSITION)))
    review_position: int = int(os.getenv("REVIEW_POSITION", "5"))

    @property
    def terminal_skip_number(self) -> int:
        """Skip number at which a unit retires."""
        return self.fibonacci_sequence[self.retirement_position]


@dataclass
class CalibrationSettings:
    """Learner baseline calibration settings."""
    min_items: int = int(os.getenv("CALIBRATION_MIN_ITEMS", "10"))
    max_items: int = int(os.getenv("CALIBRATION_MAX_ITEMS", "20"))
    min_latency_stddev_ms: float = float(os.getenv("CALIBRATION_MIN_LATENCY_STDDEV_MS", "50"))
    min_duration_delta_stddev_ms: float = float(os.getenv("CALIBRATION_MIN_DURATION_DELTA_STDDEV_MS", "100"))
    recalibration_interval: int = int(os.getenv("RECALIBRATION_INTERVAL", "50"))


@dataclass
class SpikeSettings:
    """Spike detection settings. Thresholds are ratios of the rolling average."""
    threshold: float = float(os.getenv("SPIKE_THRESHOLD", "2.0"))
    breakdown_threshold: float = float(os.getenv("SPIKE_BREAKDOWN_THRESHOLD", "2.5"))
    fallback_threshold: float = float(os.getenv("SPIKE_FALLBACK_THRESHOLD", "3.0"))
    fallback_breakdown_threshold: float = float(os.getenv("SPIKE_FALLBACK_BREAKDOWN_THRESHOLD", "4.0"))
    ema_alpha: float = float(os.getenv("SPIKE_EMA_ALPHA", "0.3"))
    cooldown_items: int = int(os.getenv("SPIKE_COOLDOWN_ITEMS", "0"))
    min_phrase_length: int = int(os.getenv("SPIKE_MIN_PHRASE_LENGTH", "1"))


@dataclass
class CycleSettings:
    """Cycle assembly settings."""
    pause_multiplier: float = float(os.getenv("PAUSE_MULTIPLIER", "2.0"))
    min_pause_ms: int = int(os.getenv("MIN_PAUSE_MS", "1000"))
    max_pause_ms: int = int(os.getenv("MAX_PAUSE_MS", "10000"))


@dataclass
class SessionSettings:
    """Practice session settings."""
    max_items: int = int(os.getenv("SESSION_MAX_ITEMS", "0"))  # 0 = unlimited
    fetch_timeout_seconds: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
    max_fetch_attempts: int = int(os.getenv("MAX_FETCH_ATTEMPTS", "3"))


@dataclass
class PersistenceSettings:
    """Background persistence settings."""
    max_retries: int = int(os.getenv("PERSIST_MAX_RETRIES", "3"))
    base_delay_seconds: float = float(os.getenv("PERSIST_BASE_DELAY_SECONDS", "0.5"))


@dataclass
class MonitoringSettings:
    """Metrics exporter settings."""
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_scheduler_settings() -> SchedulerSettings:
    """Get scheduler settings."""
    return SchedulerSettings()


def get_calibration_settings() -> CalibrationSettings:
    """Get calibration settings."""
    return CalibrationSettings()


def get_spike_settings() -> SpikeSettings:
    """Get spike detection settings."""
    return SpikeSettings()


def get_cycle_settings() -> CycleSettings:
    """Get cycle settings."""
    return CycleSettings()


def get_session_settings() -> SessionSettings:
    """Get session settings."""
    return SessionSettings()


def get_persistence_settings() -> PersistenceSettings:
    """Get persistence settings."""
    return PersistenceSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    scheduler: SchedulerSettings = field(default_factory=get_scheduler_settings)
    calibration: CalibrationSettings = field(default_factory=get_calibration_settings)
    spike: SpikeSettings = field(default_factory=get_spike_settings)
    cycle: CycleSettings = field(default_factory=get_cycle_settings)
    session: SessionSettings = field(default_factory=get_session_settings)
    persistence: PersistenceSettings = field(default_factory=get_persistence_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.scheduler.thread_count < 1:
            raise ValueError("THREAD_COUNT must be positive")

        if not 0 <= self.scheduler.retirement_position < len(self.scheduler.fibonacci_sequence):
            raise ValueError("RETIREMENT_POSITION must index into the Fibonacci sequence")

        if self.calibration.min_items < 1:
            raise ValueError("CALIBRATION_MIN_ITEMS must be positive")

        if self.calibration.min_items > self.calibration.max_items:
            raise ValueError("CALIBRATION_MIN_ITEMS cannot be greater than CALIBRATION_MAX_ITEMS")

        if not 0 < self.spike.ema_alpha <= 1:
            raise ValueError("SPIKE_EMA_ALPHA must be in (0, 1]")

        if self.spike.threshold <= 1:
            raise ValueError("SPIKE_THRESHOLD must be greater than 1")

        if self.spike.breakdown_threshold < self.spike.threshold:
            raise ValueError("SPIKE_BREAKDOWN_THRESHOLD cannot be lower than SPIKE_THRESHOLD")

        if self.spike.fallback_breakdown_threshold < self.spike.fallback_threshold:
            raise ValueError("SPIKE_FALLBACK_BREAKDOWN_THRESHOLD cannot be lower than SPIKE_FALLBACK_THRESHOLD")

        if self.cycle.min_pause_ms > self.cycle.max_pause_ms:
            raise ValueError("MIN_PAUSE_MS cannot be greater than MAX_PAUSE_MS")

        if self.session.max_fetch_attempts < 1:
            raise ValueError("MAX_FETCH_ATTEMPTS must be positive")


# Create global settings instance
settings = Settings()
settings.validate()
