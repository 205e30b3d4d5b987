"""
Configuration management for the crawl engine.
"""

import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, fields


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    concurrency: int = 100
    request_timeout: float = 30
    user_agent: str = "distcrawl/1.0 (+https://github.com/distcrawl/distcrawl)"
    max_body_size: int = 10 * 1024 * 1024
    health_check_interval: float = 5.0


@dataclass
class BrokerConfig:
    """Configuration for the Redis stream backing the work queue."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    connect_timeout: float = 3.0
    stream: str = "CRAWL_QUEUE"
    group: str = "crawler-worker"
    consumer: Optional[str] = None
    prefetch: int = 1000
    ack_wait: float = 60.0
    max_deliver: int = 5
    block_ms: int = 1000
    reclaim_interval: float = 1.0


@dataclass
class StatsConfig:
    """Configuration for progress statistics."""
    interval: float = 1.0
    channel_capacity: int = 10000


@dataclass
class FrontierConfig:
    """Configuration for frontier admission."""
    dedup: str = "none"
    seen_key: str = "crawler:frontier:seen"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    frontier: FrontierConfig = field(default_factory=FrontierConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


def _section(cls, data: Optional[Dict[str, Any]], name: str):
    """Build a config section, rejecting keys the section does not know."""
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {', '.join(sorted(unknown))}")
    return cls(**data)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        self._config = parse_config(config_data)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def parse_config(config_data: Dict[str, Any]) -> Config:
    """Build and validate a Config from already parsed YAML data."""
    if not isinstance(config_data, dict):
        raise ValueError("Configuration root must be a mapping")

    unknown = set(config_data) - {f.name for f in fields(Config)}
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    config = Config(
        crawler=_section(CrawlerConfig, config_data.get('crawler'), 'crawler'),
        broker=_section(BrokerConfig, config_data.get('broker'), 'broker'),
        stats=_section(StatsConfig, config_data.get('stats'), 'stats'),
        frontier=_section(FrontierConfig, config_data.get('frontier'), 'frontier'),
        logging=_section(LoggingConfig, config_data.get('logging'), 'logging'),
        monitoring=_section(MonitoringConfig, config_data.get('monitoring'), 'monitoring')
    )
    validate_config(config)
    return config


def validate_config(config: Config):
    """Validate configuration values."""
    if config.crawler.concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    if config.crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    if config.broker.prefetch < 1:
        raise ValueError("prefetch must be at least 1")

    if config.broker.max_deliver < 1:
        raise ValueError("max_deliver must be at least 1")

    # A lease must outlive the slowest fetch or the task is redelivered mid-crawl
    if config.broker.ack_wait <= config.crawler.request_timeout:
        raise ValueError("ack_wait must be greater than request_timeout")

    if config.stats.interval <= 0:
        raise ValueError("stats interval must be positive")

    if config.stats.channel_capacity < 1:
        raise ValueError("stats channel_capacity must be at least 1")

    if config.frontier.dedup not in ['none', 'redis']:
        raise ValueError("frontier dedup must be 'none' or 'redis'")

    logging.getLogger(__name__).debug("Configuration validation passed")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
