"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
import json

from dotenv import load_dotenv


DEFAULT_ICE_SERVERS = [
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
]


@dataclass
class Config:
    """
    fusionshare configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FUSION_*)
    2. Config file (config.json)
    3. Default values
    """
    # Broker
    host: str = '0.0.0.0'
    port: int = 8080

    # Endpoint
    broker_url: str = 'ws://localhost:8080/ws'
    join_base_url: str = 'http://localhost:5173/'
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    # Transfer
    chunk_size: int = 16 * 1024  # 16KB
    ack_timeout: float = 10.0
    max_send_retries: int = 3
    auto_resume: bool = True
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Broker
        config.host = os.getenv('FUSION_HOST', config.host)
        config.port = int(os.getenv('FUSION_PORT', config.port))

        # Endpoint
        config.broker_url = os.getenv('FUSION_BROKER_URL', config.broker_url)
        config.join_base_url = os.getenv('FUSION_JOIN_BASE_URL', config.join_base_url)

        ice = os.getenv('FUSION_ICE_SERVERS', '')
        if ice:
            config.ice_servers = [url.strip() for url in ice.split(',') if url.strip()]

        # Transfer
        config.chunk_size = int(os.getenv('FUSION_CHUNK_SIZE', config.chunk_size))
        config.ack_timeout = float(os.getenv('FUSION_ACK_TIMEOUT', config.ack_timeout))
        config.max_send_retries = int(
            os.getenv('FUSION_MAX_SEND_RETRIES', config.max_send_retries)
        )
        config.auto_resume = os.getenv('FUSION_AUTO_RESUME', 'true').lower() == 'true'

        download_dir = os.getenv('FUSION_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Logging
        config.log_level = os.getenv('FUSION_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        config.broker_url = data.get('broker_url', config.broker_url)
        config.join_base_url = data.get('join_base_url', config.join_base_url)
        config.ice_servers = data.get('ice_servers', config.ice_servers)

        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.ack_timeout = data.get('ack_timeout', config.ack_timeout)
        config.max_send_retries = data.get('max_send_retries', config.max_send_retries)
        config.auto_resume = data.get('auto_resume', config.auto_resume)
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'broker_url': self.broker_url,
            'join_base_url': self.join_base_url,
            'ice_servers': list(self.ice_servers),
            'chunk_size': self.chunk_size,
            'ack_timeout': self.ack_timeout,
            'max_send_retries': self.max_send_retries,
            'auto_resume': self.auto_resume,
            'download_dir': str(self.download_dir),
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    env_config = Config.from_env()
    defaults = Config()

    # Env takes precedence for non-default values
    for key in ['host', 'port', 'broker_url', 'join_base_url', 'ice_servers',
                'chunk_size', 'ack_timeout', 'max_send_retries', 'auto_resume',
                'download_dir', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 8080,
  "broker_url": "ws://localhost:8080/ws",
  "join_base_url": "http://localhost:5173/",
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "chunk_size": 16384,
  "ack_timeout": 10.0,
  "max_send_retries": 3,
  "auto_resume": true,
  "download_dir": "./downloads",
  "log_level": "INFO"
}
"""
