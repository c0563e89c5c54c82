"""
Configuration management for the bonding curve service.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict

from pumpcurve import curve_math


@dataclass
class CurveConfig:
    """Curve seeding, fee and graduation parameters."""
    initial_virtual_base_reserve: int = curve_math.INITIAL_VIRTUAL_BASE_RESERVE
    initial_virtual_asset_reserve: int = curve_math.INITIAL_VIRTUAL_ASSET_RESERVE
    graduation_threshold: int = curve_math.TARGET_VIRTUAL_MC
    protocol_fee_bps: int = curve_math.PROTOCOL_FEE_BPS
    creation_fee: int = curve_math.CREATION_FEE
    min_base_amount: int = curve_math.MIN_BASE_AMOUNT
    default_slippage_bps: int = curve_math.DEFAULT_SLIPPAGE_BPS
    total_supply: int = curve_math.TOTAL_SUPPLY

    def __post_init__(self):
        if self.initial_virtual_base_reserve <= 0 or self.initial_virtual_asset_reserve <= 0:
            raise ValueError("Initial virtual reserves must be positive")
        if not 0 <= self.protocol_fee_bps <= curve_math.BPS_DENOMINATOR:
            raise ValueError(f"protocol_fee_bps out of range: {self.protocol_fee_bps}")
        if self.creation_fee < 0 or self.min_base_amount < 0:
            raise ValueError("Fees and minimums cannot be negative")


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./curve_data"
    write_buffer_size: int = 4 * 1024 * 1024  # 4MB
    max_open_files: int = 1000


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    def apply(self):
        logging.basicConfig(level=getattr(logging, self.level.upper(), logging.INFO),
                            format=self.format, force=True)


@dataclass
class Config:
    """Main configuration."""
    curve: CurveConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig
    logging: LoggingConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            curve=CurveConfig(),
            database=DatabaseConfig(),
            monitoring=MonitoringConfig(),
            logging=LoggingConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            curve=CurveConfig(**data.get('curve', {})),
            database=DatabaseConfig(**data.get('database', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
            logging=LoggingConfig(**data.get('logging', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'curve': asdict(self.curve),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring),
            'logging': asdict(self.logging)
        }
