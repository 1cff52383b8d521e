"""Explicit service context handed to every component constructor."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import DeployerConfig
from .metrics import DeployerMetrics

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGGER_NAME = "program-deployer"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@dataclass
class ServiceContext:
    config: DeployerConfig
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(LOGGER_NAME))
    metrics: DeployerMetrics = field(default_factory=DeployerMetrics)

    def child_logger(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)

    @classmethod
    def create(cls, config: Optional[DeployerConfig] = None) -> "ServiceContext":
        return cls(config=config or DeployerConfig())


__all__ = ["LOG_FORMAT", "LOGGER_NAME", "ServiceContext", "configure_logging"]
