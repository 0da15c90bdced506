"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
Single entrypoint and lifecycle owner for the price pipeline.

- PipelineConfig: environment / CLI configuration
- PricePipeline: wiring, event consumption, graceful shutdown
- cli: argparse entry point

============================================================
"""

from .core import PricePipeline, setup_logging
from .models import PipelineConfig, load_environment, parse_pairs


__all__ = [
    "PricePipeline",
    "PipelineConfig",
    "parse_pairs",
    "load_environment",
    "setup_logging",
]
