"""Multivariate phylogenetic mixed models: simulation, fitting and validation."""
from .core.config import DefaultConfig, load_config
from .core.framework import PhylogeneticMixedModelFramework
from .core.logging_config import setup_logging
from .core.pipeline import Pipeline

__version__ = "0.1.0"
