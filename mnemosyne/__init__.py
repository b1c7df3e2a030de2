"""
Mnemosyne memory substrate: memorygram graph, multi-aspect retrieval and pipeline execution.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
