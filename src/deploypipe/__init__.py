"""
deploypipe - Sequential build and deployment pipeline orchestrator
"""

__version__ = "0.1.0"

from .core import DeploymentPipeline, PipelineError

__all__ = ["DeploymentPipeline", "PipelineError"]
