"""
paasdeploy - Tenant-driven service stack deployment orchestrator
"""

__version__ = "0.1.0"

from .core import DeploymentOrchestrator
from .errors import DeployError
from .models import DeploymentAttempt, Verdict

__all__ = ["DeploymentOrchestrator", "DeployError", "DeploymentAttempt", "Verdict"]
