"""
Policy provisioning: role templates, assignments and cascades.
"""

from .manager import PolicyManager
from .workflows import ProvisioningWorkflows

__all__ = [
    "PolicyManager",
    "ProvisioningWorkflows",
]
