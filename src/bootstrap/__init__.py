"""
Bootstrap of the remote backend (state bucket + lock table) using local state only.
"""

from .provisioner import BootstrapProvisioner, BootstrapResult

__all__ = ["BootstrapProvisioner", "BootstrapResult"]
