"""Provision a fungible token on a Solana-style ledger.

Funds a payer from the faucet, creates a mint, issues tokens to the payer
and transfers part of them to a receiver.
"""

from .config import ProvisionerConfig
from .models import ProvisioningReport, WorkflowState
from .workflow import ProvisioningWorkflow

__version__ = "0.1.0"

__all__ = [
    "ProvisionerConfig",
    "ProvisioningReport",
    "ProvisioningWorkflow",
    "WorkflowState",
]
