"""Payment-event and owner-request entry points."""

from provisioning_engine.orchestrator.provisioning import ProvisioningOrchestrator

__all__ = ["ProvisioningOrchestrator"]
