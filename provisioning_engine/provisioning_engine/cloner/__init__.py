"""Template cloning into tenant namespaces."""

from provisioning_engine.cloner.template_cloner import TemplateCloner

__all__ = ["TemplateCloner"]
