from __future__ import annotations


class FeatureDisabledError(RuntimeError):
    """A feature flag in SystemConfig turns this operation off."""


class IndexingConflictError(RuntimeError):
    """A re-indexing sweep is already running."""


class ProviderConfigurationError(ValueError):
    """A provider was requested without the settings it needs."""


class EmbeddingProviderError(RuntimeError):
    """A remote embedding call failed after its retry budget."""
