from __future__ import annotations


class CascadeError(Exception):
    """Base error for togglecascade."""


class CascadeRuleConfigError(CascadeError):
    """Missing or invalid cascade rule configuration."""


class FeatureToggleError(CascadeError):
    """A feature toggle transaction failed and was rolled back."""

    def __init__(self, message: str, *, tenant_id: str, feature_key: str) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id
        self.feature_key = feature_key
