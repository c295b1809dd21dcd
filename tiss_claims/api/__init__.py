"""HTTP API over the claims engine."""

from tiss_claims.api.app import create_app, create_app_from_config

__all__ = ["create_app", "create_app_from_config"]
