"""Upstream connectors: Gerrit change queries and Gitiles commit browsing."""
