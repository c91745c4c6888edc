"""Artifact storage and retention."""

from shipgate.artifacts.store import ArtifactStore
from shipgate.artifacts.reaper import RetentionReaper

__all__ = ["ArtifactStore", "RetentionReaper"]
