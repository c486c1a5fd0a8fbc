from .store import ArtifactRef, ArtifactStore, FileArtifactStore, MemoryArtifactStore

__all__ = ["ArtifactRef", "ArtifactStore", "FileArtifactStore", "MemoryArtifactStore"]
