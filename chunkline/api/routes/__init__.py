from . import batches, chunks, estimates, projects

__all__ = ["batches", "chunks", "estimates", "projects"]
