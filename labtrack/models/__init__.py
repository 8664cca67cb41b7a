from labtrack.models.snapshot import SnapshotRecord

__all__ = [
    "SnapshotRecord",
]
