"""provtrack - session event capture and provenance lineage tracking."""

__version__ = "0.1.0"
