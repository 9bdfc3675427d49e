"""Lead enrichment pipeline: enrich captured LinkedIn profiles and score them against qualifications."""

__version__ = "1.0.0"
