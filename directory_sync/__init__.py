"""Directory Sync.

Synchronizes biobank collection statistics between a site's FHIR store and
the BBMRI-ERIC Directory.
"""

__version__ = "0.1.0"
