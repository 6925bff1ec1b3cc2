"""BBMRI-ERIC Directory (MOLGENIS) adapter."""

from directory_sync.adapters.directory.directory_gateway import DirectoryGateway

__all__ = ["DirectoryGateway"]
