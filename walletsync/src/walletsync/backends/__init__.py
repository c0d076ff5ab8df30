"""
Blockchain backend implementations.
"""

from walletsync.backends.base import BlockchainBackend
from walletsync.backends.electrum import ElectrumBackend
from walletsync.backends.esplora import EsploraBackend

__all__ = ["BlockchainBackend", "ElectrumBackend", "EsploraBackend"]
