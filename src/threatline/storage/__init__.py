# Storage Module - Tiered Indicator Storage

from .cold import ColdArchive
from .hot import HotTier, KeyLockTable
from .tiered import ArchiveReport, TieredStore
from .warm import WarmTier

__all__ = [
    "HotTier",
    "KeyLockTable",
    "WarmTier",
    "ColdArchive",
    "TieredStore",
    "ArchiveReport",
]
